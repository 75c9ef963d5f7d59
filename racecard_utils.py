import os
import re
from pathlib import Path
from typing import List, Optional
from urllib.parse import urljoin, urlsplit

import structlog

logger = structlog.get_logger(__name__)

COMPACT_DATE_SEPARATORS = re.compile(r"[-/.]")


def clean_text(text: Optional[str]) -> str:
    """Strips leading/trailing whitespace and collapses internal whitespace."""
    if not text:
        return ""
    return " ".join(str(text).strip().split())


def compact_date(date_str: str) -> str:
    """2024-05-01 -> 20240501, the form the index page embeds in its links."""
    return COMPACT_DATE_SEPARATORS.sub("", date_str)


def is_absolute_url(href: str) -> bool:
    return bool(urlsplit(href).scheme)


def resolve_url(href: str, base_url: str) -> str:
    """
    Resolves a link found on a page to an absolute URL.
    Site-relative paths ("/race/1") get the origin of base_url prefixed.
    """
    href = href.strip()
    if is_absolute_url(href):
        return href
    return urljoin(base_url, href)


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("invalid_env_int", name=name, value=raw, default=default)
        return default


def env_list(name: str, default: List[str]) -> List[str]:
    """Comma-separated environment value; an empty string means an empty list."""
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


def find_chrome_executable(base_dir: str) -> str:
    """
    Returns the newest Chrome binary inside a Puppeteer-style cache directory:
    <base_dir>/<version>/chrome-linux64/chrome

    Raises FileNotFoundError when the directory, a version or the binary is missing.
    """
    base = Path(base_dir)
    if not base.is_dir():
        raise FileNotFoundError(f"Chrome directory not found: {base}")

    versions = sorted((p.name for p in base.iterdir() if p.is_dir()), reverse=True)
    if not versions:
        raise FileNotFoundError(f"No Chrome versions found inside: {base}")

    exe = base / versions[0] / "chrome-linux64" / "chrome"
    if not exe.is_file():
        raise FileNotFoundError(f"Chrome executable not found at: {exe}")

    logger.debug("chrome_executable_found", path=str(exe), version=versions[0])
    return str(exe)
