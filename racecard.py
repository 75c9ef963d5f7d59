from __future__ import annotations
# racecard.py
# Headless-browser extraction pipeline for the daily race index.

"""
Racecard - race name and entrant extraction from the race-authority website.

The pipeline opens a fresh headless browser for every navigation, finds the
day's race links on the index page, then visits up to MAX_DETAIL_FETCHES of
them and parses each into a RaceDetail using ordered fallback rules.
"""
import os
import re
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Final,
    List,
    Optional,
    Sequence,
)

import structlog
from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)
from pydantic import BaseModel, ConfigDict, Field
from selectolax.parser import HTMLParser

from racecard_utils import (
    clean_text,
    compact_date,
    env_int,
    env_list,
    find_chrome_executable,
    resolve_url,
)

logger = structlog.get_logger(__name__)

# --- CONSTANTS ---
INDEX_URL: Final[str] = os.environ.get(
    "RACECARD_INDEX_URL",
    "https://www.keiba.go.jp/KeibaWeb/TodayRaceInfo/TodayRaceInfoTop",
)
NAVIGATION_TIMEOUT_MS: Final[int] = env_int("RACECARD_NAV_TIMEOUT_MS", 30_000)
MAX_CANDIDATES: Final[int] = env_int("RACECARD_MAX_CANDIDATES", 200)
MAX_DETAIL_FETCHES: Final[int] = env_int("RACECARD_MAX_DETAILS", 6)

CHROME_CACHE_DIR: Final[str] = os.environ.get(
    "RACECARD_CHROME_DIR", "/opt/render/.cache/puppeteer/chrome"
)
CHROME_EXECUTABLE: Final[Optional[str]] = os.environ.get("RACECARD_CHROME_PATH") or None

DEFAULT_BROWSER_ARGS: Final[List[str]] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-software-rasterizer",
    "--no-zygote",
    "--single-process",
]
BROWSER_ARGS: Final[List[str]] = env_list("RACECARD_BROWSER_ARGS", DEFAULT_BROWSER_ARGS)

DATE_PATTERN: Final = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Schedule / meeting / race-number markers used when no link carries the date.
RACE_KEYWORD_PATTERN: Final = re.compile(
    r"出馬表|開催|レース一覧|\d{1,2}\s*R(?![A-Za-z])|race\s*card|meeting|schedule|\brace\s*\d+",
    re.IGNORECASE,
)

RACE_NAME_SELECTORS: Final[List[str]] = ["h1", ".raceTitle", ".title"]

# "3 HorseName JockeyName" rendered as a list item instead of a table row.
ENTRANT_LINE_PATTERN: Final = re.compile(r"^\s*(\d+)\s+(\S+)\s+(\S+)")
NUMERIC_CELL: Final = re.compile(r"^\d+$")
HAS_NON_NUMERIC: Final = re.compile(r"[^\d\s]")

NO_HREF_NOTE: Final[str] = "no href found"


# --- EXCEPTIONS ---
class RacecardException(Exception):
    """Base exception for all racecard errors."""
    pass


class InvalidDateError(RacecardException):
    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Invalid date {value!r}: expected YYYY-MM-DD")


class BrowserError(RacecardException):
    """Base error for headless-browser failures."""
    pass


class LaunchError(BrowserError):
    """The browser executable is missing or the process could not start."""
    pass


class NavigationError(BrowserError):
    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"Navigation to {url} failed: {message}")


# --- MODELS ---
class RacecardBaseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class RaceListItem(RacecardBaseModel):
    text: str = ""
    href: str = ""


class HorseEntry(RacecardBaseModel):
    num: int = Field(..., ge=1)
    name: str = Field(..., min_length=1)
    jockey: str = ""


class RaceDetail(RacecardBaseModel):
    race_name: str = Field(..., alias="raceName", min_length=1)
    horses: List[HorseEntry] = Field(default_factory=list)


class ResultEntry(RacecardBaseModel):
    """
    One aggregated candidate. Exactly one of detail, error or note is set;
    unset fields are dropped when serializing.
    """
    link: Optional[str] = None
    source_text: str = Field("", alias="sourceText")
    detail: Optional[RaceDetail] = None
    error: Optional[str] = None
    note: Optional[str] = None

    @classmethod
    def success(cls, link: str, source_text: str, detail: RaceDetail) -> "ResultEntry":
        return cls(link=link, source_text=source_text, detail=detail)

    @classmethod
    def failure(cls, link: str, source_text: str, error: str) -> "ResultEntry":
        return cls(link=link, source_text=source_text, error=error)

    @classmethod
    def skipped(cls, source_text: str) -> "ResultEntry":
        return cls(source_text=source_text, note=NO_HREF_NOTE)


class AggregatedResponse(RacecardBaseModel):
    date: str
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="fetchedAt")
    entries: List[ResultEntry] = Field(default_factory=list, alias="list")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- VALIDATION ---
def validate_race_date(value: Optional[str]) -> str:
    value = (value or "").strip()
    if not DATE_PATTERN.match(value):
        raise InvalidDateError(value)
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError as e:
        raise InvalidDateError(value) from e
    return value


# --- BROWSER SESSION ---
def resolve_executable_path() -> Optional[str]:
    """
    An explicit RACECARD_CHROME_PATH wins; otherwise the newest Chrome in the
    Puppeteer cache directory. None lets Playwright use its own Chromium.
    """
    if CHROME_EXECUTABLE:
        if not os.path.isfile(CHROME_EXECUTABLE):
            raise LaunchError(f"Chrome executable not found at: {CHROME_EXECUTABLE}")
        return CHROME_EXECUTABLE
    if not os.path.isdir(CHROME_CACHE_DIR):
        logger.debug("chrome_cache_missing", path=CHROME_CACHE_DIR)
        return None
    try:
        return find_chrome_executable(CHROME_CACHE_DIR)
    except FileNotFoundError as e:
        raise LaunchError(str(e)) from e


class BrowserSession:
    """
    One browser process and one page, owned by a single operation.
    Use as an async context manager so close() runs on every exit path.
    """

    def __init__(self, timeout_ms: int = NAVIGATION_TIMEOUT_MS, headless: bool = True):
        self.timeout_ms = timeout_ms
        self.headless = headless
        self.logger = structlog.get_logger(self.__class__.__name__)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        executable_path = resolve_executable_path()
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                executable_path=executable_path,
                args=BROWSER_ARGS,
                headless=self.headless,
            )
            self._page = await self._browser.new_page()
        except PlaywrightError as e:
            await self.close()
            raise LaunchError(f"Browser failed to start: {e}") from e
        self.logger.debug("browser_opened", executable=executable_path or "bundled")

    async def navigate(self, url: str, timeout_ms: Optional[int] = None) -> None:
        """Loads url and waits until the network has gone idle."""
        if self._page is None:
            raise NavigationError(url, "session is not open")
        timeout = timeout_ms or self.timeout_ms
        self.logger.debug("navigating", url=url, timeout_ms=timeout)
        try:
            await self._page.goto(url, wait_until="networkidle", timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise NavigationError(url, f"timed out after {timeout}ms") from e
        except PlaywrightError as e:
            raise NavigationError(url, str(e)) from e

    async def content(self) -> str:
        """Serialized DOM as it stands now, whether or not loading finished."""
        if self._page is None:
            return ""
        try:
            return await self._page.content()
        except PlaywrightError as e:
            raise NavigationError(self._page.url, f"could not read page content: {e}") from e

    async def close(self) -> None:
        page, browser, playwright = self._page, self._browser, self._playwright
        self._page = self._browser = self._playwright = None
        try:
            if page is not None:
                await page.close()
        except PlaywrightError as e:
            self.logger.warning("page_close_failed", error=str(e))
        finally:
            try:
                if browser is not None:
                    await browser.close()
            except PlaywrightError as e:
                self.logger.warning("browser_close_failed", error=str(e))
            finally:
                if playwright is not None:
                    await playwright.stop()


SessionFactory = Callable[[], BrowserSession]


# --- LIST DISCOVERY ---
def _anchors(parser: HTMLParser) -> List[RaceListItem]:
    items: List[RaceListItem] = []
    for node in parser.css("a"):
        text = clean_text(node.text(separator=" "))
        href = (node.attributes.get("href") or "").strip()
        if text or href:
            items.append(RaceListItem(text=text, href=href))
    return items


def select_race_links(html_content: str, date_str: str, limit: int = MAX_CANDIDATES) -> List[RaceListItem]:
    """
    Picks candidate race links from the index page.

    Primary: href contains YYYYMMDD or the label contains YYYY-MM-DD.
    Fallback, only when the primary pass finds nothing: labels that look like
    a schedule, meeting or race-number link regardless of date.
    """
    anchors = _anchors(HTMLParser(html_content))
    compact = compact_date(date_str)

    matches = [a for a in anchors if compact in a.href or date_str in a.text]
    if not matches:
        logger.info("date_match_empty_using_keywords", date=date_str, anchors=len(anchors))
        matches = [a for a in anchors if RACE_KEYWORD_PATTERN.search(a.text)]
    return matches[:limit]


async def discover_races(date_str: str, session_factory: SessionFactory = BrowserSession) -> List[RaceListItem]:
    """Returns the index page's candidate race links for date_str, in document order."""
    date_str = validate_race_date(date_str)
    async with session_factory() as session:
        await session.navigate(INDEX_URL)
        html_content = await session.content()
    candidates = select_race_links(html_content, date_str)
    logger.info("race_links_discovered", date=date_str, count=len(candidates))
    return candidates


# --- DETAIL EXTRACTION ---
def resolve_race_name(parser: HTMLParser, fallback: str = "") -> str:
    for selector in RACE_NAME_SELECTORS:
        node = parser.css_first(selector)
        if node is not None:
            name = clean_text(node.text(separator=" "))
            if name:
                return name
    title = parser.css_first("title")
    raw_title = title.text() if title is not None else ""
    return clean_text(raw_title) or fallback


def entrants_from_table_rows(parser: HTMLParser) -> List[HorseEntry]:
    # Accepts any numbered row with a textual second cell; decorative numeric
    # rows elsewhere on the page can slip through.
    horses: List[HorseEntry] = []
    for row in parser.css("tr"):
        cells = [clean_text(td.text(separator=" ")) for td in row.css("td")]
        if len(cells) < 3:
            continue
        num_text, name, jockey = cells[0], cells[1], cells[2]
        if not NUMERIC_CELL.match(num_text) or not HAS_NON_NUMERIC.search(name):
            continue
        num = int(num_text)
        if num < 1:
            continue
        horses.append(HorseEntry(num=num, name=name, jockey=jockey))
    return horses


def entrants_from_list_items(parser: HTMLParser) -> List[HorseEntry]:
    horses: List[HorseEntry] = []
    for item in parser.css("li"):
        m = ENTRANT_LINE_PATTERN.match(clean_text(item.text(separator=" ")))
        if not m:
            continue
        num = int(m.group(1))
        if num < 1:
            continue
        horses.append(HorseEntry(num=num, name=m.group(2), jockey=m.group(3)))
    return horses


ENTRANT_RULES: Final[Sequence[Callable[[HTMLParser], List[HorseEntry]]]] = (
    entrants_from_table_rows,
    entrants_from_list_items,
)


def extract_entrants(parser: HTMLParser) -> List[HorseEntry]:
    for rule in ENTRANT_RULES:
        horses = rule(parser)
        if horses:
            logger.debug("entrants_extracted", rule=rule.__name__, count=len(horses))
            return horses
    return []


def parse_race_detail(html_content: str, url: str = "") -> RaceDetail:
    parser = HTMLParser(html_content or "")
    race_name = resolve_race_name(parser, fallback=url or "Unknown race")
    return RaceDetail(race_name=race_name, horses=extract_entrants(parser))


async def extract_race_detail(href: str, session_factory: SessionFactory = BrowserSession) -> RaceDetail:
    """
    Visits one race page and parses it. A navigation failure does not stop the
    parse: slow pages often hold usable markup before the network goes idle.
    """
    url = resolve_url(href, INDEX_URL)
    async with session_factory() as session:
        try:
            await session.navigate(url)
        except NavigationError as e:
            logger.warning("detail_navigation_failed", url=url, error=str(e))
        html_content = await session.content()
    detail = parse_race_detail(html_content, url)
    logger.info("race_detail_extracted", url=url, race_name=detail.race_name, horses=len(detail.horses))
    return detail


# --- AGGREGATOR ---
async def aggregate_races(
    date_str: str,
    session_factory: SessionFactory = BrowserSession,
    max_details: int = MAX_DETAIL_FETCHES,
) -> AggregatedResponse:
    """
    List discovery failures propagate to the caller. Each detail fetch is
    isolated: its failure is recorded on that entry and the loop moves on.
    """
    candidates = await discover_races(date_str, session_factory=session_factory)

    results: List[ResultEntry] = []
    for item in candidates[:max_details]:
        if not item.href:
            results.append(ResultEntry.skipped(item.text))
            continue
        link = resolve_url(item.href, INDEX_URL)
        try:
            detail = await extract_race_detail(link, session_factory=session_factory)
            results.append(ResultEntry.success(link, item.text, detail))
        except Exception as e:
            logger.error("race_detail_failed", url=link, error=str(e))
            results.append(ResultEntry.failure(link, item.text, str(e)))

    logger.info(
        "races_aggregated",
        date=date_str,
        candidates=len(candidates),
        entries=len(results),
        failed=sum(1 for r in results if r.error is not None),
    )
    return AggregatedResponse(date=date_str, entries=results)
