"""
HTTP front end for the racecard pipeline.

    GET /                     usage descriptor
    GET /health               liveness
    GET /race?date=YYYY-MM-DD aggregated race names and entrants
"""
import argparse
import logging
import os
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import racecard
from racecard import InvalidDateError, aggregate_races

logger = structlog.get_logger(__name__)

DEFAULT_HOST = os.environ.get("HOST", "0.0.0.0")
DEFAULT_PORT = int(os.environ.get("PORT", "3000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

USAGE = {
    "service": "racecard",
    "usage": "GET /race?date=YYYY-MM-DD",
    "endpoints": {
        "/": "this descriptor",
        "/health": "liveness check",
        "/race": "race names and entrants for the given date",
    },
}

app = FastAPI(title="Racecard API", description="Race names and entrants by date")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


def configure_logging(level: str = LOG_LEVEL) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )


@app.get("/")
async def usage():
    return USAGE


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/race")
async def race(date: Optional[str] = None):
    if not date or not date.strip():
        return JSONResponse(status_code=400, content={"error": "date query parameter is required (YYYY-MM-DD)"})

    try:
        result = await aggregate_races(date)
    except InvalidDateError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.error("race_request_failed", date=date, error=str(e), index_url=racecard.INDEX_URL)
        return JSONResponse(status_code=500, content={"error": str(e)})

    return JSONResponse(content=result.to_payload())


def main() -> None:
    parser = argparse.ArgumentParser(description="Racecard HTTP API")
    parser.add_argument("--host", type=str, default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    parser.add_argument("--log-level", type=str, default=LOG_LEVEL, help="structlog level (default: INFO)")
    args = parser.parse_args()

    configure_logging(args.log_level)
    logger.info("server_starting", host=args.host, port=args.port, index_url=racecard.INDEX_URL)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
