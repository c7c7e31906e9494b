import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

import requests

logger = logging.getLogger(__name__)

TIME_ZONE = "Europe/Budapest"
REQUEST_TIMEOUT = 5  # seconds
TIMEZONEDB_FORMAT = "%Y-%m-%d %H:%M:%S"


class NetworkTimeError(Exception):
    pass


def parse_timezonedb_response(payload: dict) -> datetime:
    if payload.get("status") and payload.get("status") != "OK":
        raise NetworkTimeError(f"TimeZoneDB API error: {payload.get('message', 'Unknown error')}")
    formatted = payload.get("formatted")
    if not formatted:
        raise NetworkTimeError("Failed to parse TimeZoneDB response")
    return datetime.strptime(formatted, TIMEZONEDB_FORMAT)


def parse_worldtimeapi_response(payload: dict) -> datetime:
    value = payload.get("datetime")
    if not value:
        raise NetworkTimeError("Failed to parse WorldTimeAPI response")
    # Local wall-clock time, offset dropped
    return datetime.fromisoformat(value).replace(tzinfo=None)


def get_time_sources() -> List[Tuple[str, Callable[[dict], datetime]]]:
    """Ordered (url, parser) pairs; TimeZoneDB is only tried when a key is configured"""
    sources = []
    api_key = os.getenv("TIME_API_KEY")
    if api_key:
        sources.append((
            f"http://api.timezonedb.com/v2.1/get-time-zone?key={api_key}&format=json&by=zone&zone={TIME_ZONE}",
            parse_timezonedb_response,
        ))
    sources.append((f"https://worldtimeapi.org/api/timezone/{TIME_ZONE}", parse_worldtimeapi_response))
    return sources


def system_time() -> datetime:
    return datetime.now(ZoneInfo(TIME_ZONE)).replace(tzinfo=None)


def fetch_time(url: str, parser: Callable[[dict], datetime], timeout: float = REQUEST_TIMEOUT) -> datetime:
    response = requests.get(
        url,
        timeout=timeout,
        headers={"Accept": "application/json", "User-Agent": "EduCore/1.0"},
    )
    if response.status_code != 200:
        raise NetworkTimeError(f"Time API returned status: {response.status_code}")
    return parser(response.json())


def get_network_time(timeout: float = REQUEST_TIMEOUT, sources: Optional[list] = None) -> datetime:
    """
    Current local time from the first time source that answers.

    Falls back to the system clock (same time zone) when every source fails,
    so callers always get a usable value.
    """
    for url, parser in sources if sources is not None else get_time_sources():
        try:
            logger.debug(f"Fetching time from {url.split('?')[0]}")
            return fetch_time(url, parser, timeout)
        except (requests.RequestException, NetworkTimeError, ValueError) as e:
            logger.warning(f"⚠️ Time source {url.split('?')[0]} failed: {e}")

    logger.warning("⚠️ Falling back to system time")
    return system_time()


async def get_network_time_async(timeout: float = REQUEST_TIMEOUT) -> datetime:
    """Run the blocking fetch in a worker thread"""
    return await asyncio.to_thread(get_network_time, timeout)
