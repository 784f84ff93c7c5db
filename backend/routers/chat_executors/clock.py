"""
Parley Chat Executors - Clock

Local time for a city or IANA time zone, computed with zoneinfo (DST
aware).
"""

from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

from errors import NotFoundError, handle_tool_errors
from .common import clean_place_name

# Common names that are not the city part of an IANA zone
CITY_ALIASES = {
    "new york": "America/New_York",
    "ny": "America/New_York",
    "nyc": "America/New_York",
    "washington": "America/New_York",
    "washington dc": "America/New_York",
    "dc": "America/New_York",
    "boston": "America/New_York",
    "miami": "America/New_York",
    "atlanta": "America/New_York",
    "austin": "America/Chicago",
    "dallas": "America/Chicago",
    "houston": "America/Chicago",
    "california": "America/Los_Angeles",
    "la": "America/Los_Angeles",
    "san francisco": "America/Los_Angeles",
    "san diego": "America/Los_Angeles",
    "seattle": "America/Los_Angeles",
    "portland": "America/Los_Angeles",
    "las vegas": "America/Los_Angeles",
    "beijing": "Asia/Shanghai",
    "mumbai": "Asia/Kolkata",
    "delhi": "Asia/Kolkata",
    "new delhi": "Asia/Kolkata",
    "bangalore": "Asia/Kolkata",
    "utc": "UTC",
    "gmt": "Etc/GMT",
}


@lru_cache(maxsize=1)
def _zones_by_city() -> Dict[str, str]:
    """Map 'tokyo' -> 'Asia/Tokyo' for every zone with a city component."""
    index: Dict[str, str] = {}
    for zone in sorted(available_timezones()):
        if "/" not in zone or zone.startswith(("Etc/", "SystemV/")):
            continue
        city = zone.rsplit("/", 1)[1].replace("_", " ").lower()
        index.setdefault(city, zone)
    return index


def resolve_timezone(location: str) -> Optional[str]:
    """IANA zone name for a city or zone string, or None."""
    name = clean_place_name(location)
    key = name.lower()
    if key in CITY_ALIASES:
        return CITY_ALIASES[key]
    if "/" in name:
        try:
            ZoneInfo(name)
            return name
        except (ZoneInfoNotFoundError, ValueError):
            return None
    # "Paris, France" -> "paris"
    city = key.split(",")[0].strip()
    return CITY_ALIASES.get(city) or _zones_by_city().get(city)


@handle_tool_errors("get_time")
def execute_get_time(location: str) -> Dict[str, Any]:
    """Current local time at ``location``."""
    zone = resolve_timezone(location)
    if zone is None:
        raise NotFoundError(
            f"I don't know which time zone '{location}' is in",
            details="Try a major city nearby or an IANA zone like Europe/Berlin.",
            resource_type="location",
            resource_id=location,
        )

    now = datetime.now(ZoneInfo(zone))
    return {
        "success": True,
        "location": clean_place_name(location),
        "timezone": zone,
        "local_time": now.strftime("%A, %B %d, %Y %I:%M %p"),
        "iso": now.isoformat(timespec="seconds"),
        "utc_offset": now.strftime("%z"),
        "abbreviation": now.tzname(),
    }
