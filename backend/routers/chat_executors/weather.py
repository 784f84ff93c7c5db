"""
Parley Chat Executors - Weather

Current conditions from Open-Meteo: the place name is geocoded first, then
the forecast API is asked for current values. No API key is needed.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from errors import ExternalServiceError, NotFoundError, handle_async_tool_errors
from .common import clean_place_name, http_session

logger = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
WEATHER_TIMEOUT_S = 10.0

# WMO weather interpretation codes
WEATHER_CODES = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow fall",
    73: "Moderate snow fall",
    75: "Heavy snow fall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


async def _get_json(client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        response = await client.get(url, params=params, timeout=WEATHER_TIMEOUT_S)
        response.raise_for_status()
        return response.json()
    except httpx.TimeoutException:
        raise ExternalServiceError(
            "Weather service timed out",
            details="The weather lookup took too long. Try again in a moment.",
            service="weather",
        )
    except httpx.HTTPStatusError as e:
        raise ExternalServiceError(
            "Weather service error",
            details=f"Weather service returned status {e.response.status_code}",
            service="weather",
            status_code=e.response.status_code,
        )
    except (httpx.RequestError, ValueError):
        raise ExternalServiceError(
            "Weather service unavailable",
            details="Could not reach the weather service",
            service="weather",
        )


async def geocode(client: httpx.AsyncClient, location: str) -> Optional[Dict[str, Any]]:
    """Best match for a place name, or None."""
    data = await _get_json(client, GEOCODING_URL, {"name": location, "count": 1, "language": "en", "format": "json"})
    results = data.get("results") or []
    return results[0] if results else None


def _place_label(place: Dict[str, Any]) -> str:
    parts = [place.get("name"), place.get("admin1"), place.get("country")]
    seen = []
    for part in parts:
        if part and part not in seen:
            seen.append(part)
    return ", ".join(seen)


@handle_async_tool_errors("get_weather")
async def execute_get_weather(location: str, http_client=None) -> Dict[str, Any]:
    """
    Current weather for a place.

    Args:
        location: City or place name

    Returns:
        Temperature, feels-like, humidity, wind and a text description
    """
    location = clean_place_name(location)

    async with http_session(http_client, WEATHER_TIMEOUT_S) as client:
        place = await geocode(client, location)
        if place is None:
            raise NotFoundError(
                f"I couldn't find a place called '{location}'",
                details="Check the spelling or try a nearby city.",
                resource_type="location",
                resource_id=location,
            )

        data = await _get_json(
            client,
            FORECAST_URL,
            {
                "latitude": place["latitude"],
                "longitude": place["longitude"],
                "current": "temperature_2m,apparent_temperature,relative_humidity_2m,weather_code,wind_speed_10m",
                "timezone": "auto",
            },
        )

    current = data.get("current") or {}
    if "temperature_2m" not in current:
        raise ExternalServiceError(
            "Weather service returned no current conditions",
            details=f"No current data for {location}",
            service="weather",
        )

    units = data.get("current_units") or {}
    code = current.get("weather_code")
    return {
        "success": True,
        "location": _place_label(place),
        "temperature": current["temperature_2m"],
        "feels_like": current.get("apparent_temperature"),
        "humidity": current.get("relative_humidity_2m"),
        "wind_speed": current.get("wind_speed_10m"),
        "units": {
            "temperature": units.get("temperature_2m", "°C"),
            "wind_speed": units.get("wind_speed_10m", "km/h"),
        },
        "conditions": WEATHER_CODES.get(code, "Unknown"),
        "observed_at": current.get("time"),
    }
