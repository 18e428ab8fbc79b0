from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import httpx
from mcp.types import ContentBlock, ResourceLink, TextContent

from .. import config

logger = logging.getLogger("weather-mcp")

Units = Literal["metric", "imperial"]

HOURLY_LIMIT = 6

CURRENT_FIELDS = "temperature_2m,wind_speed_10m,precipitation"
HOURLY_FIELDS = "temperature_2m,precipitation_probability"

# units -> (temperature_unit, wind_speed_unit, temperature label, wind label)
_UNIT_SYSTEMS: dict[str, tuple[str, str, str, str]] = {
    "metric": ("celsius", "kmh", "°C", "km/h"),
    "imperial": ("fahrenheit", "mph", "°F", "mph"),
}


class WeatherLookupError(Exception):
    """An upstream Open-Meteo call answered with a non-success status."""

    def __init__(self, step: str, status_code: int):
        self.step = step
        self.status_code = status_code
        super().__init__(f"{step} failed: {status_code}")


@dataclass(frozen=True)
class Location:
    name: str
    latitude: float
    longitude: float
    admin1: str | None = None
    country_code: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.name}, {self.admin1 or ''} {self.country_code or ''}".strip()


@dataclass(frozen=True)
class HourlyEntry:
    time: str
    temperature: Any = None
    precipitation_probability: Any = None


@dataclass
class WeatherReport:
    location: Location
    units: Units
    source_url: str
    temperature: Any = None
    wind_speed: Any = None
    precipitation: Any = None
    hourly: list[HourlyEntry] = field(default_factory=list)


def _unit_system(units: str) -> tuple[str, str, str, str]:
    return _UNIT_SYSTEMS["imperial" if units == "imperial" else "metric"]


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _fmt(value: Any) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _fmt_hour(timestamp: str) -> str:
    """Render an ISO local timestamp as an hour of day ("3 PM")."""
    try:
        moment = datetime.fromisoformat(timestamp)
    except (TypeError, ValueError):
        return str(timestamp)
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{moment.hour % 12 or 12} {suffix}"


def _series(hourly: dict[str, Any], key: str) -> list[Any]:
    values = hourly.get(key)
    if not isinstance(values, list):
        return []
    return values[:HOURLY_LIMIT]


def no_match_message(city: str) -> str:
    return f'No match for "{city}". Try including state/country (e.g., "Nashik, IN").'


def build_forecast_url(location: Location, units: Units) -> str:
    temperature_unit, wind_speed_unit, _, _ = _unit_system(units)
    params = {
        "latitude": str(location.latitude),
        "longitude": str(location.longitude),
        "current": CURRENT_FIELDS,
        "hourly": HOURLY_FIELDS,
        "temperature_unit": temperature_unit,
        "wind_speed_unit": wind_speed_unit,
        "forecast_days": "1",
        "timezone": "auto",
    }
    return str(httpx.URL(config.FORECAST_URL, params=params))


async def geocode(client: httpx.AsyncClient, city: str) -> Location | None:
    """Resolve a city name to its best Open-Meteo match, or None."""
    params = {"name": city, "count": "1", "language": "en", "format": "json"}
    resp = await client.get(config.GEOCODING_URL, params=params)
    if not resp.is_success:
        logger.warning(f"Geocoding '{city}' returned HTTP {resp.status_code}")
        raise WeatherLookupError("Geocoding", resp.status_code)

    payload = resp.json()
    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, list) or not results:
        return None

    match = results[0]
    if not isinstance(match, dict) or match.get("latitude") is None or match.get("longitude") is None:
        logger.warning(f"Unusable geocoding match for '{city}': {match!r}")
        return None
    return Location(
        name=match.get("name") or city,
        latitude=float(match["latitude"]),
        longitude=float(match["longitude"]),
        admin1=match.get("admin1"),
        country_code=match.get("country_code"),
    )


def parse_forecast(location: Location, units: Units, payload: Any, url: str) -> WeatherReport:
    """Build a report from a forecast payload; missing fields stay None."""
    if not isinstance(payload, dict):
        payload = {}
    current = payload.get("current") or payload.get("current_weather") or {}
    if not isinstance(current, dict):
        current = {}
    hourly = payload.get("hourly") or {}
    if not isinstance(hourly, dict):
        hourly = {}

    times = _series(hourly, "time")
    temps = _series(hourly, "temperature_2m")
    pops = _series(hourly, "precipitation_probability")

    entries = [
        HourlyEntry(
            time=t,
            temperature=temps[i] if i < len(temps) else None,
            precipitation_probability=pops[i] if i < len(pops) else None,
        )
        for i, t in enumerate(times)
    ]

    return WeatherReport(
        location=location,
        units=units,
        source_url=url,
        temperature=_first(current, "temperature_2m", "temperature"),
        wind_speed=_first(current, "wind_speed_10m", "windspeed"),
        precipitation=_first(current, "precipitation"),
        hourly=entries,
    )


async def fetch_forecast(client: httpx.AsyncClient, location: Location, units: Units) -> WeatherReport:
    url = build_forecast_url(location, units)
    resp = await client.get(url)
    if not resp.is_success:
        logger.warning(f"Forecast for {location.display_name} returned HTTP {resp.status_code}")
        raise WeatherLookupError("Forecast", resp.status_code)
    return parse_forecast(location, units, resp.json(), url)


def format_report(report: WeatherReport) -> str:
    _, _, temp_label, wind_label = _unit_system(report.units)
    loc = report.location
    lines = [
        f"Weather for {loc.display_name} ({loc.latitude:.2f}, {loc.longitude:.2f})",
        f"Now: {_fmt(report.temperature)}{temp_label}, wind {_fmt(report.wind_speed)} {wind_label}, "
        f"precip {_fmt(report.precipitation)}",
        "Next 6 hours (temp, pop%):",
    ]
    for entry in report.hourly:
        lines.append(
            f"  {_fmt_hour(entry.time)}: {_fmt(entry.temperature)}°, "
            f"{_fmt(entry.precipitation_probability)}%"
        )
    return "\n".join(lines)


def report_link(report: WeatherReport) -> ResourceLink:
    return ResourceLink(
        type="resource_link",
        uri=report.source_url,
        name="Open-Meteo API call",
        mimeType="application/json",
        description="Raw forecast JSON",
    )


async def lookup_weather(
    city: str,
    units: Units = "metric",
    client: httpx.AsyncClient | None = None,
) -> list[ContentBlock]:
    """Geocode `city`, fetch its forecast and return text + resource link.

    The forecast request is only issued once geocoding yields a location.
    An empty geocoding result is a normal answer, not an error.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT) as owned:
            return await lookup_weather(city, units, owned)

    location = await geocode(client, city)
    if location is None:
        logger.info(f"No geocoding match for '{city}'")
        return [TextContent(type="text", text=no_match_message(city))]

    report = await fetch_forecast(client, location, units)
    return [TextContent(type="text", text=format_report(report)), report_link(report)]
