import logging
import os

logger = logging.getLogger("weather-mcp-server")


def _env_truthy(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


def _env_list(name: str) -> list[str]:
    value = os.getenv(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Transport
JSON_RESPONSE = _env_truthy("WEATHER_MCP_JSON_RESPONSE", default=False)
ALLOWED_HOSTS = _env_list("WEATHER_MCP_ALLOWED_HOSTS")

# Idle sessions are evicted after this many seconds (0 disables eviction)
SESSION_TIMEOUT = _env_int("WEATHER_MCP_SESSION_TIMEOUT", 1800)

# Upstream (Open-Meteo, no API key)
HTTP_TIMEOUT = _env_float("WEATHER_MCP_HTTP_TIMEOUT", 10.0)
GEOCODING_URL = os.getenv(
    "WEATHER_MCP_GEOCODING_URL", "https://geocoding-api.open-meteo.com/v1/search"
)
FORECAST_URL = os.getenv(
    "WEATHER_MCP_FORECAST_URL", "https://api.open-meteo.com/v1/forecast"
)
