from __future__ import annotations

import logging
from typing import Annotated, Literal

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from . import config
from .tools import weather

# Configure Logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger("weather-mcp-server")

SERVER_NAME = "weather-mcp"


def build_server() -> FastMCP:
    """Build an MCP server exposing the weather_by_city tool.

    The HTTP router builds one of these per session.
    """
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool(
        name="weather_by_city",
        title="Weather by City",
        description="Get current weather and a 6-hour hourly forecast for a city via Open-Meteo",
    )
    async def weather_by_city(
        city: Annotated[str, Field(min_length=2, description="City name, optionally with state/country")],
        units: Literal["metric", "imperial"] = "metric",
    ):
        logger.info(f"weather_by_city(city={city!r}, units={units})")
        return await weather.lookup_weather(city, units)

    return mcp
