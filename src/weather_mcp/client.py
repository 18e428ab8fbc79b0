"""Companion test client for the weather MCP server.

Drives the streamable HTTP handshake by hand: initialize, initialized
notification, tools/call weather_by_city, then closes the session.
Run: weather-mcp-client --city Austin --units imperial
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from mcp.types import LATEST_PROTOCOL_VERSION

logger = logging.getLogger("weather-mcp-client")

DEFAULT_URL = "http://127.0.0.1:3000/mcp"
SESSION_HEADER = "mcp-session-id"
BASE_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


class ResponseDecoder(ABC):
    """Turns an MCP HTTP response body into a JSON-RPC message."""

    @abstractmethod
    def decode(self, response: httpx.Response) -> Any:
        ...


class JSONResponseDecoder(ResponseDecoder):
    def decode(self, response: httpx.Response) -> Any:
        return response.json()


class EventStreamDecoder(ResponseDecoder):
    """Collects `data:` lines; the last one holding valid JSON wins."""

    def decode(self, response: httpx.Response) -> Any:
        text = response.text
        data_lines = [
            line[5:].strip()
            for line in text.splitlines()
            if line.startswith("data:")
        ]
        last = None
        for data in data_lines:
            if not data:
                continue
            try:
                last = json.loads(data)
            except ValueError:
                # non-JSON frames are skipped
                continue
        if last is None:
            return {"sseRaw": text}
        return last


def decoder_for(content_type: str | None) -> ResponseDecoder:
    if content_type and "application/json" in content_type:
        return JSONResponseDecoder()
    return EventStreamDecoder()


def read_response(response: httpx.Response) -> Any:
    return decoder_for(response.headers.get("content-type")).decode(response)


class WeatherClient:
    def __init__(self, url: str = DEFAULT_URL, http: httpx.AsyncClient | None = None):
        self.url = url
        self.session_id: str | None = None
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._owns_http = http is None
        self._next_id = 1

    async def __aenter__(self) -> "WeatherClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        headers = dict(BASE_HEADERS)
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        return await self._http.post(self.url, json=payload, headers=self._headers())

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": self._next_id, "method": method}
        if params is not None:
            payload["params"] = params
        self._next_id += 1
        resp = await self._post(payload)
        return read_response(resp)

    async def initialize(self) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": "initialize",
            "params": {
                "protocolVersion": LATEST_PROTOCOL_VERSION,
                "clientInfo": {"name": "weather-mcp-client", "version": "1.0.0"},
                "capabilities": {},
            },
        }
        self._next_id += 1
        resp = await self._post(payload)
        self.session_id = resp.headers.get(SESSION_HEADER)
        result = read_response(resp)
        if not self.session_id:
            raise RuntimeError(f"No session id header returned (HTTP {resp.status_code})")
        logger.info(f"Initialized session {self.session_id}")

        notice = await self._post({"jsonrpc": "2.0", "method": "notifications/initialized"})
        notice.raise_for_status()
        return result

    async def call_weather(self, city: str, units: str = "metric") -> Any:
        return await self.request(
            "tools/call",
            {"name": "weather_by_city", "arguments": {"city": city, "units": units}},
        )

    async def close_session(self) -> None:
        if not self.session_id:
            return
        await self._http.delete(self.url, headers={SESSION_HEADER: self.session_id})
        logger.info(f"Closed session {self.session_id}")
        self.session_id = None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


async def run(url: str, city: str, units: str, keep_session: bool = False) -> Any:
    async with WeatherClient(url) as client:
        init = await client.initialize()
        print("initialize:", json.dumps(init, indent=2), "session:", client.session_id)
        result = await client.call_weather(city, units)
        print("tool result:", json.dumps(result, indent=2))
        if not keep_session:
            await client.close_session()
        return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Call weather_by_city on a weather MCP server.")
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--city", default="Austin")
    parser.add_argument("--units", choices=["metric", "imperial"], default="imperial")
    parser.add_argument("--keep-session", action="store_true", help="do not DELETE the session afterwards")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    asyncio.run(run(args.url, args.city, args.units, args.keep_session))


if __name__ == "__main__":
    main()
