"""Streamable HTTP MCP server.

Exposes the weather MCP server at /mcp with explicit session handling:
- POST /mcp routes to an existing session, or creates one for an initialize request
- DELETE /mcp closes a session
- GET / is a plaintext banner
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from mcp import types
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from mcp.server.transport_security import TransportSecuritySettings
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from . import config
from .server import build_server
from .session_store import SessionStore

logger = logging.getLogger("weather-mcp-server")

NO_SESSION_MESSAGE = "Bad Request: No valid session ID provided"
BANNER = "MCP Weather server is running. POST JSON-RPC to /mcp"


def is_initialize_request(payload: Any) -> bool:
    """True if `payload` is a well-formed JSON-RPC initialize request."""
    if not isinstance(payload, dict) or payload.get("method") != "initialize":
        return False
    try:
        types.JSONRPCRequest.model_validate(payload)
        types.InitializeRequestParams.model_validate(payload.get("params"))
    except ValidationError:
        return False
    return True


def no_session_response() -> JSONResponse:
    return JSONResponse(
        {
            "jsonrpc": "2.0",
            "error": {"code": -32000, "message": NO_SESSION_MESSAGE},
            "id": None,
        },
        status_code=400,
    )


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None


def _replay(body: bytes, receive: Receive) -> Receive:
    """Receive callable that yields an already-read body once, then defers to `receive`."""
    pending = True

    async def replay() -> Message:
        nonlocal pending
        if pending:
            pending = False
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _without_session_header(scope: Scope) -> Scope:
    header = MCP_SESSION_ID_HEADER.lower().encode("latin-1")
    headers = [(k, v) for k, v in scope["headers"] if k.lower() != header]
    return {**scope, "headers": headers}


class SessionRouter:
    """ASGI endpoint for /mcp backed by a SessionStore."""

    def __init__(self, store: SessionStore):
        self.store = store

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            request = Request(scope, receive)
            if request.method == "DELETE":
                response = await self.handle_delete(request)
                await response(scope, receive, tracking_send)
            else:
                await self.handle_post(request, tracking_send)
        except Exception as e:
            logger.exception(f"Error handling {scope.get('method')} /mcp")
            if not started:
                response = PlainTextResponse(str(e) or "Internal error", status_code=500)
                await response(scope, receive, send)

    async def handle_post(self, request: Request, send: Send) -> None:
        scope = request.scope
        body = await request.body()
        receive = _replay(body, request.receive)

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        entry = self.store.get(session_id) if session_id else None
        if entry is not None:
            await entry.transport.handle_request(scope, receive, send)
            return

        if not is_initialize_request(_parse_json(body)):
            logger.debug(f"Rejecting request without a valid session (header: {session_id!r})")
            await no_session_response()(scope, receive, send)
            return

        entry = await self.store.create()
        status: Optional[int] = None

        async def capture_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            # A stale session id would make the new transport reject the initialize request
            await entry.transport.handle_request(_without_session_header(scope), receive, capture_status)
        finally:
            if status is not None and 200 <= status < 300 and entry.is_open:
                entry.activate()
            else:
                logger.info(f"Initialize for session {entry.session_id} failed (HTTP {status}), discarding")
                await self.store.close(entry.session_id)

    async def handle_delete(self, request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id:
            await self.store.close(session_id)
        return Response(status_code=204)


async def banner(request: Request) -> PlainTextResponse:
    return PlainTextResponse(BANNER)


def _security_settings() -> TransportSecuritySettings:
    if config.ALLOWED_HOSTS:
        return TransportSecuritySettings(
            enable_dns_rebinding_protection=True,
            allowed_hosts=config.ALLOWED_HOSTS,
        )
    # Allow connections from any host
    return TransportSecuritySettings(enable_dns_rebinding_protection=False)


def create_store() -> SessionStore:
    return SessionStore(
        server_factory=lambda: build_server()._mcp_server,
        json_response=config.JSON_RESPONSE,
        security_settings=_security_settings(),
        timeout_seconds=config.SESSION_TIMEOUT,
    )


def create_app(store: Optional[SessionStore] = None) -> Starlette:
    if store is None:
        store = create_store()

    @asynccontextmanager
    async def lifespan(app):
        """Run the session store's cleanup loop; close every session on shutdown."""
        await store.start()
        try:
            yield
        finally:
            await store.stop()

    app = Starlette(
        routes=[
            Route("/", banner, methods=["GET"]),
            Route("/mcp", SessionRouter(store), methods=["POST", "DELETE"]),
        ],
        lifespan=lifespan,
    )
    app.state.sessions = store
    return app


app = create_app()


def main() -> None:
    logger.info(f"MCP Weather server on http://{config.HOST}:{config.PORT}/mcp")
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
