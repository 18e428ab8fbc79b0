import asyncio
import time
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.server.transport_security import TransportSecuritySettings

logger = logging.getLogger("weather-mcp-sessions")


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionStateError(RuntimeError):
    pass


class SessionEntry:
    def __init__(self, session_id: str, transport: StreamableHTTPServerTransport):
        self.session_id = session_id
        self.transport = transport
        self.state = SessionState.UNINITIALIZED
        self.task: Optional[asyncio.Task] = None
        self.last_accessed = time.time()

    def touch(self):
        self.last_accessed = time.time()

    def activate(self):
        """Enter ACTIVE after a successful initialize exchange."""
        if self.state is not SessionState.UNINITIALIZED:
            raise SessionStateError(f"Session {self.session_id} cannot activate from {self.state.value}")
        self.state = SessionState.ACTIVE

    def mark_closed(self) -> bool:
        """Enter CLOSED. Returns False if the session was already closed."""
        if self.state is SessionState.CLOSED:
            return False
        self.state = SessionState.CLOSED
        return True

    @property
    def is_open(self) -> bool:
        return self.state is not SessionState.CLOSED


class SessionStore:
    """Registry of live MCP sessions, keyed by session id.

    Each entry owns a streamable HTTP transport plus the task running an MCP
    server on it. Entries leave the registry on explicit close, when their
    server task ends, on idle eviction, or on stop().
    """

    def __init__(
        self,
        server_factory: Callable[[], Server[Any, Any]],
        json_response: bool = False,
        security_settings: Optional[TransportSecuritySettings] = None,
        timeout_seconds: int = 0,
    ):
        self._server_factory = server_factory
        self._json_response = json_response
        self._security_settings = security_settings
        self._sessions: Dict[str, SessionEntry] = {}
        self._lock = asyncio.Lock()
        self._timeout = timeout_seconds
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False
        self._next_sleep: float = 30.0  # Adaptive sleep interval

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def start(self):
        """Start the idle-session cleanup task (if a timeout is configured)."""
        async with self._lock:
            if self._running:
                return
            self._running = True
            if self._timeout > 0:
                self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info(f"SessionStore started (Idle timeout: {self._timeout or 'disabled'}s)")

    async def stop(self):
        """Stop the cleanup task and close all sessions."""
        async with self._lock:
            if not self._running:
                return
            self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        async with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()

        for entry in entries:
            await self._shutdown(entry)
            if entry.task and not entry.task.done():
                entry.task.cancel()
        logger.info(f"SessionStore stopped and cleared ({len(entries)} sessions closed).")

    def get(self, session_id: str) -> Optional[SessionEntry]:
        """Return the live session for `session_id`, or None."""
        # Single dict read, no lock needed
        entry = self._sessions.get(session_id)
        if entry is None or not entry.is_open:
            return None
        entry.touch()
        logger.debug(f"Routing request to session {session_id}")
        return entry

    async def create(self) -> SessionEntry:
        """Create, register and start a new session with a fresh id."""
        async with self._lock:
            session_id = uuid4().hex
            while session_id in self._sessions:
                session_id = uuid4().hex

            transport = StreamableHTTPServerTransport(
                mcp_session_id=session_id,
                is_json_response_enabled=self._json_response,
                security_settings=self._security_settings,
            )
            entry = SessionEntry(session_id, transport)

            ready: asyncio.Future = asyncio.get_running_loop().create_future()
            entry.task = asyncio.create_task(self._run_session(entry, ready))
            # The transport only accepts requests once its streams are connected
            await ready
            if not entry.is_open:
                raise RuntimeError(f"Session {session_id} closed during startup")

            self._sessions[session_id] = entry
            logger.info(f"Created session {session_id} ({len(self._sessions)} active)")
            return entry

    async def close(self, session_id: str) -> bool:
        """Close and remove a session. Unknown ids are a no-op returning False."""
        async with self._lock:
            entry = self._sessions.pop(session_id, None)
        if entry is None:
            logger.debug(f"Close requested for unknown session {session_id}")
            return False
        logger.info(f"Closing session {session_id}")
        await self._shutdown(entry)
        return True

    async def _shutdown(self, entry: SessionEntry):
        if not entry.mark_closed():
            return
        try:
            await entry.transport.terminate()
        except Exception as e:
            logger.warning(f"Error terminating transport for session {entry.session_id}: {e}")

    def _forget(self, entry: SessionEntry):
        """Drop an entry whose server task has ended."""
        if self._sessions.get(entry.session_id) is entry:
            del self._sessions[entry.session_id]
            logger.info(f"Session {entry.session_id} closed by transport")
        entry.mark_closed()

    async def _run_session(self, entry: SessionEntry, ready: asyncio.Future):
        try:
            server = self._server_factory()
            async with entry.transport.connect() as (read_stream, write_stream):
                ready.set_result(None)
                try:
                    await server.run(
                        read_stream,
                        write_stream,
                        server.create_initialization_options(),
                        stateless=False,
                    )
                except Exception as e:
                    logger.error(f"Session {entry.session_id} crashed: {e}", exc_info=True)
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.error(f"Transport error in session {entry.session_id}: {e}")
        finally:
            self._forget(entry)

    async def _cleanup_loop(self):
        """Background loop to reap idle sessions with adaptive interval."""
        while self._running:
            try:
                await asyncio.sleep(self._next_sleep)
                await self._reap()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")

    async def _reap(self):
        """Close sessions idle for longer than the timeout. Calculates optimal next check interval."""
        now = time.time()
        expired = []
        next_expiry = float('inf')

        async with self._lock:
            for session_id, entry in list(self._sessions.items()):
                age = now - entry.last_accessed
                if age > self._timeout:
                    expired.append(self._sessions.pop(session_id))
                else:
                    next_expiry = min(next_expiry, self._timeout - age)

        # Terminate outside the lock
        for entry in expired:
            logger.info(f"Evicting idle session: {entry.session_id}")
            await self._shutdown(entry)

        if next_expiry == float('inf'):
            # No sessions, sleep longer
            self._next_sleep = 60.0
        else:
            # Sleep until just after next expiry (with bounds)
            self._next_sleep = max(5.0, min(next_expiry + 1.0, 60.0))

        logger.debug(f"Next cleanup in {self._next_sleep:.1f}s ({len(self._sessions)} active sessions)")
