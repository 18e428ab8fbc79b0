import asyncio
import time
import unittest
from unittest.mock import MagicMock

from weather_mcp.server import build_server
from weather_mcp.session_store import (
    SessionEntry,
    SessionState,
    SessionStateError,
    SessionStore,
)


def make_store(**kwargs) -> SessionStore:
    return SessionStore(server_factory=lambda: build_server()._mcp_server, **kwargs)


class TestSessionEntry(unittest.TestCase):
    def test_lifecycle(self):
        entry = SessionEntry("abc", MagicMock())
        self.assertIs(entry.state, SessionState.UNINITIALIZED)
        self.assertTrue(entry.is_open)

        entry.activate()
        self.assertIs(entry.state, SessionState.ACTIVE)

        self.assertTrue(entry.mark_closed())
        self.assertIs(entry.state, SessionState.CLOSED)
        self.assertFalse(entry.is_open)
        # closed is terminal
        self.assertFalse(entry.mark_closed())
        with self.assertRaises(SessionStateError):
            entry.activate()

    def test_cannot_activate_twice(self):
        entry = SessionEntry("abc", MagicMock())
        entry.activate()
        with self.assertRaises(SessionStateError):
            entry.activate()


class TestSessionStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = make_store()
        await self.store.start()

    async def asyncTearDown(self):
        await self.store.stop()

    async def test_create_issues_unique_ids(self):
        first = await self.store.create()
        second = await self.store.create()

        self.assertNotEqual(first.session_id, second.session_id)
        self.assertEqual(len(self.store), 2)
        self.assertEqual(first.transport.mcp_session_id, first.session_id)
        self.assertIs(first.state, SessionState.UNINITIALIZED)

    async def test_get_returns_same_entry(self):
        entry = await self.store.create()
        before = entry.last_accessed

        self.assertIs(self.store.get(entry.session_id), entry)
        self.assertGreaterEqual(entry.last_accessed, before)
        self.assertIsNone(self.store.get("unknown"))

    async def test_close_is_idempotent(self):
        entry = await self.store.create()

        self.assertTrue(await self.store.close(entry.session_id))
        self.assertIs(entry.state, SessionState.CLOSED)
        self.assertIsNone(self.store.get(entry.session_id))
        self.assertNotIn(entry.session_id, self.store)

        self.assertFalse(await self.store.close(entry.session_id))
        self.assertFalse(await self.store.close("never-existed"))

    async def test_transport_close_removes_entry(self):
        entry = await self.store.create()

        await entry.transport.terminate()
        await asyncio.wait_for(entry.task, timeout=5)

        self.assertNotIn(entry.session_id, self.store)
        self.assertIs(entry.state, SessionState.CLOSED)

    async def test_concurrent_create_and_close(self):
        entries = await asyncio.gather(*(self.store.create() for _ in range(20)))

        ids = {entry.session_id for entry in entries}
        self.assertEqual(len(ids), 20)
        self.assertEqual(len(self.store), 20)

        # each id closed twice at once: exactly one close wins
        session_ids = [entry.session_id for entry in entries] * 2
        closed = await asyncio.gather(*(self.store.close(sid) for sid in session_ids))

        self.assertEqual(sum(closed), 20)
        self.assertEqual(len(self.store), 0)
        for entry in entries:
            self.assertIs(entry.state, SessionState.CLOSED)

    async def test_stop_closes_everything(self):
        entries = [await self.store.create() for _ in range(3)]

        await self.store.stop()

        self.assertEqual(len(self.store), 0)
        for entry in entries:
            self.assertIs(entry.state, SessionState.CLOSED)

    async def test_create_fails_when_server_cannot_be_built(self):
        store = SessionStore(server_factory=MagicMock(side_effect=RuntimeError("no server")))

        with self.assertRaises(RuntimeError):
            await store.create()
        self.assertEqual(len(store), 0)


class TestIdleEviction(unittest.IsolatedAsyncioTestCase):
    async def test_reap_evicts_idle_sessions(self):
        store = make_store(timeout_seconds=60)
        idle = await store.create()
        fresh = await store.create()
        idle.last_accessed = time.time() - 120

        await store._reap()

        self.assertNotIn(idle.session_id, store)
        self.assertIs(idle.state, SessionState.CLOSED)
        self.assertIs(store.get(fresh.session_id), fresh)
        self.assertEqual(store._next_sleep, 60.0)

        await store.close(fresh.session_id)

    async def test_reap_with_no_sessions_sleeps_longer(self):
        store = make_store(timeout_seconds=10)

        await store._reap()

        self.assertEqual(store._next_sleep, 60.0)

    async def test_start_without_timeout_has_no_cleanup_task(self):
        store = make_store(timeout_seconds=0)
        await store.start()
        self.assertIsNone(store._cleanup_task)
        await store.stop()


if __name__ == "__main__":
    unittest.main()
