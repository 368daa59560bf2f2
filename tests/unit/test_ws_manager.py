"""
Unit tests for the WebSocket connection registry.

Tests:
- WSEvent serialization (destination included)
- register/unregister lifecycle and per-tier limits
- send_to_user reaches every session of the user, and only that user
- A removed session never receives another event
- Expired sessions force-closed with 4001 on send and by close_expired
- Failed or slow sends close the session
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from app.services.ws_manager import (
    ConnectionRegistry,
    WSEvent,
    WSEventType,
    user_destination,
)


def _in(seconds: float) -> datetime:
    return datetime.now(UTC) + timedelta(seconds=seconds)


def _notice(user_id: str = "U2") -> WSEvent:
    return WSEvent(
        event=WSEventType.TASK_CHANGED,
        data={"action": "updated", "task_id": "t1"},
        destination=user_destination(user_id),
    )


# ─── WSEvent Tests ───────────────────────────────────────────


class TestWSEvent:
    """Tests for WebSocket event serialization."""

    def test_to_json_basic(self):
        parsed = json.loads(WSEvent(event=WSEventType.WELCOME, data={"user_id": "abc"}).to_json())
        assert parsed["event"] == "welcome"
        assert parsed["data"]["user_id"] == "abc"
        assert "timestamp" in parsed
        assert "destination" not in parsed

    def test_to_json_with_destination(self):
        parsed = json.loads(_notice("U2").to_json())
        assert parsed["destination"] == "/user/U2/topic/notifications"

    def test_all_event_types_serializable(self):
        for event_type in WSEventType:
            parsed = json.loads(WSEvent(event=event_type).to_json())
            assert parsed["event"] == event_type.value


# ─── Registry Lifecycle ──────────────────────────────────────


class TestRegistration:

    async def test_register_and_count(self, ws_factory):
        registry = ConnectionRegistry()
        session = await registry.register("U1", ws_factory(), _in(60))
        assert session is not None
        assert session.user_id == "U1"
        assert registry.get_connection_count("U1") == 1
        assert registry.total_connections == 1

    async def test_limit_enforced(self, ws_factory):
        registry = ConnectionRegistry()
        await registry.register("U1", ws_factory(), _in(60), limit=2)
        await registry.register("U1", ws_factory(), _in(60), limit=2)
        assert await registry.register("U1", ws_factory(), _in(60), limit=2) is None
        assert registry.get_connection_count("U1") == 2

    async def test_limit_is_per_user(self, ws_factory):
        registry = ConnectionRegistry()
        await registry.register("U1", ws_factory(), _in(60), limit=1)
        assert await registry.register("U2", ws_factory(), _in(60), limit=1) is not None

    async def test_unregister_idempotent(self, ws_factory):
        registry = ConnectionRegistry()
        session = await registry.register("U1", ws_factory(), _in(60))
        assert await registry.unregister(session) is True
        assert await registry.unregister(session) is False
        assert session.closed is True
        assert registry.get_connection_count("U1") == 0

    async def test_concurrent_registers_respect_limit(self, ws_factory):
        registry = ConnectionRegistry()
        results = await asyncio.gather(
            *(registry.register("U1", ws_factory(), _in(60), limit=3) for _ in range(10))
        )
        assert sum(1 for s in results if s is not None) == 3
        assert registry.get_connection_count("U1") == 3

    async def test_user_locks_released_after_disconnect(self, ws_factory):
        registry = ConnectionRegistry()
        for i in range(1000):
            session = await registry.register(f"U{i}", ws_factory(), _in(60))
            await registry.unregister(session)

        assert registry.total_connections == 0
        assert registry._locks == {}

    async def test_concurrent_sessions_leave_no_locks(self, ws_factory):
        registry = ConnectionRegistry()
        sessions = await asyncio.gather(
            *(registry.register("U1", ws_factory(), _in(60), limit=2) for _ in range(5))
        )
        assert registry._locks == {}

        await asyncio.gather(*(registry.unregister(s) for s in sessions if s is not None))
        assert registry._locks == {}
        assert registry.get_connection_count("U1") == 0

    async def test_rejected_register_releases_lock(self, ws_factory):
        registry = ConnectionRegistry()
        assert await registry.register("U1", ws_factory(), _in(60), limit=0) is None
        assert registry._locks == {}
        assert registry.get_connection_count("U1") == 0


# ─── Delivery ────────────────────────────────────────────────


class TestSendToUser:

    async def test_all_sessions_of_user_receive(self, ws_factory):
        """Two sessions for U2 both receive the notice."""
        registry = ConnectionRegistry()
        ws_a, ws_b = ws_factory(), ws_factory()
        await registry.register("U2", ws_a, _in(60))
        await registry.register("U2", ws_b, _in(60))

        delivered = await registry.send_to_user("U2", _notice())

        assert delivered == 2
        ws_a.send_text.assert_awaited_once()
        ws_b.send_text.assert_awaited_once()

    async def test_closing_one_session_leaves_other(self, ws_factory):
        registry = ConnectionRegistry()
        ws_a, ws_b = ws_factory(), ws_factory()
        session_a = await registry.register("U2", ws_a, _in(60))
        await registry.register("U2", ws_b, _in(60))

        await registry.unregister(session_a)
        delivered = await registry.send_to_user("U2", _notice())

        assert delivered == 1
        ws_a.send_text.assert_not_awaited()
        ws_b.send_text.assert_awaited_once()

    async def test_other_users_not_reached(self, ws_factory):
        registry = ConnectionRegistry()
        ws_u1, ws_u2 = ws_factory(), ws_factory()
        await registry.register("U1", ws_u1, _in(60))
        await registry.register("U2", ws_u2, _in(60))

        await registry.send_to_user("U2", _notice())

        ws_u1.send_text.assert_not_awaited()

    async def test_no_sessions_returns_zero(self):
        assert await ConnectionRegistry().send_to_user("nobody", _notice()) == 0

    async def test_removed_session_never_sent_to(self, ws_factory):
        """Even a caller holding a stale reference cannot deliver to a removed session."""
        registry = ConnectionRegistry()
        ws = ws_factory()
        session = await registry.register("U1", ws, _in(60))
        await registry.unregister(session)

        assert await registry.send(session, _notice("U1")) is False
        ws.send_text.assert_not_awaited()

    async def test_send_failure_closes_session(self, ws_factory):
        registry = ConnectionRegistry()
        ws = ws_factory()
        ws.send_text.side_effect = RuntimeError("broken pipe")
        session = await registry.register("U1", ws, _in(60))

        assert await registry.send(session, _notice("U1")) is False
        assert session.closed is True
        assert registry.get_connection_count("U1") == 0
        ws.close.assert_awaited_once_with(code=1011, reason="Send failed")

    async def test_slow_send_times_out(self, ws_factory):
        registry = ConnectionRegistry(send_timeout=0.01)
        ws = ws_factory()

        async def hang(_):
            await asyncio.sleep(1)

        ws.send_text.side_effect = hang
        session = await registry.register("U1", ws, _in(60))

        assert await registry.send(session, _notice("U1")) is False
        assert registry.get_connection_count("U1") == 0

    async def test_disconnected_socket_pruned(self, ws_factory):
        registry = ConnectionRegistry()
        ws = ws_factory(connected=False)
        await registry.register("U1", ws, _in(60))

        assert await registry.send_to_user("U1", _notice("U1")) == 0
        assert registry.get_connection_count("U1") == 0


# ─── Expiry ──────────────────────────────────────────────────


class TestExpiry:

    async def test_expired_session_closed_instead_of_sent(self, ws_factory):
        registry = ConnectionRegistry()
        ws = ws_factory()
        session = await registry.register("U1", ws, _in(-1))

        assert await registry.send(session, _notice("U1")) is False

        sent = [json.loads(c.args[0]) for c in ws.send_text.await_args_list]
        assert [m["event"] for m in sent] == ["session_expired"]
        ws.close.assert_awaited_once_with(code=4001, reason="Session expired")
        assert registry.get_connection_count("U1") == 0

    async def test_close_expired_reaps_only_expired(self, ws_factory):
        registry = ConnectionRegistry()
        await registry.register("U1", ws_factory(), _in(-1))
        live = await registry.register("U1", ws_factory(), _in(60))

        assert await registry.close_expired() == 1
        assert registry.sessions_for("U1") == [live]

    async def test_expire_session_once(self, ws_factory):
        registry = ConnectionRegistry()
        ws = ws_factory()
        session = await registry.register("U1", ws, _in(-1))

        await registry.expire_session(session)
        await registry.expire_session(session)

        ws.close.assert_awaited_once()

    async def test_close_all(self, ws_factory):
        registry = ConnectionRegistry()
        ws_a, ws_b = ws_factory(), ws_factory()
        await registry.register("U1", ws_a, _in(60))
        await registry.register("U2", ws_b, _in(60))

        assert await registry.close_all() == 2
        assert registry.total_connections == 0
        ws_a.close.assert_awaited_once_with(code=1001, reason="Server shutting down")

    def test_seconds_left(self, ws_factory):
        from app.services.ws_manager import Session

        now = datetime.now(UTC)
        session = Session(user_id="U1", connection=ws_factory(), authenticated_at=now,
                          expires_at=now + timedelta(seconds=30))
        assert session.seconds_left(now) == pytest.approx(30)
        assert not session.is_expired(now)
        assert session.is_expired(now + timedelta(seconds=30))
