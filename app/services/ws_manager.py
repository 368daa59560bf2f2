"""
Connection registry for live WebSocket sessions.

Tracks every authenticated session per user and is the only writer of
session membership. Backend services push events through
``send_to_user``; every live session of the user receives them.

Event Types:
    - welcome: Sent on connect with session info.
    - task_changed: A task owned by the user was created/updated/deleted.
    - session_expired: Credential lifetime reached; the socket is closed next.
    - heartbeat: Keep-alive ping/pong.
    - error: Server-side error notification.

Lifecycle guarantees:
    - A session removed from the registry is flagged closed and is never
      sent another event.
    - A session past its ``expires_at`` is force-closed on the next send
      attempt or reaper pass, whichever comes first.
    - Synchronization is per user (one asyncio.Lock per user id), so
      connects and disconnects for different users never contend.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)


class WSEventType(StrEnum):
    """Types of WebSocket events pushed to clients."""

    WELCOME = "welcome"
    TASK_CHANGED = "task_changed"
    SESSION_EXPIRED = "session_expired"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


def user_destination(user_id: str) -> str:
    """Per-user notification destination: /user/{identity}/topic/notifications"""
    return f"/user/{user_id}/topic/notifications"


@dataclass
class WSEvent:
    """A single WebSocket event to be sent to the client."""

    event: WSEventType
    data: dict = field(default_factory=dict)
    destination: str | None = None

    def to_json(self) -> str:
        """Serialize to JSON string for transmission."""
        body = {
            "event": self.event.value,
            "data": self.data,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if self.destination:
            body["destination"] = self.destination
        return json.dumps(body, default=str)


@dataclass(eq=False)
class Session:
    """One authenticated live connection. Identity-compared."""

    user_id: str
    connection: WebSocket
    authenticated_at: datetime
    expires_at: datetime
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    closed: bool = False

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def seconds_left(self, now: datetime | None = None) -> float:
        return (self.expires_at - (now or datetime.now(UTC))).total_seconds()


class ConnectionRegistry:
    """
    Registry of live sessions keyed by user id.

    Usage:
        registry = ConnectionRegistry()

        # In the WebSocket endpoint, after a successful handshake:
        session = await registry.register(user_id, ws, expires_at, limit=3)
        ...
        await registry.unregister(session)

        # From the dispatcher:
        await registry.send_to_user(user_id, WSEvent(
            event=WSEventType.TASK_CHANGED,
            data={"action": "updated", "task": {...}},
        ))
    """

    def __init__(self, send_timeout: float = 5.0):
        self._sessions: dict[str, list[Session]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._send_timeout = send_timeout

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        """Per-user lock, dropped once nobody holds or waits for it."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    @property
    def total_connections(self) -> int:
        """Total number of live sessions across all users."""
        return sum(len(sessions) for sessions in self._sessions.values())

    def get_connection_count(self, user_id: str) -> int:
        """Get the number of live sessions for a user."""
        return len(self._sessions.get(user_id, []))

    def sessions_for(self, user_id: str) -> list[Session]:
        """Point-in-time copy of a user's sessions."""
        return list(self._sessions.get(user_id, []))

    async def register(
        self,
        user_id: str,
        ws: WebSocket,
        expires_at: datetime,
        limit: int | None = None,
    ) -> Session | None:
        """
        Admit an authenticated connection.

        Args:
            user_id: The authenticated user's ID (token subject).
            ws: The accepted WebSocket.
            expires_at: When the session must be force-closed.
            limit: Maximum concurrent sessions for the user, None = no cap.

        Returns:
            The new Session, or None if the user is at their limit.
        """
        async with self._user_lock(user_id):
            sessions = self._sessions.setdefault(user_id, [])
            if limit is not None and len(sessions) >= limit:
                if not sessions:
                    self._sessions.pop(user_id, None)
                return None
            session = Session(
                user_id=user_id,
                connection=ws,
                authenticated_at=datetime.now(UTC),
                expires_at=expires_at,
            )
            sessions.append(session)
            count = len(sessions)

        logger.info(f"[WS] User {user_id} connected ({count} active)")
        return session

    async def unregister(self, session: Session) -> bool:
        """
        Remove a session. Idempotent.

        Returns:
            True if the session was registered before this call.
        """
        user_id = session.user_id
        async with self._user_lock(user_id):
            session.closed = True
            sessions = self._sessions.get(user_id, [])
            removed = session in sessions
            if removed:
                sessions.remove(session)
            if not sessions:
                self._sessions.pop(user_id, None)
            remaining = len(sessions)

        if removed:
            logger.info(f"[WS] User {user_id} disconnected ({remaining} remaining)")
        return removed

    async def force_close(self, session: Session, code: int, reason: str) -> None:
        """Drop a session from the registry first, then close its socket."""
        await self.unregister(session)
        ws = session.connection
        try:
            if ws.client_state == WebSocketState.CONNECTED:
                await ws.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"[WS] Close of session {session.session_id} failed: {e}")
        logger.info(
            f"[WS] Force-closed session {session.session_id} for user "
            f"{session.user_id} ({code}: {reason})"
        )

    async def send(self, session: Session, event: WSEvent) -> bool:
        """
        Send one event to one session.

        Expired sessions are closed instead of sent to; a send that fails or
        exceeds ``send_timeout`` closes the session.

        Returns:
            True if the event was written to the socket.
        """
        return await self._send(session, event.to_json())

    async def _send(self, session: Session, message: str) -> bool:
        if session.closed:
            return False

        if session.is_expired():
            await self.expire_session(session)
            return False

        ws = session.connection
        try:
            if ws.client_state != WebSocketState.CONNECTED:
                await self.unregister(session)
                return False
            await asyncio.wait_for(ws.send_text(message), timeout=self._send_timeout)
            return True
        except Exception as e:
            logger.debug(f"[WS] Send to session {session.session_id} failed ({e!r}), closing")
            await self.force_close(session, code=1011, reason="Send failed")
            return False

    async def expire_session(self, session: Session) -> None:
        """Tell the client its session expired, then close with 4001."""
        if session.closed:
            return
        try:
            await asyncio.wait_for(
                session.connection.send_text(
                    WSEvent(
                        event=WSEventType.SESSION_EXPIRED,
                        data={"session_id": session.session_id},
                    ).to_json()
                ),
                timeout=self._send_timeout,
            )
        except Exception:
            logger.debug(f"[WS] Could not notify session {session.session_id} of expiry")
        await self.force_close(session, code=4001, reason="Session expired")

    async def send_to_user(self, user_id: str, event: WSEvent) -> int:
        """
        Send an event to all live sessions of a user, concurrently.

        Args:
            user_id: Target user's ID.
            event: The event to send.

        Returns:
            Number of sessions the event was delivered to.
        """
        sessions = self.sessions_for(user_id)
        if not sessions:
            return 0

        message = event.to_json()
        results = await asyncio.gather(*(self._send(s, message) for s in sessions))
        return sum(1 for ok in results if ok)

    async def close_expired(self) -> int:
        """Force-close every session past its expiry. Returns the count closed."""
        now = datetime.now(UTC)
        expired = [
            s
            for sessions in list(self._sessions.values())
            for s in list(sessions)
            if s.is_expired(now)
        ]
        for session in expired:
            await self.expire_session(session)
        return len(expired)

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down") -> int:
        """Close every session (application shutdown)."""
        sessions = [s for group in list(self._sessions.values()) for s in list(group)]
        for session in sessions:
            await self.force_close(session, code=code, reason=reason)
        return len(sessions)


# ─── Module-level singleton ──────────────────────────────────

_registry = ConnectionRegistry()


def get_registry() -> ConnectionRegistry:
    """
    Get the shared connection registry singleton.

    Exposed as a function for testability (can be patched in tests).
    """
    return _registry
