"""
WebSocket endpoint for live task-change notifications.

Provides:
- GET /api/v1/ws?token=<jwt> — WebSocket upgrade endpoint

The access token is taken from the ``token`` query parameter or, for
clients that can set headers, from ``Authorization: Bearer <jwt>``.
There is no anonymous session: a connection without a valid access
token is rejected before it is accepted.

Close codes:
- 4001: Missing, invalid or expired token (also sent when a live session
        reaches its expiry)
- 4003: Token is not an access token
- 4008: Connection limit exceeded for user's tier
- 4029: Too many connection attempts (ws_connect rate limit)
- 1013: Rate limiter unavailable (fail-closed)
- 1000: Normal closure
- 1011: Unexpected server error
"""

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.config import Settings, get_settings
from app.core.exceptions import SessionAuthError
from app.middleware.auth_middleware import authenticate_handshake, token_expiry
from app.middleware.rate_limiter import (
    Denied,
    OperationClass,
    RateLimitKey,
    TokenBucketLimiter,
    Unavailable,
    get_rate_limiter,
)
from app.services.ws_manager import (
    ConnectionRegistry,
    Session,
    WSEvent,
    WSEventType,
    get_registry,
    user_destination,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])

WS_CLOSE_CONNECTION_LIMIT = 4008
WS_CLOSE_RATE_LIMITED = 4029
WS_CLOSE_TRY_AGAIN_LATER = 1013


def _get_tier_limit(tier: str, settings: Settings) -> int:
    """Connection limit for a tier; unknown tiers get the free limit."""
    tier_map = {
        "free": settings.ws_max_connections_free,
        "pro": settings.ws_max_connections_pro,
        "enterprise": settings.ws_max_connections_enterprise,
    }
    return tier_map.get(tier, settings.ws_max_connections_free)


def _extract_token(ws: WebSocket) -> str | None:
    token = ws.query_params.get("token")
    if token:
        return token
    auth = ws.headers.get("authorization", "")
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def session_expiry(payload: dict, settings: Settings, now: datetime | None = None) -> datetime:
    """Earlier of the token's ``exp`` and the maximum session lifetime."""
    now = now or datetime.now(UTC)
    cap = now + timedelta(seconds=settings.ws_max_session_seconds)
    exp = token_expiry(payload)
    return min(exp, cap) if exp else cap


@router.websocket("/ws")
async def websocket_endpoint(
    ws: WebSocket,
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    """
    WebSocket endpoint for live task-change notifications.

    Connect with: ws://host/api/v1/ws?token=<access_token>

    Every frame carries ``destination: /user/{user_id}/topic/notifications``.
    The server pushes:
    - welcome: session id, destination and expiry
    - task_changed: a task owned by the user was created/updated/deleted
    - session_expired: the session reached its expiry and is being closed
    - heartbeat: keep-alive every ``ws_heartbeat_interval`` seconds

    Client messages:
    - {"type": "ping"}: answered with a heartbeat
    - {"type": "reauth", "token": "<jwt>"}: extends the session expiry with a
      fresh access token for the same user
    """
    settings = get_settings()
    registry = get_registry()
    client = ws.client.host if ws.client else "unknown"

    # ─── Admission ────────────────────────────────────────
    result = await limiter.try_acquire(RateLimitKey(client, OperationClass.WS_CONNECT))
    if isinstance(result, Denied):
        await ws.close(code=WS_CLOSE_RATE_LIMITED, reason="Too many connection attempts")
        return
    if isinstance(result, Unavailable):
        await ws.close(code=WS_CLOSE_TRY_AGAIN_LATER, reason="Try again later")
        return

    # ─── Authenticate ─────────────────────────────────────
    try:
        payload = authenticate_handshake(_extract_token(ws), settings)
    except SessionAuthError as e:
        await ws.close(code=e.close_code, reason=e.message)
        return

    user_id = str(payload["sub"])
    tier = payload.get("tier", "free")
    limit = _get_tier_limit(tier, settings)

    # ─── Register ─────────────────────────────────────────
    await ws.accept()
    session = await registry.register(user_id, ws, session_expiry(payload, settings), limit=limit)
    if session is None:
        await ws.close(
            code=WS_CLOSE_CONNECTION_LIMIT,
            reason=f"Connection limit reached ({limit} for {tier} tier)",
        )
        return

    try:
        welcome = WSEvent(
            event=WSEventType.WELCOME,
            data={
                "user_id": user_id,
                "session_id": session.session_id,
                "tier": tier,
                "connection_limit": limit,
                "active_connections": registry.get_connection_count(user_id),
                "expires_at": session.expires_at.isoformat(),
            },
            destination=user_destination(user_id),
        )
        if not await registry.send(session, welcome):
            return

        await _session_loop(ws, session, registry, settings)

    except WebSocketDisconnect:
        logger.debug(f"[WS] Client disconnected: user {user_id}")
    except Exception as e:
        logger.error(f"[WS] Error for user {user_id}: {e}", exc_info=True)
        try:
            if ws.client_state == WebSocketState.CONNECTED:
                error_event = WSEvent(
                    event=WSEventType.ERROR,
                    data={"error": "Internal server error"},
                )
                await ws.send_text(error_event.to_json())
                await ws.close(code=1011, reason="Internal server error")
        except Exception:
            logger.debug(f"[WS] Could not report error to user {user_id}")
    finally:
        await registry.unregister(session)


async def _session_loop(
    ws: WebSocket,
    session: Session,
    registry: ConnectionRegistry,
    settings: Settings,
) -> None:
    """Receive client messages until disconnect, expiry or forced close."""
    destination = user_destination(session.user_id)

    while not session.closed:
        timeout = min(float(settings.ws_heartbeat_interval), max(session.seconds_left(), 0.0))
        try:
            data = await asyncio.wait_for(ws.receive_text(), timeout=timeout)
        except TimeoutError:
            # Quiet interval: heartbeat (send() closes the session if it has expired)
            heartbeat = WSEvent(event=WSEventType.HEARTBEAT, data={"message": "ping"}, destination=destination)
            if not await registry.send(session, heartbeat):
                return
            continue

        try:
            msg = json.loads(data)
        except (ValueError, TypeError):
            continue  # Ignore malformed messages
        if not isinstance(msg, dict):
            continue

        if msg.get("type") == "ping":
            pong = WSEvent(event=WSEventType.HEARTBEAT, data={"message": "pong"}, destination=destination)
            await registry.send(session, pong)
        elif msg.get("type") == "reauth":
            await _reauthenticate(session, msg.get("token"), registry, settings)


async def _reauthenticate(
    session: Session,
    token: str | None,
    registry: ConnectionRegistry,
    settings: Settings,
) -> None:
    """Move a session's expiry forward with a fresh token for the same user."""
    try:
        payload = authenticate_handshake(token, settings)
    except SessionAuthError as e:
        await registry.force_close(session, code=e.close_code, reason=e.message)
        return

    if str(payload["sub"]) != session.user_id:
        await registry.force_close(session, code=4003, reason="Token belongs to another user")
        return

    session.expires_at = session_expiry(payload, settings)
    await registry.send(
        session,
        WSEvent(
            event=WSEventType.WELCOME,
            data={"session_id": session.session_id, "expires_at": session.expires_at.isoformat()},
            destination=user_destination(session.user_id),
        ),
    )
    logger.info(f"[WS] Session {session.session_id} re-authenticated for user {session.user_id}")
