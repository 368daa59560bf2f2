"""
Shared test fixtures for the TaskPulse test suite.
"""

import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from jose import jwt
from starlette.websockets import WebSocketState

from app.config import Settings
from app.core.models import TaskSnapshot, TaskStatus

TEST_SECRET = "test-secret-key-for-taskpulse-tests"
TEST_ALGORITHM = "HS256"

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def make_token(
    sub: str = "user-1",
    tier: str = "free",
    token_type: str = "access",
    expires_in: int = 3600,
) -> str:
    """Create a signed test JWT (negative ``expires_in`` = already expired)."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": f"{sub}@example.com",
        "tier": tier,
        "type": token_type,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, TEST_SECRET, algorithm=TEST_ALGORITHM)


def make_snapshot(
    task_id: str,
    owner_id: str = "user-1",
    status: TaskStatus = TaskStatus.TODO,
    due_in_days: int | None = 1,
    modified_offset_minutes: int = 0,
    owner_email: str | None = None,
) -> TaskSnapshot:
    return TaskSnapshot(
        id=task_id,
        owner_id=owner_id,
        owner_email=owner_email if owner_email is not None else f"{owner_id}@example.com",
        title=f"Task {task_id}",
        status=status,
        due_at=BASE_TIME + timedelta(days=due_in_days) if due_in_days is not None else None,
        last_modified=BASE_TIME + timedelta(minutes=modified_offset_minutes),
    )


def mock_ws(connected: bool = True) -> MagicMock:
    """A mock WebSocket that records sent text."""
    ws = MagicMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    ws.client_state = WebSocketState.CONNECTED if connected else WebSocketState.DISCONNECTED
    return ws


@pytest.fixture
def settings() -> Settings:
    """Development settings with test credentials and small limits."""
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET,
        jwt_algorithm=TEST_ALGORITHM,
        ws_heartbeat_interval=30,
        ws_max_session_seconds=3600,
        ws_max_connections_free=2,
        ws_max_connections_pro=5,
        ws_max_connections_enterprise=10,
        rate_limit_ws_connect_capacity=100,
    )


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Async Redis stand-in; ``register_script`` returns an awaitable script mock."""
    redis = AsyncMock()
    redis.register_script = MagicMock(return_value=AsyncMock())
    return redis


@pytest.fixture
def token_factory():
    """``token_factory(sub=..., tier=..., token_type=..., expires_in=...)``"""
    return make_token


@pytest.fixture
def snapshot_factory():
    """``snapshot_factory(task_id, owner_id=..., status=..., ...)``"""
    return make_snapshot


@pytest.fixture
def ws_factory():
    """``ws_factory(connected=True)`` → mock WebSocket."""
    return mock_ws
