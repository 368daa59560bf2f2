"""
Redis-backed token-bucket rate limiting for TaskPulse.

Guards sensitive operations (login, token refresh, WebSocket connect)
with one bucket per (operation class, identity):
- Bursts of up to ``capacity`` requests are admitted immediately.
- Tokens refill continuously at ``refill_rate`` tokens/second.
- Operation classes never share a bucket, even for the same identity.

Refill, test and debit run inside a single Lua script, so every API
instance sees the same bucket and concurrent callers cannot race.
Time comes from Redis ``TIME``, not from the callers' clocks.

When Redis is unreachable (or slower than ``rate_limit_timeout_ms``)
the limiter fails open or closed according to ``RATE_LIMIT_FAIL_MODE``.

Architecture: FastAPI dependency injection (Depends pattern),
consistent with auth_middleware.py.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from fastapi import Depends, Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import FailMode, Settings, get_settings
from app.core.exceptions import RateLimitExceededError, RateLimiterUnavailableError

logger = logging.getLogger(__name__)


# ─── Operation Classes & Keys ────────────────────────────────


class OperationClass(StrEnum):
    """Tag attached at the call site of every rate-limited operation."""

    LOGIN = "login"
    REFRESH = "refresh"
    WS_CONNECT = "ws_connect"


@dataclass(frozen=True)
class RateLimitKey:
    """Identity (account id or source address) plus the operation class."""

    identity: str
    operation: OperationClass

    def redis_key(self) -> str:
        """Pattern: ratelimit:bucket:{operation}:{identity}"""
        return f"ratelimit:bucket:{self.operation.value}:{self.identity}"


@dataclass(frozen=True)
class BucketConfig:
    """Shape of one operation class's buckets."""

    capacity: int
    refill_rate: float  # tokens per second

    @property
    def ttl_seconds(self) -> int:
        """An idle bucket is full again after this long, so Redis may drop it."""
        return max(1, math.ceil(self.capacity / self.refill_rate) + 1)


# ─── Results ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Allowed:
    """Request admitted. ``degraded`` is set when admitted by fail-open."""

    remaining: float
    degraded: bool = False


@dataclass(frozen=True)
class Denied:
    """Bucket empty. ``retry_after`` is seconds until ``cost`` tokens exist."""

    retry_after: float
    remaining: float = 0.0


@dataclass(frozen=True)
class Unavailable:
    """Bucket store unreachable and the limiter fails closed."""

    retry_after: float


AcquireResult = Allowed | Denied | Unavailable


# ─── Lua Script ──────────────────────────────────────────────

# KEYS[1] = bucket key
# ARGV    = capacity, refill_rate, cost, ttl
# Returns {allowed (0|1), tokens_left, retry_after}
TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now
end

local elapsed = now - ts
if elapsed < 0 then
  elapsed = 0
end
tokens = math.min(capacity, tokens + elapsed * rate)

local allowed = 0
local retry_after = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  retry_after = (cost - tokens) / rate
end

redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(math.max(now, ts)))
redis.call('EXPIRE', key, ttl)
return {allowed, tostring(tokens), tostring(retry_after)}
"""


# ─── Limiter ─────────────────────────────────────────────────


class TokenBucketLimiter:
    """
    Per-identity token-bucket admission control.

    Usage:
        limiter = TokenBucketLimiter.from_settings(redis, settings)
        result = await limiter.try_acquire(
            RateLimitKey("203.0.113.9", OperationClass.LOGIN)
        )
        if isinstance(result, Denied):
            ...  # 429, Retry-After: result.retry_after
    """

    def __init__(
        self,
        redis: Redis,
        buckets: dict[OperationClass, BucketConfig],
        fail_mode: FailMode = FailMode.OPEN,
        timeout: float = 0.25,
        fail_closed_retry_after: float = 5.0,
    ):
        self._redis = redis
        self._buckets = buckets
        self._fail_mode = fail_mode
        self._timeout = timeout
        self._fail_closed_retry_after = fail_closed_retry_after
        self._script = redis.register_script(TOKEN_BUCKET_LUA)

    @classmethod
    def from_settings(cls, redis: Redis, settings: Settings) -> "TokenBucketLimiter":
        buckets = {
            OperationClass.LOGIN: BucketConfig(
                settings.rate_limit_login_capacity,
                settings.rate_limit_login_refill_rate,
            ),
            OperationClass.REFRESH: BucketConfig(
                settings.rate_limit_refresh_capacity,
                settings.rate_limit_refresh_refill_rate,
            ),
            OperationClass.WS_CONNECT: BucketConfig(
                settings.rate_limit_ws_connect_capacity,
                settings.rate_limit_ws_connect_refill_rate,
            ),
        }
        return cls(
            redis=redis,
            buckets=buckets,
            fail_mode=settings.rate_limit_fail_mode,
            timeout=settings.rate_limit_timeout_ms / 1000,
            fail_closed_retry_after=settings.rate_limit_fail_closed_retry_after,
        )

    @property
    def fail_mode(self) -> FailMode:
        return self._fail_mode

    def bucket_for(self, operation: OperationClass) -> BucketConfig:
        return self._buckets[operation]

    async def try_acquire(self, key: RateLimitKey, cost: int = 1) -> AcquireResult:
        """
        Take ``cost`` tokens from the key's bucket if it holds that many.

        Args:
            key: Identity + operation class.
            cost: Tokens to debit (>= 1).

        Returns:
            Allowed, Denied(retry_after) or, when the store is unreachable and
            the limiter fails closed, Unavailable.

        Raises:
            ValueError: If ``cost`` is not positive or exceeds the bucket
                capacity (such a request could never be admitted).
        """
        bucket = self._buckets[key.operation]
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if cost > bucket.capacity:
            raise ValueError(
                f"cost {cost} exceeds '{key.operation}' bucket capacity {bucket.capacity}"
            )

        try:
            raw = await asyncio.wait_for(
                self._script(
                    keys=[key.redis_key()],
                    args=[bucket.capacity, bucket.refill_rate, cost, bucket.ttl_seconds],
                ),
                timeout=self._timeout,
            )
        except (ConnectionError, TimeoutError, asyncio.TimeoutError, RedisError, OSError) as e:
            return self._on_store_failure(key, e)

        allowed, tokens_left, retry_after = _parse_script_result(raw)

        if allowed:
            return Allowed(remaining=tokens_left)

        logger.warning(
            "rate_limit_denied",
            extra={
                "operation": key.operation.value,
                "identity": key.identity,
                "cost": cost,
                "retry_after": round(retry_after, 3),
            },
        )
        return Denied(retry_after=retry_after, remaining=tokens_left)

    def _on_store_failure(self, key: RateLimitKey, error: Exception) -> AcquireResult:
        """Resolve a bucket-store failure per the configured fail mode."""
        logger.error(
            "rate_limiter_unavailable",
            extra={
                "operation": key.operation.value,
                "identity": key.identity,
                "fail_mode": self._fail_mode.value,
                "error": repr(error),
            },
        )
        if self._fail_mode == FailMode.OPEN:
            return Allowed(remaining=-1, degraded=True)
        return Unavailable(retry_after=self._fail_closed_retry_after)


def _parse_script_result(raw) -> tuple[bool, float, float]:
    """Decode the Lua reply; values may arrive as bytes or str."""
    allowed, tokens_left, retry_after = raw
    if isinstance(tokens_left, bytes):
        tokens_left = tokens_left.decode()
    if isinstance(retry_after, bytes):
        retry_after = retry_after.decode()
    return int(allowed) == 1, float(tokens_left), float(retry_after)


# ─── Redis Connection Management ─────────────────────────────


_redis_client: Redis | None = None
_limiter: TokenBucketLimiter | None = None


async def get_redis() -> Redis:
    """
    Get or create the shared async Redis client.

    Uses the redis_url from application Settings. The client is created
    lazily on first access and reused by the limiter, the event bus and
    the notice channel.
    """
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection on application shutdown."""
    global _redis_client, _limiter
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
    _limiter = None


async def get_rate_limiter(redis: Redis = Depends(get_redis)) -> TokenBucketLimiter:
    """FastAPI dependency: the process-wide limiter bound to the shared client."""
    global _limiter
    if _limiter is None:
        _limiter = TokenBucketLimiter.from_settings(redis, get_settings())
    return _limiter


# ─── Identity Resolvers ──────────────────────────────────────


IdentityResolver = Callable[[Request], Awaitable[str]]


async def client_address(request: Request) -> str:
    """Source address of the caller (proxy headers are resolved by the server)."""
    return request.client.host if request.client else "unknown"


def json_field_identity(field_name: str) -> IdentityResolver:
    """
    Identity from a JSON body field (e.g. the account name on login),
    falling back to the source address when the field is absent.
    """

    async def resolve(request: Request) -> str:
        try:
            body = await request.json()
        except ValueError:
            body = None
        value = body.get(field_name) if isinstance(body, dict) else None
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
        return await client_address(request)

    return resolve


# ─── FastAPI Dependencies ────────────────────────────────────


def rate_limit(
    operation: OperationClass,
    identity_resolver: IdentityResolver = client_address,
    cost: int = 1,
) -> Callable[..., Awaitable[Allowed]]:
    """
    Build a FastAPI dependency that debits ``operation``'s bucket.

    Usage:
        @router.post("/auth/login", dependencies=[Depends(rate_limit(OperationClass.LOGIN))])
        async def login(...): ...

    Raises (inside the dependency):
        RateLimitExceededError → 429 with Retry-After.
        RateLimiterUnavailableError → 503 with Retry-After (fail-closed only).
    """

    async def dependency(
        request: Request,
        limiter: TokenBucketLimiter = Depends(get_rate_limiter),
    ) -> Allowed:
        identity = await identity_resolver(request)
        result = await limiter.try_acquire(RateLimitKey(identity, operation), cost)

        if isinstance(result, Denied):
            raise RateLimitExceededError(
                operation=operation.value,
                retry_after=result.retry_after,
                details={
                    "limit": limiter.bucket_for(operation).capacity,
                    "remaining": int(result.remaining),
                },
            )
        if isinstance(result, Unavailable):
            raise RateLimiterUnavailableError(
                operation=operation.value,
                retry_after=result.retry_after,
            )

        request.state.rate_limit = result
        return result

    return dependency


def retry_after_header(retry_after: float) -> str:
    """Retry-After is whole seconds, rounded up, never 0 for a denial."""
    return str(max(1, math.ceil(retry_after)))
