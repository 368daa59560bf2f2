"""
JWT verification for TaskPulse.

Tokens are minted by the external auth service; this module only
verifies them. Provides:
- get_current_user: FastAPI dependency that extracts and verifies the JWT
  from the Authorization header, returning the token payload.
- authenticate_handshake: verification for WebSocket handshakes, where
  failures must reject the connection rather than return a 401 body.

Usage in endpoints:
    @router.get("/protected")
    async def protected_route(user: dict = Depends(get_current_user)):
        return {"user_id": user["sub"]}
"""

import logging
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from app.config import Settings, get_settings
from app.core.exceptions import SessionAuthError

logger = logging.getLogger(__name__)

# FastAPI security scheme: extracts Bearer token from Authorization header
_bearer_scheme = HTTPBearer(auto_error=True)

# WebSocket close codes for handshake failures
WS_CLOSE_INVALID_TOKEN = 4001
WS_CLOSE_WRONG_TOKEN_TYPE = 4003


# ─── Core Token Verification ────────────────────────────────


def _decode_token(token: str, settings: Settings) -> dict:
    """
    Decode and verify a JWT token.

    Args:
        token: Raw JWT string.
        settings: App settings with secret_key and algorithm.

    Returns:
        Decoded payload dict.

    Raises:
        HTTPException 401 if token is invalid, expired or has no subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        if payload.get("sub") is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing subject",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return payload
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def token_expiry(payload: dict) -> datetime | None:
    """The ``exp`` claim as an aware datetime, or None when absent."""
    exp = payload.get("exp")
    if exp is None:
        return None
    return datetime.fromtimestamp(int(exp), UTC)


def authenticate_handshake(token: str | None, settings: Settings) -> dict:
    """
    Verify the bearer credential presented when a WebSocket connects.

    There is no anonymous fallback: any problem raises.

    Returns:
        Decoded access-token payload (has ``sub`` and ``exp``).

    Raises:
        SessionAuthError with close_code 4001 (missing/invalid/expired)
        or 4003 (not an access token).
    """
    if not token:
        raise SessionAuthError("Missing token", close_code=WS_CLOSE_INVALID_TOKEN)

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as e:
        raise SessionAuthError("Token expired", close_code=WS_CLOSE_INVALID_TOKEN) from e
    except JWTError as e:
        logger.warning(f"WebSocket JWT verification failed: {e}")
        raise SessionAuthError("Invalid token", close_code=WS_CLOSE_INVALID_TOKEN) from e

    if not payload.get("sub"):
        raise SessionAuthError("Invalid token: missing subject", close_code=WS_CLOSE_INVALID_TOKEN)

    if payload.get("type", "access") != "access":
        raise SessionAuthError("Access token required", close_code=WS_CLOSE_WRONG_TOKEN_TYPE)

    return payload


# ─── FastAPI Dependencies ────────────────────────────────────


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    FastAPI dependency: extract and verify JWT access token.

    Returns the decoded token payload dict (sub, email, tier, type, iat, exp).

    Raises:
        HTTPException 401 if token is missing, invalid, expired or not an
        access token.
    """
    payload = _decode_token(credentials.credentials, settings)

    if payload.get("type", "access") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type — access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return payload
