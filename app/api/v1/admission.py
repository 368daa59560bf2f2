"""
Admission check API for the sensitive auth operations.

The login and refresh endpoints live in the external auth service; it
(or the gateway in front of it) asks this service for admission before
doing any work, so every instance shares the same token buckets.

Provides:
- POST /api/v1/admission/login — debit the caller's login bucket
- POST /api/v1/admission/refresh — debit the caller's refresh bucket

Denials are 429 with ``Retry-After``; a fail-closed limiter with an
unreachable store answers 503.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.middleware.rate_limiter import (
    Allowed,
    OperationClass,
    json_field_identity,
    rate_limit,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admission", tags=["Admission"])


# ─── Response Schemas ────────────────────────────────────────


class AdmissionResponse(BaseModel):
    """Result of a successful admission check."""
    operation: str
    allowed: bool = True
    remaining: float
    degraded: bool = False


def _response(operation: OperationClass, result: Allowed) -> AdmissionResponse:
    return AdmissionResponse(
        operation=operation.value,
        remaining=round(result.remaining, 3),
        degraded=result.degraded,
    )


# ─── Endpoints ───────────────────────────────────────────────


@router.post("/login", response_model=AdmissionResponse)
async def admit_login(
    result: Allowed = Depends(rate_limit(OperationClass.LOGIN, json_field_identity("identity"))),
):
    """Login attempt admission, keyed by the account identity (falls back to source address)."""
    return _response(OperationClass.LOGIN, result)


@router.post("/refresh", response_model=AdmissionResponse)
async def admit_refresh(
    result: Allowed = Depends(rate_limit(OperationClass.REFRESH, json_field_identity("identity"))),
):
    """Token refresh admission, keyed by the account identity (falls back to source address)."""
    return _response(OperationClass.REFRESH, result)
