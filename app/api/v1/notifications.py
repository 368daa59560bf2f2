"""
Live notification status API.

Provides:
- GET /api/v1/notifications/sessions — Live session count for the current user
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.middleware.auth_middleware import get_current_user
from app.services.ws_manager import get_registry, user_destination

router = APIRouter(prefix="/notifications", tags=["Notifications"])


class LiveSessionsResponse(BaseModel):
    user_id: str
    destination: str
    active_sessions: int


@router.get("/sessions", response_model=LiveSessionsResponse)
async def get_live_sessions(user: dict = Depends(get_current_user)):
    """How many live WebSocket sessions the caller has on this instance."""
    user_id = str(user["sub"])
    return LiveSessionsResponse(
        user_id=user_id,
        destination=user_destination(user_id),
        active_sessions=get_registry().get_connection_count(user_id),
    )
