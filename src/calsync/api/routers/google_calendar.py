"""Google Calendar connection endpoints.

Endpoints
---------
GET    /api/google-calendar/authorize?user_id=...      authorization URL + state
POST   /api/google-calendar/callback                   complete OAuth, store credential
DELETE /api/google-calendar/users/{user_id}/connection revoke + forget credential
POST   /api/google-calendar/users/{user_id}/import     run an import now
GET    /api/google-calendar/users/{user_id}/status     connection status
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from calsync.api.deps import get_connection_service
from calsync.api.models import ApiResponse, CallbackRequest
from calsync.models import (
    AuthorizationRequest,
    ConnectionStatus,
    ConnectResult,
    DisconnectResult,
    ImportResult,
)
from calsync.service import CalendarConnectionService

router = APIRouter(prefix="/api/google-calendar", tags=["google-calendar"])


@router.get("/authorize", response_model=ApiResponse[AuthorizationRequest])
async def authorize(
    user_id: str = Query(..., min_length=1, description="Local user starting the OAuth flow"),
    service: CalendarConnectionService = Depends(get_connection_service),
) -> ApiResponse[AuthorizationRequest]:
    return ApiResponse[AuthorizationRequest](data=service.authorization_url(user_id))


@router.post("/callback", response_model=ApiResponse[ConnectResult])
async def callback(
    body: CallbackRequest,
    service: CalendarConnectionService = Depends(get_connection_service),
) -> ApiResponse[ConnectResult]:
    result = await service.connect(body.code, body.state, body.redirect_uri)
    return ApiResponse[ConnectResult](data=result)


@router.delete("/users/{user_id}/connection", response_model=ApiResponse[DisconnectResult])
async def disconnect(
    user_id: str,
    service: CalendarConnectionService = Depends(get_connection_service),
) -> ApiResponse[DisconnectResult]:
    return ApiResponse[DisconnectResult](data=await service.disconnect(user_id))


@router.post("/users/{user_id}/import", response_model=ApiResponse[ImportResult])
async def import_events(
    user_id: str,
    service: CalendarConnectionService = Depends(get_connection_service),
) -> ApiResponse[ImportResult]:
    result = await service.import_now(user_id)
    return ApiResponse[ImportResult](data=result)


@router.get("/users/{user_id}/status", response_model=ApiResponse[ConnectionStatus])
async def status(
    user_id: str,
    service: CalendarConnectionService = Depends(get_connection_service),
) -> ApiResponse[ConnectionStatus]:
    return ApiResponse[ConnectionStatus](data=await service.status(user_id))
