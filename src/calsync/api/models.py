"""Request/response envelopes for the Google Calendar REST API.

Successful responses are ``{"data": T}``; failures are
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class CallbackRequest(BaseModel):
    """Body of ``POST /api/google-calendar/callback``."""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_uri: str | None = None
