"""FastAPI dependencies for the calsync API."""

from __future__ import annotations

from fastapi import Request

from calsync.service import CalendarConnectionService


class ServiceUnavailableError(RuntimeError):
    """Raised when a request arrives before the connection service is wired."""


def get_connection_service(request: Request) -> CalendarConnectionService:
    """Return the service stored on ``app.state`` by the lifespan handler.

    Tests replace this through ``app.dependency_overrides``.
    """
    service = getattr(request.app.state, "connection_service", None)
    if service is None:
        raise ServiceUnavailableError("Google Calendar service is not initialized")
    return service
