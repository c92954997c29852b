"""Error taxonomy for the Google Calendar sync engine.

Every failure a caller can observe derives from :class:`CalendarSyncError`
and carries a stable ``code`` plus the HTTP status the REST layer should use.

Status code mapping:
- ``NotConnectedError`` → 400 (user must connect)
- ``ReauthRequiredError`` / ``TokenExpiredNoRefreshError`` → 401 (user must reconnect)
- ``TokenRefreshError`` / ``ExternalApiError`` → 502 (try again later)
- ``VersionConflictError`` / ``ImportInProgressError`` → 409
- ``ImportTimeoutError`` → 504

The cursor-rejected condition is deliberately absent: it is a result variant
of :meth:`calsync.google_client.GoogleCalendarClient.list_events`, recovered
inside the orchestrator.
"""

from __future__ import annotations

DEFAULT_SERVICE_NAME = "Google Calendar"


class CalendarSyncError(Exception):
    """Base error for the sync engine."""

    code: str = "CALENDAR_SYNC_ERROR"
    status_code: int = 500


class NotConnectedError(CalendarSyncError):
    """Raised when the user has no stored OAuth credential."""

    code = "NOT_CONNECTED"
    status_code = 400

    def __init__(self, service: str = DEFAULT_SERVICE_NAME) -> None:
        super().__init__(f"{service} is not connected")


class ReauthRequiredError(CalendarSyncError):
    """Raised when a credential exists but can no longer be renewed silently."""

    code = "REAUTH_REQUIRED"
    status_code = 401

    def __init__(self, service: str = DEFAULT_SERVICE_NAME) -> None:
        super().__init__(f"Please reconnect your {service}")


class TokenExpiredNoRefreshError(CalendarSyncError):
    """Raised by the token manager when the token expired and no refresh token exists."""

    code = "TOKEN_EXPIRED_NO_REFRESH"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Token expired and no refresh token available")


class TokenRefreshError(CalendarSyncError):
    """Raised when the refresh-token grant fails."""

    code = "TOKEN_REFRESH_FAILED"
    status_code = 502

    def __init__(self, detail: str | None = None) -> None:
        message = "Failed to refresh access token"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ExternalApiError(CalendarSyncError):
    """Raised when a Google API call fails; carries the remote status code."""

    code = "GOOGLE_API_ERROR"
    status_code = 502

    def __init__(self, remote_status: int, message: str = "Google Calendar API error") -> None:
        self.remote_status = remote_status
        self.message = message
        super().__init__(f"{message} ({remote_status})")


class InvalidStateError(CalendarSyncError):
    """Raised when the OAuth ``state`` parameter cannot be decoded."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str = "Invalid state parameter") -> None:
        super().__init__(message)


class VersionConflictError(CalendarSyncError):
    """Raised by storage when an update's expected version no longer matches."""

    code = "VERSION_CONFLICT"
    status_code = 409

    def __init__(self, event_id: str, expected_version: int) -> None:
        self.event_id = event_id
        self.expected_version = expected_version
        super().__init__(
            f"Event '{event_id}' was modified concurrently (expected version {expected_version})"
        )


class ImportInProgressError(CalendarSyncError):
    """Raised when an import run is already active for the same user."""

    code = "IMPORT_IN_PROGRESS"
    status_code = 409

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"An import is already running for user '{user_id}'")


class ImportTimeoutError(CalendarSyncError):
    """Raised when an import run exceeds its deadline. The stored cursor is untouched."""

    code = "IMPORT_TIMEOUT"
    status_code = 504

    def __init__(self, user_id: str, timeout_seconds: float) -> None:
        self.user_id = user_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Import for user '{user_id}' exceeded {timeout_seconds:.1f}s deadline")
