"""Pydantic models shared by the sync engine components.

Covers the four groups of data the engine moves around:

- OAuth state: ``OAuthCredential``, ``SyncCursor``, ``UserMeta`` and the
  token payloads returned by Google (``TokenGrant``, ``RefreshedToken``,
  ``AccountInfo``).
- Remote events: ``ExternalEvent`` / ``EventDateTime``, parsed straight from
  the Google Calendar JSON via field aliases.
- Local events: ``InternalEventDraft`` (mapper output), ``CalendarEvent``,
  ``EventSyncInfo``, ``CreateEventInput`` and the immutable ``EventPatch``.
- Run reporting: ``ImportConflict``, ``ImportResult`` and the connection
  results surfaced upward.

All instants are timezone-aware and normalised to UTC.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_EVENT_COLOR = "#4285F4"
DEFAULT_EXTERNAL_CALENDAR_ID = "primary"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_midnight(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


class EventStatus(StrEnum):
    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"


class RecurType(StrEnum):
    MASTER = "MASTER"
    INSTANCE = "INSTANCE"


# ---------------------------------------------------------------------------
# OAuth state
# ---------------------------------------------------------------------------


class OAuthCredential(BaseModel):
    """The single Google OAuth credential set stored for one user.

    ``refresh_token=None`` means the credential can never be renewed silently:
    once ``expires_at`` passes the user has to run the authorization flow again.
    """

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    account_email: str
    connected_at: datetime

    @field_validator("refresh_token")
    @classmethod
    def _normalize_refresh_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("expires_at", "connected_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def __repr__(self) -> str:
        return (
            f"OAuthCredential("
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"account_email={self.account_email!r})"
        )

    # Pydantic's default __str__ would print the token values.
    __str__ = __repr__


class SyncCursor(BaseModel):
    """Position in Google's change feed plus the time of the last completed run."""

    model_config = ConfigDict(extra="ignore")

    last_sync_at: datetime | None = None
    opaque_token: str | None = None


class UserMeta(BaseModel):
    user_id: str
    credential: OAuthCredential | None = None
    cursor: SyncCursor | None = None


class TokenGrant(BaseModel):
    """Result of an authorization-code exchange."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


class RefreshedToken(BaseModel):
    """Result of a refresh-token grant. The refresh token itself is never rotated."""

    access_token: str
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            f"RefreshedToken(access_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )

    __str__ = __repr__


class AccountInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: str
    email_verified: bool = Field(default=False, alias="verified_email")


# ---------------------------------------------------------------------------
# Remote (Google) events
# ---------------------------------------------------------------------------


class EventDateTime(BaseModel):
    """A Google event boundary: either a date-only value or a date-time with zone."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    day: date | None = Field(default=None, alias="date")
    date_time: datetime | None = Field(default=None, alias="dateTime")
    time_zone: str | None = Field(default=None, alias="timeZone")

    @property
    def is_date_only(self) -> bool:
        return self.date_time is None


class ExternalEvent(BaseModel):
    """One item from the Google Calendar ``events.list`` response.

    Cancelled items from the incremental feed are bare tombstones (id, etag,
    status), so ``start``/``end`` are only required for live events.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    etag: str = ""
    status: str = "confirmed"
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: EventDateTime | None = None
    end: EventDateTime | None = None
    recurrence: list[str] = Field(default_factory=list)
    recurring_event_id: str | None = Field(default=None, alias="recurringEventId")
    original_start_time: EventDateTime | None = Field(default=None, alias="originalStartTime")
    updated: datetime | None = None
    created: datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().lower() == "cancelled"

    @model_validator(mode="after")
    def _require_boundaries(self) -> ExternalEvent:
        if self.is_cancelled:
            return self
        for name, boundary in (("start", self.start), ("end", self.end)):
            if boundary is None or (boundary.day is None and boundary.date_time is None):
                raise ValueError(f"event '{self.id}' is missing a {name} date or dateTime")
        return self


# ---------------------------------------------------------------------------
# Local events
# ---------------------------------------------------------------------------


class InternalEventDraft(BaseModel):
    """Internal-event-shaped result of mapping one ``ExternalEvent``."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str | None = None
    location: str | None = None
    start_utc: datetime
    end_utc: datetime
    start_tzid: str | None = None
    end_tzid: str | None = None
    is_all_day: bool
    status: EventStatus = EventStatus.CONFIRMED
    rrule: str | None = None
    master_event_id: str | None = None
    original_start_utc: datetime | None = None
    external_event_id: str
    external_calendar_id: str = DEFAULT_EXTERNAL_CALENDAR_ID
    external_revision_tag: str

    @property
    def recur_type(self) -> RecurType | None:
        if self.rrule:
            return RecurType.MASTER
        if self.master_event_id:
            return RecurType.INSTANCE
        return None


class EventSyncInfo(BaseModel):
    """Identity and revision metadata of a linked local event (no content)."""

    event_id: str
    external_event_id: str
    external_revision_tag: str | None = None
    external_synced_at: datetime | None = None
    updated_at: datetime
    version: int = Field(ge=1)


class CalendarEvent(BaseModel):
    """A stored internal event (the subset of fields the sync engine touches)."""

    event_id: str
    user_id: str
    title: str
    description: str | None = None
    location: str | None = None
    is_all_day: bool = False
    start_utc: datetime
    end_utc: datetime
    start_tzid: str | None = None
    end_tzid: str | None = None
    color: str = DEFAULT_EVENT_COLOR
    status: EventStatus = EventStatus.CONFIRMED
    version: int = 1
    created_at: datetime
    updated_at: datetime
    rrule: str | None = None
    recur_type: RecurType | None = None
    master_event_id: str | None = None
    original_start_utc: datetime | None = None
    external_event_id: str | None = None
    external_calendar_id: str | None = None
    external_revision_tag: str | None = None
    external_synced_at: datetime | None = None


class CreateEventInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    draft: InternalEventDraft
    color: str = DEFAULT_EVENT_COLOR
    synced_at: datetime


class EventPatch(BaseModel):
    """Immutable content patch for an existing linked event.

    Storage applies it atomically under the caller's version precondition and
    stamps ``updated_at`` / ``external_synced_at`` with ``synced_at`` so the
    record does not read as locally modified on the next run.
    """

    model_config = ConfigDict(frozen=True)

    title: str
    description: str | None = None
    location: str | None = None
    start_utc: datetime
    end_utc: datetime
    start_tzid: str | None = None
    end_tzid: str | None = None
    is_all_day: bool
    status: EventStatus
    external_revision_tag: str
    synced_at: datetime

    @classmethod
    def from_draft(cls, draft: InternalEventDraft, *, synced_at: datetime) -> EventPatch:
        return cls(
            title=draft.title,
            description=draft.description,
            location=draft.location,
            start_utc=draft.start_utc,
            end_utc=draft.end_utc,
            start_tzid=draft.start_tzid,
            end_tzid=draft.end_tzid,
            is_all_day=draft.is_all_day,
            status=draft.status,
            external_revision_tag=draft.external_revision_tag,
            synced_at=synced_at,
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationInput(BaseModel):
    user_id: str
    type: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class Notification(NotificationInput):
    notification_id: str
    created_at: datetime
    read_at: datetime | None = None


# ---------------------------------------------------------------------------
# Run and connection results
# ---------------------------------------------------------------------------


class ImportConflict(BaseModel):
    """Both copies changed since the last sync; left for the user to reconcile."""

    event_id: str
    title: str
    local_updated_at: datetime
    external_updated_at: datetime | None = None


class ImportResult(BaseModel):
    imported_count: int = 0
    skipped_count: int = 0
    conflicts: list[ImportConflict] = Field(default_factory=list)
    notification_id: str | None = None


class AuthorizationRequest(BaseModel):
    authorization_url: str
    state: str


class ConnectResult(BaseModel):
    connected: bool = True
    email: str
    connected_at: datetime


class DisconnectResult(BaseModel):
    disconnected: bool = True


class ConnectionStatus(BaseModel):
    connected: bool
    email: str | None = None
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
