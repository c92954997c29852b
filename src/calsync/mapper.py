"""Pure translation of Google Calendar events into internal event drafts."""

from __future__ import annotations

from datetime import datetime

from calsync.models import (
    DEFAULT_EXTERNAL_CALENDAR_ID,
    EventDateTime,
    EventStatus,
    ExternalEvent,
    InternalEventDraft,
    ensure_utc,
    utc_midnight,
)

RRULE_PREFIX = "RRULE:"
UNTITLED_EVENT_TITLE = "(No title)"

_STATUS_MAP = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "cancelled": EventStatus.CANCELLED,
}


def map_status(value: str | None) -> EventStatus:
    """Map a Google status string; anything unrecognised becomes CONFIRMED."""
    if not isinstance(value, str):
        return EventStatus.CONFIRMED
    return _STATUS_MAP.get(value.strip().lower(), EventStatus.CONFIRMED)


def extract_rrule(recurrence: list[str] | None) -> str | None:
    """Return the first ``RRULE:`` line with its marker stripped.

    Google also sends ``EXRULE``/``RDATE``/``EXDATE`` lines in the same list;
    only the rule itself is kept.
    """
    for line in recurrence or ():
        normalized = line.strip()
        if normalized.startswith(RRULE_PREFIX):
            return normalized[len(RRULE_PREFIX) :] or None
    return None


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _boundary_to_utc(boundary: EventDateTime) -> datetime:
    if boundary.date_time is not None:
        return ensure_utc(boundary.date_time)
    assert boundary.day is not None
    return utc_midnight(boundary.day)


def _original_start_to_utc(boundary: EventDateTime | None) -> datetime | None:
    if boundary is None:
        return None
    if boundary.date_time is not None:
        return ensure_utc(boundary.date_time)
    if boundary.day is not None:
        return utc_midnight(boundary.day)
    return None


def map_external_to_internal(
    event: ExternalEvent,
    *,
    calendar_id: str = DEFAULT_EXTERNAL_CALENDAR_ID,
) -> InternalEventDraft:
    """Translate one live Google event into an internal event draft.

    An event is all-day iff its start carries no time-of-day component; its
    boundaries are then pinned to midnight UTC of the given dates. Timed
    events keep their ``timeZone`` strings verbatim.

    Cancelled tombstones have no boundaries and must be filtered out by the
    caller before mapping.
    """
    if event.start is None or event.end is None:
        raise ValueError(f"event '{event.id}' has no start/end; cancelled events are not mappable")

    is_all_day = event.start.is_date_only
    master_event_id = _normalize_optional_text(event.recurring_event_id)

    return InternalEventDraft(
        title=_normalize_optional_text(event.summary) or UNTITLED_EVENT_TITLE,
        description=_normalize_optional_text(event.description),
        location=_normalize_optional_text(event.location),
        start_utc=_boundary_to_utc(event.start),
        end_utc=_boundary_to_utc(event.end),
        start_tzid=_normalize_optional_text(event.start.time_zone),
        end_tzid=_normalize_optional_text(event.end.time_zone),
        is_all_day=is_all_day,
        status=map_status(event.status),
        rrule=extract_rrule(event.recurrence),
        master_event_id=master_event_id,
        original_start_utc=(
            _original_start_to_utc(event.original_start_time) if master_event_id else None
        ),
        external_event_id=event.id,
        external_calendar_id=calendar_id,
        external_revision_tag=event.etag,
    )
