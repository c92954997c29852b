"""Deterministic stand-ins for the clock and the Google client, plus payload builders."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from calsync.google_client import FetchedEvents, FetchOutcome
from calsync.models import ExternalEvent, OAuthCredential, RefreshedToken

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class ScriptedCalendarClient:
    """Replaces ``GoogleCalendarClient`` where no HTTP should happen.

    ``list_events`` returns queued outcomes in order (raising queued
    exceptions); once the queue is empty it answers with ``default_outcome``.
    Every call is recorded.
    """

    calendar_id = "primary"

    def __init__(self) -> None:
        self.outcomes: list[FetchOutcome | Exception] = []
        self.default_outcome: FetchOutcome = FetchedEvents(
            events=[], next_cursor_token="cursor-empty"
        )
        self.list_calls: list[dict[str, Any]] = []
        self.list_delay = 0.0
        self.refresh_calls: list[str] = []
        self.refresh_result: RefreshedToken | Exception = RefreshedToken(
            access_token="refreshed-access", expires_at=NOW + timedelta(hours=1)
        )

    def queue(self, *outcomes: FetchOutcome | Exception) -> None:
        self.outcomes.extend(outcomes)

    async def list_events(
        self,
        access_token: str,
        *,
        cursor_token: str | None = None,
        time_window: Any = None,
    ) -> FetchOutcome:
        self.list_calls.append({"access_token": access_token, "cursor_token": cursor_token})
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default_outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.refresh_calls.append(refresh_token)
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return self.refresh_result


def google_event(
    event_id: str,
    *,
    etag: str = '"etag-1"',
    status: str = "confirmed",
    summary: str | None = "Team sync",
    start: dict[str, Any] | None = None,
    end: dict[str, Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build one Google ``events.list`` item (cancelled items have no boundaries)."""
    payload: dict[str, Any] = {"id": event_id, "etag": etag, "status": status}
    if summary is not None:
        payload["summary"] = summary
    if status != "cancelled":
        payload["start"] = start or {
            "dateTime": "2025-03-12T09:00:00-05:00",
            "timeZone": "America/New_York",
        }
        payload["end"] = end or {
            "dateTime": "2025-03-12T10:00:00-05:00",
            "timeZone": "America/New_York",
        }
    payload.update(extra)
    return payload


def fetched(*items: dict[str, Any], cursor: str | None = "cursor-next") -> FetchedEvents:
    return FetchedEvents(
        events=[ExternalEvent.model_validate(item) for item in items],
        next_cursor_token=cursor,
    )


def credential(
    *,
    expires_at: datetime | None = None,
    refresh_token: str | None = "refresh-token-1",
    access_token: str = "access-token-1",
) -> OAuthCredential:
    return OAuthCredential(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at or NOW + timedelta(hours=1),
        account_email="user@example.com",
        connected_at=NOW - timedelta(days=1),
    )
