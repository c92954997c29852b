"""Storage interfaces the sync engine depends on.

The engine never talks to a database directly. It receives objects that
satisfy these protocols: :mod:`calsync.storage.postgres` for production and
:mod:`calsync.storage.memory` for tests and local runs.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from calsync.models import (
    CalendarEvent,
    CreateEventInput,
    EventPatch,
    EventSyncInfo,
    Notification,
    NotificationInput,
    OAuthCredential,
    SyncCursor,
    UserMeta,
)


class UserMetaStore(Protocol):
    """One OAuth credential and one sync cursor per user."""

    async def find_user_meta(self, user_id: str) -> UserMeta | None: ...

    async def save_credential(self, user_id: str, credential: OAuthCredential) -> None:
        """Insert or replace the user's credential. Last write wins."""
        ...

    async def update_access_token(
        self, user_id: str, access_token: str, expires_at: datetime
    ) -> None:
        """Replace only the access token and its expiry; the refresh token is kept.

        Raises ``NotConnectedError`` when the user has no stored credential.
        """
        ...

    async def remove_credential(self, user_id: str) -> bool:
        """Delete the credential together with the sync cursor.

        Returns ``True`` when something was removed.
        """
        ...

    async def update_sync_cursor(self, user_id: str, cursor: SyncCursor) -> None: ...


class EventStore(Protocol):
    """Internal events that are linked to an external event id."""

    async def find_linked_events(
        self, user_id: str, external_event_ids: Sequence[str]
    ) -> dict[str, EventSyncInfo]:
        """Return sync metadata keyed by external event id (missing ids are absent)."""
        ...

    async def create_event(self, data: CreateEventInput) -> CalendarEvent:
        """Create an event at version 1 with ``updated_at = external_synced_at = synced_at``."""
        ...

    async def update_event(
        self,
        user_id: str,
        event_id: str,
        patch: EventPatch,
        expected_version: int,
    ) -> CalendarEvent:
        """Apply *patch* iff the stored version equals *expected_version*.

        The version is incremented and ``updated_at`` / ``external_synced_at``
        are stamped with ``patch.synced_at``.

        Raises
        ------
        VersionConflictError
            The stored version differs, or the event no longer exists.
        """
        ...

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent | None: ...


class NotificationStore(Protocol):
    async def create_notification(self, data: NotificationInput) -> Notification: ...
