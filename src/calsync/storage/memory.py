"""In-process storage for tests and local runs of the API server."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from calsync.errors import NotConnectedError, VersionConflictError
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
    ensure_utc,
)


class InMemoryUserMetaStore:
    def __init__(self) -> None:
        self._users: dict[str, UserMeta] = {}

    async def find_user_meta(self, user_id: str) -> UserMeta | None:
        meta = self._users.get(user_id)
        return meta.model_copy(deep=True) if meta is not None else None

    async def save_credential(self, user_id: str, credential: OAuthCredential) -> None:
        meta = self._users.get(user_id)
        if meta is None:
            self._users[user_id] = UserMeta(user_id=user_id, credential=credential)
        else:
            self._users[user_id] = meta.model_copy(update={"credential": credential})

    async def update_access_token(
        self, user_id: str, access_token: str, expires_at: datetime
    ) -> None:
        meta = self._users.get(user_id)
        if meta is None or meta.credential is None:
            raise NotConnectedError()
        credential = meta.credential.model_copy(
            update={"access_token": access_token, "expires_at": ensure_utc(expires_at)}
        )
        self._users[user_id] = meta.model_copy(update={"credential": credential})

    async def remove_credential(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None

    async def update_sync_cursor(self, user_id: str, cursor: SyncCursor) -> None:
        meta = self._users.get(user_id) or UserMeta(user_id=user_id)
        self._users[user_id] = meta.model_copy(update={"cursor": cursor})


class InMemoryEventStore:
    def __init__(self) -> None:
        self._events: dict[str, CalendarEvent] = {}

    @property
    def events(self) -> list[CalendarEvent]:
        return list(self._events.values())

    def add(self, event: CalendarEvent) -> None:
        """Seed an event directly (test helper)."""
        self._events[event.event_id] = event

    async def find_linked_events(
        self, user_id: str, external_event_ids: Sequence[str]
    ) -> dict[str, EventSyncInfo]:
        wanted = set(external_event_ids)
        linked: dict[str, EventSyncInfo] = {}
        for event in self._events.values():
            if event.user_id != user_id or event.external_event_id not in wanted:
                continue
            linked[event.external_event_id] = EventSyncInfo(
                event_id=event.event_id,
                external_event_id=event.external_event_id,
                external_revision_tag=event.external_revision_tag,
                external_synced_at=event.external_synced_at,
                updated_at=event.updated_at,
                version=event.version,
            )
        return linked

    async def create_event(self, data: CreateEventInput) -> CalendarEvent:
        draft = data.draft
        synced_at = ensure_utc(data.synced_at)
        event = CalendarEvent(
            event_id=str(uuid.uuid4()),
            user_id=data.user_id,
            title=draft.title,
            description=draft.description,
            location=draft.location,
            is_all_day=draft.is_all_day,
            start_utc=draft.start_utc,
            end_utc=draft.end_utc,
            start_tzid=draft.start_tzid,
            end_tzid=draft.end_tzid,
            color=data.color,
            status=draft.status,
            version=1,
            created_at=synced_at,
            updated_at=synced_at,
            rrule=draft.rrule,
            recur_type=draft.recur_type,
            master_event_id=draft.master_event_id,
            original_start_utc=draft.original_start_utc,
            external_event_id=draft.external_event_id,
            external_calendar_id=draft.external_calendar_id,
            external_revision_tag=draft.external_revision_tag,
            external_synced_at=synced_at,
        )
        self._events[event.event_id] = event
        return event

    async def update_event(
        self,
        user_id: str,
        event_id: str,
        patch: EventPatch,
        expected_version: int,
    ) -> CalendarEvent:
        current = self._events.get(event_id)
        if current is None or current.user_id != user_id or current.version != expected_version:
            raise VersionConflictError(event_id, expected_version)

        synced_at = ensure_utc(patch.synced_at)
        updated = current.model_copy(
            update={
                "title": patch.title,
                "description": patch.description,
                "location": patch.location,
                "start_utc": patch.start_utc,
                "end_utc": patch.end_utc,
                "start_tzid": patch.start_tzid,
                "end_tzid": patch.end_tzid,
                "is_all_day": patch.is_all_day,
                "status": patch.status,
                "external_revision_tag": patch.external_revision_tag,
                "external_synced_at": synced_at,
                "updated_at": synced_at,
                "version": current.version + 1,
            }
        )
        self._events[event_id] = updated
        return updated

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent | None:
        event = self._events.get(event_id)
        if event is None or event.user_id != user_id:
            return None
        return event

    def touch(self, event_id: str, *, updated_at: datetime, title: str | None = None) -> None:
        """Simulate a local user edit (bumps version and ``updated_at``)."""
        current = self._events[event_id]
        update: dict[str, object] = {
            "updated_at": ensure_utc(updated_at),
            "version": current.version + 1,
        }
        if title is not None:
            update["title"] = title
        self._events[event_id] = current.model_copy(update=update)


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    async def create_notification(self, data: NotificationInput) -> Notification:
        notification = Notification(
            **data.model_dump(),
            notification_id=str(uuid.uuid4()),
            created_at=datetime.now(UTC),
        )
        self.notifications.append(notification)
        return notification


class InMemoryStore(InMemoryUserMetaStore, InMemoryEventStore, InMemoryNotificationStore):
    """All three stores in one object, mirroring :class:`PostgresStore`."""

    def __init__(self) -> None:
        InMemoryUserMetaStore.__init__(self)
        InMemoryEventStore.__init__(self)
        InMemoryNotificationStore.__init__(self)
