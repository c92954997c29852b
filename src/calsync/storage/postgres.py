"""asyncpg-backed implementation of the calsync storage protocols.

Three tables, created on demand by :func:`ensure_schema`:

- ``calsync_user_meta``: one row per connected user holding the OAuth
  credential and the sync cursor. Disconnect deletes the row.
- ``calsync_events``: internal events; ``(user_id, external_event_id)`` is
  unique so an external event links to at most one local event.
- ``calsync_notifications``: the in-app notification feed.

Usage::

    pool = await asyncpg.create_pool(dsn)
    await ensure_schema(pool)
    store = PostgresStore(pool)
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

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

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_USER_META_TABLE = "calsync_user_meta"
_EVENTS_TABLE = "calsync_events"
_NOTIFICATIONS_TABLE = "calsync_notifications"

_USER_META_DDL = f"""
CREATE TABLE IF NOT EXISTS {_USER_META_TABLE} (
    user_id         TEXT PRIMARY KEY,
    access_token    TEXT,
    refresh_token   TEXT,
    expires_at      TIMESTAMPTZ,
    account_email   TEXT,
    connected_at    TIMESTAMPTZ,
    last_sync_at    TIMESTAMPTZ,
    sync_token      TEXT,
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_EVENTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {_EVENTS_TABLE} (
    event_id              TEXT PRIMARY KEY,
    user_id               TEXT NOT NULL,
    title                 TEXT NOT NULL,
    description           TEXT,
    location              TEXT,
    is_all_day            BOOLEAN NOT NULL DEFAULT false,
    start_utc             TIMESTAMPTZ NOT NULL,
    end_utc               TIMESTAMPTZ NOT NULL,
    start_tzid            TEXT,
    end_tzid              TEXT,
    color                 TEXT NOT NULL,
    status                TEXT NOT NULL,
    version               INTEGER NOT NULL DEFAULT 1,
    created_at            TIMESTAMPTZ NOT NULL,
    updated_at            TIMESTAMPTZ NOT NULL,
    rrule                 TEXT,
    recur_type            TEXT,
    master_event_id       TEXT,
    original_start_utc    TIMESTAMPTZ,
    external_event_id     TEXT,
    external_calendar_id  TEXT,
    external_revision_tag TEXT,
    external_synced_at    TIMESTAMPTZ
)
"""

_EVENTS_EXTERNAL_INDEX_DDL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS ux_calsync_events_user_external
ON {_EVENTS_TABLE} (user_id, external_event_id)
WHERE external_event_id IS NOT NULL
"""

_NOTIFICATIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS {_NOTIFICATIONS_TABLE} (
    notification_id TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    type            TEXT NOT NULL,
    title           TEXT NOT NULL,
    message         TEXT NOT NULL,
    metadata        JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    read_at         TIMESTAMPTZ
)
"""

_NOTIFICATIONS_USER_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calsync_notifications_user
ON {_NOTIFICATIONS_TABLE} (user_id, created_at DESC)
"""

_EVENT_COLUMNS = (
    "event_id, user_id, title, description, location, is_all_day, start_utc, end_utc, "
    "start_tzid, end_tzid, color, status, version, created_at, updated_at, rrule, "
    "recur_type, master_event_id, original_start_utc, external_event_id, "
    "external_calendar_id, external_revision_tag, external_synced_at"
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the calsync tables and indexes if they do not already exist."""
    async with pool.acquire() as conn:
        await conn.execute(_USER_META_DDL)
        await conn.execute(_EVENTS_DDL)
        await conn.execute(_EVENTS_EXTERNAL_INDEX_DDL)
        await conn.execute(_NOTIFICATIONS_DDL)
        await conn.execute(_NOTIFICATIONS_USER_INDEX_DDL)
    logger.debug("calsync schema ensured")


def _affected_rows(result: str | None) -> int:
    # asyncpg returns a status string like "UPDATE 1" or "DELETE 0"
    if not result:
        return 0
    try:
        return int(result.split()[-1])
    except ValueError:
        return 0


def _row_to_user_meta(row: Any) -> UserMeta:
    credential = None
    if row["access_token"] is not None:
        credential = OAuthCredential(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            account_email=row["account_email"] or "",
            connected_at=row["connected_at"],
        )
    cursor = None
    if row["last_sync_at"] is not None or row["sync_token"] is not None:
        cursor = SyncCursor(last_sync_at=row["last_sync_at"], opaque_token=row["sync_token"])
    return UserMeta(user_id=row["user_id"], credential=credential, cursor=cursor)


def _row_to_event(row: Any) -> CalendarEvent:
    return CalendarEvent.model_validate(dict(row))


def _row_to_notification(row: Any) -> Notification:
    data = dict(row)
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        data["metadata"] = json.loads(metadata)
    return Notification.model_validate(data)


class PostgresStore:
    """Implements ``UserMetaStore``, ``EventStore`` and ``NotificationStore`` on one pool.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. Each operation acquires a connection for
        the duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # User meta
    # ------------------------------------------------------------------

    async def find_user_meta(self, user_id: str) -> UserMeta | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT user_id, access_token, refresh_token, expires_at, account_email,
                       connected_at, last_sync_at, sync_token
                FROM {_USER_META_TABLE}
                WHERE user_id = $1
                """,
                user_id,
            )
        return _row_to_user_meta(row) if row is not None else None

    async def save_credential(self, user_id: str, credential: OAuthCredential) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_USER_META_TABLE}
                    (user_id, access_token, refresh_token, expires_at, account_email,
                     connected_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (user_id) DO UPDATE SET
                    access_token  = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at    = EXCLUDED.expires_at,
                    account_email = EXCLUDED.account_email,
                    connected_at  = EXCLUDED.connected_at,
                    updated_at    = now()
                """,
                user_id,
                credential.access_token,
                credential.refresh_token,
                credential.expires_at,
                credential.account_email,
                credential.connected_at,
            )
        # Never log token values.
        logger.info(
            "Stored Google credential for user %s (has_refresh_token=%s)",
            user_id,
            credential.refresh_token is not None,
        )

    async def update_access_token(
        self, user_id: str, access_token: str, expires_at: datetime
    ) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {_USER_META_TABLE}
                SET access_token = $2, expires_at = $3, updated_at = now()
                WHERE user_id = $1 AND access_token IS NOT NULL
                """,
                user_id,
                access_token,
                ensure_utc(expires_at),
            )
        if _affected_rows(result) == 0:
            raise NotConnectedError()

    async def remove_credential(self, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {_USER_META_TABLE} WHERE user_id = $1",
                user_id,
            )
        return _affected_rows(result) > 0

    async def update_sync_cursor(self, user_id: str, cursor: SyncCursor) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_USER_META_TABLE} (user_id, last_sync_at, sync_token)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE SET
                    last_sync_at = EXCLUDED.last_sync_at,
                    sync_token   = EXCLUDED.sync_token,
                    updated_at   = now()
                """,
                user_id,
                cursor.last_sync_at,
                cursor.opaque_token,
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def find_linked_events(
        self, user_id: str, external_event_ids: Sequence[str]
    ) -> dict[str, EventSyncInfo]:
        if not external_event_ids:
            return {}
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT event_id, external_event_id, external_revision_tag,
                       external_synced_at, updated_at, version
                FROM {_EVENTS_TABLE}
                WHERE user_id = $1 AND external_event_id = ANY($2::text[])
                """,
                user_id,
                list(external_event_ids),
            )
        return {row["external_event_id"]: EventSyncInfo.model_validate(dict(row)) for row in rows}

    async def create_event(self, data: CreateEventInput) -> CalendarEvent:
        draft = data.draft
        synced_at = ensure_utc(data.synced_at)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_EVENTS_TABLE} ({_EVENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, 1,
                        $13, $13, $14, $15, $16, $17, $18, $19, $20, $13)
                RETURNING {_EVENT_COLUMNS}
                """,
                str(uuid.uuid4()),
                data.user_id,
                draft.title,
                draft.description,
                draft.location,
                draft.is_all_day,
                draft.start_utc,
                draft.end_utc,
                draft.start_tzid,
                draft.end_tzid,
                data.color,
                draft.status.value,
                synced_at,
                draft.rrule,
                draft.recur_type.value if draft.recur_type else None,
                draft.master_event_id,
                draft.original_start_utc,
                draft.external_event_id,
                draft.external_calendar_id,
                draft.external_revision_tag,
            )
        return _row_to_event(row)

    async def update_event(
        self,
        user_id: str,
        event_id: str,
        patch: EventPatch,
        expected_version: int,
    ) -> CalendarEvent:
        synced_at = ensure_utc(patch.synced_at)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {_EVENTS_TABLE} SET
                    title                 = $4,
                    description           = $5,
                    location              = $6,
                    start_utc             = $7,
                    end_utc               = $8,
                    start_tzid            = $9,
                    end_tzid              = $10,
                    is_all_day            = $11,
                    status                = $12,
                    external_revision_tag = $13,
                    external_synced_at    = $14,
                    updated_at            = $14,
                    version               = version + 1
                WHERE user_id = $1 AND event_id = $2 AND version = $3
                RETURNING {_EVENT_COLUMNS}
                """,
                user_id,
                event_id,
                expected_version,
                patch.title,
                patch.description,
                patch.location,
                patch.start_utc,
                patch.end_utc,
                patch.start_tzid,
                patch.end_tzid,
                patch.is_all_day,
                patch.status.value,
                patch.external_revision_tag,
                synced_at,
            )
        if row is None:
            raise VersionConflictError(event_id, expected_version)
        return _row_to_event(row)

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM {_EVENTS_TABLE} "
                "WHERE user_id = $1 AND event_id = $2",
                user_id,
                event_id,
            )
        return _row_to_event(row) if row is not None else None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def create_notification(self, data: NotificationInput) -> Notification:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_NOTIFICATIONS_TABLE}
                    (notification_id, user_id, type, title, message, metadata)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                RETURNING notification_id, user_id, type, title, message, metadata,
                          created_at, read_at
                """,
                str(uuid.uuid4()),
                data.user_id,
                data.type,
                data.title,
                data.message,
                json.dumps(data.metadata),
            )
        return _row_to_notification(row)
