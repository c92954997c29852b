"""One Google Calendar import run for one user.

Run outline:

1. Load the user's credential (``NotConnectedError`` without one).
2. Obtain a usable access token, refreshing when close to expiry.
3. Fetch changes: incrementally when a cursor is stored, otherwise over the
   full window. A rejected cursor falls back to a full fetch in the same run.
4. Skip cancelled events; map, resolve and apply the rest.
5. Persist the new cursor, emit one summary notification, return the result.

Steps 1-4 run under the per-run deadline. An abort anywhere propagates
unchanged and leaves the stored cursor as it was.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from calsync.config import SyncSettings
from calsync.core.logging import user_context
from calsync.core.telemetry import import_span
from calsync.errors import (
    ExternalApiError,
    ImportInProgressError,
    ImportTimeoutError,
    NotConnectedError,
    ReauthRequiredError,
    TokenExpiredNoRefreshError,
    VersionConflictError,
)
from calsync.google_client import CursorInvalid, FetchedEvents, GoogleCalendarClient
from calsync.mapper import map_external_to_internal
from calsync.models import (
    DEFAULT_EVENT_COLOR,
    CalendarEvent,
    CreateEventInput,
    EventPatch,
    EventSyncInfo,
    ExternalEvent,
    ImportConflict,
    ImportResult,
    NotificationInput,
    SyncCursor,
)
from calsync.resolver import ApplyAction, ConflictAction, CreateAction, resolve
from calsync.token_manager import TokenManager

if TYPE_CHECKING:
    from calsync.storage.base import EventStore, NotificationStore, UserMetaStore

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "GOOGLE_IMPORT"
NOTIFICATION_TITLE = "Google Calendar Import Complete"


def _sync_info(event: CalendarEvent) -> EventSyncInfo:
    return EventSyncInfo(
        event_id=event.event_id,
        external_event_id=event.external_event_id or "",
        external_revision_tag=event.external_revision_tag,
        external_synced_at=event.external_synced_at,
        updated_at=event.updated_at,
        version=event.version,
    )


class _RunTally:
    def __init__(self) -> None:
        self.imported = 0
        self.skipped = 0
        self.conflicts: list[ImportConflict] = []

    def conflict(self, conflict: ImportConflict) -> None:
        self.conflicts.append(conflict)
        self.skipped += 1


class ImportOrchestrator:
    """Runs imports for any number of users, one run per user at a time.

    Parameters
    ----------
    user_meta_store, event_store, notification_store:
        Storage collaborators (see :mod:`calsync.storage.base`).
    client:
        Google Calendar client used for token refresh and event listing.
    settings:
        Run tuning; defaults to :class:`SyncSettings` defaults.
    clock:
        Returns "now" as an aware datetime. Injectable for tests.
    """

    def __init__(
        self,
        user_meta_store: UserMetaStore,
        event_store: EventStore,
        notification_store: NotificationStore,
        client: GoogleCalendarClient,
        *,
        settings: SyncSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        token_manager: TokenManager | None = None,
    ) -> None:
        self._user_meta_store = user_meta_store
        self._event_store = event_store
        self._notification_store = notification_store
        self._client = client
        self._settings = settings or SyncSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._token_manager = token_manager or TokenManager(
            user_meta_store,
            client,
            refresh_buffer=timedelta(seconds=self._settings.token_refresh_buffer_seconds),
            clock=self._clock,
        )
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._user_locks_guard = asyncio.Lock()

    async def _get_user_lock(self, user_id: str) -> asyncio.Lock:
        async with self._user_locks_guard:
            if user_id not in self._user_locks:
                self._user_locks[user_id] = asyncio.Lock()
            return self._user_locks[user_id]

    def _discard_user_lock(self, user_id: str, lock: asyncio.Lock) -> None:
        # Overlapping runs fail fast, so a released lock has no waiters.
        if not lock.locked() and self._user_locks.get(user_id) is lock:
            del self._user_locks[user_id]

    def is_running(self, user_id: str) -> bool:
        lock = self._user_locks.get(user_id)
        return lock is not None and lock.locked()

    async def run(self, user_id: str, *, timeout: float | None = None) -> ImportResult:
        """Import the user's Google Calendar events.

        Parameters
        ----------
        user_id:
            The local user whose connection is used.
        timeout:
            Deadline in seconds overriding ``SyncSettings.run_timeout_seconds``.
            ``0`` disables the deadline for this run.

        Raises
        ------
        NotConnectedError
            The user has no stored credential.
        ReauthRequiredError
            The token expired and cannot be refreshed.
        TokenRefreshError, ExternalApiError
            Google failed; the run can be retried later.
        ImportInProgressError
            Another run for the same user is active.
        ImportTimeoutError
            The deadline passed before the events were applied.
        """
        deadline = timeout if timeout is not None else self._settings.run_timeout_seconds
        if not deadline:
            deadline = None

        lock = await self._get_user_lock(user_id)
        if lock.locked():
            logger.info("Import already running for user %s; rejecting overlapping run", user_id)
            raise ImportInProgressError(user_id)

        try:
            async with lock:
                with user_context(user_id), import_span(user_id) as span:
                    result = await self._run_locked(user_id, deadline)
                    span.set_attribute("calsync.imported", result.imported_count)
                    span.set_attribute("calsync.skipped", result.skipped_count)
                    span.set_attribute("calsync.conflicts", len(result.conflicts))
                    return result
        finally:
            self._discard_user_lock(user_id, lock)

    async def _run_locked(self, user_id: str, deadline: float | None) -> ImportResult:
        run_at = self._clock()
        try:
            async with asyncio.timeout(deadline) as scope:
                tally, next_cursor_token = await self._fetch_and_apply(user_id, run_at)
        except TimeoutError as exc:
            if scope.expired():
                logger.warning("Import for user %s exceeded %.1fs deadline", user_id, deadline)
                raise ImportTimeoutError(user_id, deadline or 0.0) from exc
            raise

        await self._user_meta_store.update_sync_cursor(
            user_id, SyncCursor(last_sync_at=run_at, opaque_token=next_cursor_token)
        )

        notification = await self._notification_store.create_notification(
            NotificationInput(
                user_id=user_id,
                type=NOTIFICATION_TYPE,
                title=NOTIFICATION_TITLE,
                message=(
                    f"{tally.imported} events imported, {len(tally.conflicts)} conflicts detected"
                ),
                metadata={
                    "imported": tally.imported,
                    "skipped": tally.skipped,
                    "conflicts": [c.model_dump(mode="json") for c in tally.conflicts],
                },
            )
        )

        logger.info(
            "Google import complete for user %s: imported=%d skipped=%d conflicts=%d",
            user_id,
            tally.imported,
            tally.skipped,
            len(tally.conflicts),
        )
        return ImportResult(
            imported_count=tally.imported,
            skipped_count=tally.skipped,
            conflicts=tally.conflicts,
            notification_id=notification.notification_id,
        )

    async def _fetch_and_apply(
        self, user_id: str, run_at: datetime
    ) -> tuple[_RunTally, str | None]:
        meta = await self._user_meta_store.find_user_meta(user_id)
        if meta is None or meta.credential is None:
            raise NotConnectedError()

        try:
            access_token = await self._token_manager.get_usable_access_token(
                user_id, meta.credential
            )
        except TokenExpiredNoRefreshError as exc:
            raise ReauthRequiredError() from exc

        cursor_token = meta.cursor.opaque_token if meta.cursor else None
        fetched = await self._fetch(access_token, cursor_token)

        tally = _RunTally()
        await self._apply_events(user_id, fetched.events, run_at, tally)
        return tally, fetched.next_cursor_token

    async def _fetch(self, access_token: str, cursor_token: str | None) -> FetchedEvents:
        if cursor_token is not None:
            outcome = await self._client.list_events(access_token, cursor_token=cursor_token)
            if isinstance(outcome, FetchedEvents):
                return outcome
            logger.info("Stored sync cursor was rejected; running a full fetch instead")

        outcome = await self._client.list_events(access_token)
        if isinstance(outcome, CursorInvalid):
            # A cursorless request cannot be rejected as a cursor.
            raise ExternalApiError(410, "Google rejected a full calendar fetch")
        return outcome

    async def _current_updated_at(
        self, user_id: str, event_id: str, fallback: datetime
    ) -> datetime:
        current = await self._event_store.get_event(user_id, event_id)
        return current.updated_at if current is not None else fallback

    async def _apply_events(
        self,
        user_id: str,
        events: list[ExternalEvent],
        run_at: datetime,
        tally: _RunTally,
    ) -> None:
        live: list[ExternalEvent] = []
        for event in events:
            if event.is_cancelled:
                tally.skipped += 1
            else:
                live.append(event)

        linked = await self._event_store.find_linked_events(user_id, [e.id for e in live])

        for event in live:
            draft = map_external_to_internal(event, calendar_id=self._client.calendar_id)
            existing = linked.get(event.id)
            action = resolve(existing, event.etag)

            if isinstance(action, CreateAction):
                created = await self._event_store.create_event(
                    CreateEventInput(
                        user_id=user_id,
                        draft=draft,
                        color=DEFAULT_EVENT_COLOR,
                        synced_at=run_at,
                    )
                )
                linked[event.id] = _sync_info(created)
                tally.imported += 1

            elif isinstance(action, ApplyAction):
                assert existing is not None
                try:
                    updated = await self._event_store.update_event(
                        user_id,
                        action.event_id,
                        EventPatch.from_draft(draft, synced_at=run_at),
                        action.expected_version,
                    )
                except VersionConflictError:
                    logger.info(
                        "Event %s changed locally during import; reporting as conflict",
                        action.event_id,
                    )
                    tally.conflict(
                        ImportConflict(
                            event_id=action.event_id,
                            title=draft.title,
                            local_updated_at=await self._current_updated_at(
                                user_id, action.event_id, existing.updated_at
                            ),
                            external_updated_at=event.updated,
                        )
                    )
                    continue
                linked[event.id] = _sync_info(updated)
                tally.imported += 1

            elif isinstance(action, ConflictAction):
                tally.conflict(
                    ImportConflict(
                        event_id=action.event_id,
                        title=draft.title,
                        local_updated_at=action.local_updated_at,
                        external_updated_at=event.updated,
                    )
                )

            else:
                tally.skipped += 1
