"""Conflict resolution between a linked local event and its Google copy.

The decision is a total, side-effect-free function of two booleans:

==================  ==================  ==========
local changed       external changed    action
==================  ==================  ==========
no                  no                  no-op
yes                 no                  no-op
no                  yes                 apply
yes                 yes                 conflict
==================  ==================  ==========

*local changed* is ``updated_at > external_synced_at`` (strict, on aware
datetimes). Equal instants mean the local record was last written by the sync
itself. A record that was never stamped with ``external_synced_at`` counts as
locally changed.

*external changed* is ``etag != external_revision_tag``.

With no linked record at all the action is always create.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from calsync.models import EventSyncInfo, ensure_utc


@dataclass(frozen=True)
class CreateAction:
    """No linked record exists; seed a new local event from the draft."""


@dataclass(frozen=True)
class NoOpAction:
    """Nothing to write. Counted as skipped."""

    event_id: str


@dataclass(frozen=True)
class ApplyAction:
    """Only Google changed; overwrite content under the version precondition."""

    event_id: str
    expected_version: int


@dataclass(frozen=True)
class ConflictAction:
    """Both sides changed; leave the record alone and report it."""

    event_id: str
    local_updated_at: datetime


SyncAction = CreateAction | NoOpAction | ApplyAction | ConflictAction


def has_local_changes(existing: EventSyncInfo) -> bool:
    if existing.external_synced_at is None:
        return True
    return ensure_utc(existing.updated_at) > ensure_utc(existing.external_synced_at)


def has_external_changes(existing: EventSyncInfo, etag: str) -> bool:
    return etag != existing.external_revision_tag


def resolve(existing: EventSyncInfo | None, etag: str) -> SyncAction:
    """Decide what to do with one external event given its linked local record."""
    if existing is None:
        return CreateAction()

    local_changed = has_local_changes(existing)
    external_changed = has_external_changes(existing, etag)

    if local_changed and external_changed:
        return ConflictAction(
            event_id=existing.event_id,
            local_updated_at=ensure_utc(existing.updated_at),
        )
    if external_changed:
        return ApplyAction(event_id=existing.event_id, expected_version=existing.version)
    return NoOpAction(event_id=existing.event_id)
