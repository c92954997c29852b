"""Storage backends for credentials, sync cursors, events and notifications."""

from calsync.storage.base import EventStore, NotificationStore, UserMetaStore
from calsync.storage.memory import InMemoryStore
from calsync.storage.postgres import PostgresStore, ensure_schema

__all__ = [
    "EventStore",
    "InMemoryStore",
    "NotificationStore",
    "PostgresStore",
    "UserMetaStore",
    "ensure_schema",
]
