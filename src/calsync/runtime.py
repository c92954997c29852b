"""Assembles the sync engine from a :class:`CalsyncConfig`.

Both the API server and the CLI obtain their service through
:func:`open_runtime`, which owns the database pool and the HTTP client for
the lifetime of the ``async with`` block.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import asyncpg
import httpx

from calsync.config import CalsyncConfig
from calsync.google_client import GoogleCalendarClient
from calsync.orchestrator import ImportOrchestrator
from calsync.service import CalendarConnectionService
from calsync.storage.memory import InMemoryStore
from calsync.storage.postgres import PostgresStore, ensure_schema

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    service: CalendarConnectionService
    orchestrator: ImportOrchestrator
    client: GoogleCalendarClient
    store: PostgresStore | InMemoryStore
    pool: asyncpg.Pool | None = None


@asynccontextmanager
async def open_runtime(
    config: CalsyncConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[Runtime]:
    """Create the storage backend, Google client, orchestrator and service.

    Without ``database.dsn`` an in-memory store is used, so state does not
    survive the process.
    """
    pool: asyncpg.Pool | None = None
    store: PostgresStore | InMemoryStore
    if config.database.dsn:
        pool = await asyncpg.create_pool(
            dsn=config.database.dsn,
            min_size=config.database.min_size,
            max_size=config.database.max_size,
        )
        await ensure_schema(pool)
        store = PostgresStore(pool)
        logger.info("Connection pool created for calsync storage")
    else:
        logger.warning("No database.dsn configured; using in-memory storage")
        store = InMemoryStore()

    client = GoogleCalendarClient.from_config(config.google, config.sync, http_client=http_client)
    orchestrator = ImportOrchestrator(store, store, store, client, settings=config.sync)
    service = CalendarConnectionService(
        store, client, orchestrator, redirect_uri=config.google.redirect_uri
    )

    try:
        yield Runtime(
            service=service,
            orchestrator=orchestrator,
            client=client,
            store=store,
            pool=pool,
        )
    finally:
        await client.aclose()
        if pool is not None:
            await pool.close()
            logger.info("Connection pool closed for calsync storage")
