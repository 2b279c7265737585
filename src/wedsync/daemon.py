"""Runtime assembly for wedsync: database pool, store, Google client, engine, poller.

``CalendarRuntime`` is shared by the CLI commands and the HTTP app so every
entry point wires the same collaborators from one ``WedsyncConfig``.
"""

from __future__ import annotations

import logging

import httpx

from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.google import GoogleCalendarProvider
from wedsync.calendar.models import CalendarConnection
from wedsync.calendar.poller import SyncPoller
from wedsync.calendar.provider import CalendarProvider
from wedsync.calendar.store import PostgresCalendarStore
from wedsync.config import WedsyncConfig
from wedsync.core.telemetry import init_telemetry
from wedsync.db import Database
from wedsync.migrations import run_migrations

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 30.0


class CalendarRuntime:
    """Owns the long-lived resources behind the sync engine.

    Usage::

        runtime = CalendarRuntime(config)
        await runtime.start()
        try:
            await runtime.engine.synchronize("tenant-1")
        finally:
            await runtime.shutdown()
    """

    def __init__(self, config: WedsyncConfig) -> None:
        self.config = config
        self.db: Database | None = None
        self.store: PostgresCalendarStore | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.engine: CalendarSyncEngine | None = None
        self.poller: SyncPoller | None = None

    def provider_factory(self, connection: CalendarConnection) -> CalendarProvider:
        return GoogleCalendarProvider.for_connection(
            connection,
            self.config.google,
            sync_config=self.config.sync,
            http_client=self.http_client,
        )

    async def start(self, *, migrate: bool = False) -> None:
        """Provision the database, open the pool and build the engine.

        With ``migrate=True`` the ``core`` migration chain is applied before
        the pool is opened.
        """
        init_telemetry("wedsync")

        self.db = Database.from_config(self.config.database)
        await self.db.provision()
        if migrate:
            await run_migrations(self.db.url)
        pool = await self.db.connect()

        self.store = PostgresCalendarStore(pool)
        # Shared by every provider; providers built on it never close it.
        self.http_client = httpx.AsyncClient(timeout=_HTTP_TIMEOUT_SECONDS)
        self.engine = CalendarSyncEngine(
            store=self.store,
            provider_factory=self.provider_factory,
            config=self.config.sync,
        )
        self.poller = SyncPoller(engine=self.engine, store=self.store, config=self.config.sync)
        logger.info("wedsync runtime started (database=%s)", self.db.db_name)

    async def shutdown(self) -> None:
        if self.poller is not None:
            await self.poller.stop()
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        if self.db is not None:
            await self.db.close()
        logger.info("wedsync runtime stopped")
