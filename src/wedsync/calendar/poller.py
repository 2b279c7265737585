"""Background poller that reconciles every sync-enabled tenant on an interval."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.errors import PersistenceError
from wedsync.calendar.models import SyncResult
from wedsync.calendar.store import CalendarSyncStore
from wedsync.config import SyncConfig

logger = logging.getLogger(__name__)


class SyncPoller:
    """Runs ``CalendarSyncEngine.synchronize`` for each connected tenant.

    Tenants are processed one after another; the engine's per-tenant lease
    keeps a poll and a user-triggered sync from overlapping. ``trigger()``
    wakes the loop early, mirroring a "sync now" request.
    """

    def __init__(
        self,
        *,
        engine: CalendarSyncEngine,
        store: CalendarSyncStore,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._config = config or SyncConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None
        self._force_sync_event: asyncio.Event = asyncio.Event()

    @property
    def interval_seconds(self) -> float:
        return self._config.poll_interval_minutes * 60

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict[str, SyncResult]:
        """Sync every enabled tenant once and prune expired log entries."""
        try:
            tenant_ids = await self._store.list_sync_enabled_tenants()
        except PersistenceError as exc:
            logger.error("Could not list tenants for calendar sync: %s", exc)
            return {}

        results: dict[str, SyncResult] = {}
        for tenant_id in tenant_ids:
            results[tenant_id] = await self._engine.synchronize(tenant_id)

        await self._prune_log()
        failed = sum(1 for result in results.values() if not result.success)
        logger.info("Calendar poll finished: tenants=%d failed=%d", len(results), failed)
        return results

    async def _prune_log(self) -> None:
        retention_days = self._config.log_retention_days
        if retention_days <= 0:
            return
        cutoff = self._clock() - timedelta(days=retention_days)
        try:
            pruned = await self._store.prune_sync_log(older_than=cutoff)
        except PersistenceError as exc:
            logger.warning("Could not prune calendar sync log: %s", exc)
            return
        if pruned:
            logger.debug("Pruned %d calendar sync log entries older than %s", pruned, cutoff)

    def trigger(self) -> None:
        """Request an immediate poll outside the normal schedule."""
        self._force_sync_event.set()

    async def run_forever(self) -> None:
        """Poll at the configured interval until cancelled."""
        logger.debug("Calendar sync poller loop started (interval=%ds)", self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=self.interval_seconds,
                )
                self._force_sync_event.clear()
                logger.debug("Calendar sync poller: immediate poll triggered")
            except TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever(), name="calendar-sync-poller")
        logger.info(
            "Calendar sync poller started (interval=%dm)", self._config.poll_interval_minutes
        )

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
