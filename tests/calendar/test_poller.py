"""Unit tests for SyncPoller.

Covers:
- run_once syncs every sync-enabled tenant and skips disabled ones
- Sync log retention pruning (and disabling it)
- Storage failures while listing tenants or pruning never raise
- Background loop: start/stop lifecycle, trigger() wakes the loop early,
  an unexpected error does not kill the loop
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from wedsync.calendar.models import CalendarConnection, SyncLogEntry, SyncResult
from wedsync.calendar.poller import SyncPoller
from wedsync.config import SyncConfig

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _wait_until(predicate, *, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def _mock_engine() -> MagicMock:
    engine = MagicMock()
    engine.synchronize = AsyncMock(return_value=SyncResult(success=True))
    return engine


def _log_entry(entry_id: int, created_at: datetime) -> SyncLogEntry:
    return SyncLogEntry(success=True, id=entry_id, tenant_id="tenant-1", created_at=created_at)


class TestRunOnce:
    async def test_syncs_every_enabled_tenant(self, store, make_engine, mirror):
        for tenant_id, enabled in (("tenant-a", True), ("tenant-b", True), ("tenant-c", False)):
            await store.save_connection(
                CalendarConnection(
                    tenant_id=tenant_id,
                    calendar_id=f"{tenant_id}@group.calendar.google.com",
                    calendar_name="Wedding Planning",
                    sync_enabled=enabled,
                    refresh_token="refresh-token",
                )
            )
        poller = SyncPoller(engine=make_engine(), store=store)

        results = await poller.run_once()

        assert sorted(results) == ["tenant-a", "tenant-b"]
        assert all(result.success for result in results.values())
        assert sorted(entry.tenant_id for entry in store.sync_log) == ["tenant-a", "tenant-b"]

    async def test_prunes_expired_log_entries(self, store):
        store.sync_log = [
            _log_entry(1, NOW - timedelta(days=120)),
            _log_entry(2, NOW - timedelta(days=10)),
        ]
        poller = SyncPoller(engine=_mock_engine(), store=store, clock=lambda: NOW)

        await poller.run_once()

        assert [entry.id for entry in store.sync_log] == [2]

    async def test_zero_retention_keeps_log(self, store):
        store.sync_log = [_log_entry(1, NOW - timedelta(days=1000))]
        poller = SyncPoller(
            engine=_mock_engine(),
            store=store,
            config=SyncConfig(log_retention_days=0),
            clock=lambda: NOW,
        )

        await poller.run_once()

        assert len(store.sync_log) == 1

    async def test_tenant_listing_failure_returns_empty(self, store):
        store.fail_operations.add("list_sync_enabled_tenants")
        engine = _mock_engine()
        poller = SyncPoller(engine=engine, store=store)

        assert await poller.run_once() == {}
        engine.synchronize.assert_not_awaited()

    async def test_prune_failure_is_swallowed(self, store, connection):
        store.fail_operations.add("prune_sync_log")
        poller = SyncPoller(engine=_mock_engine(), store=store)

        results = await poller.run_once()

        assert list(results) == [connection.tenant_id]


class TestLoop:
    async def test_start_trigger_stop(self, store, connection):
        engine = _mock_engine()
        poller = SyncPoller(
            engine=engine,
            store=store,
            config=SyncConfig(poll_interval_minutes=60),
        )

        poller.start()
        try:
            assert poller.running is True
            await _wait_until(lambda: engine.synchronize.await_count == 1)

            poller.trigger()
            await _wait_until(lambda: engine.synchronize.await_count == 2)
        finally:
            await poller.stop()

        assert poller.running is False
        engine.synchronize.assert_awaited_with(connection.tenant_id)

    async def test_start_is_idempotent(self, store):
        poller = SyncPoller(engine=_mock_engine(), store=store)

        poller.start()
        first_task = poller._task
        poller.start()
        try:
            assert poller._task is first_task
        finally:
            await poller.stop()

    async def test_unexpected_error_does_not_stop_loop(self):
        store = MagicMock()
        store.list_sync_enabled_tenants = AsyncMock(
            side_effect=[RuntimeError("boom"), ["tenant-1"], ["tenant-1"]]
        )
        store.prune_sync_log = AsyncMock(return_value=0)
        engine = _mock_engine()
        poller = SyncPoller(engine=engine, store=store, config=SyncConfig(poll_interval_minutes=60))

        poller.start()
        try:
            await _wait_until(lambda: store.list_sync_enabled_tenants.await_count == 1)
            poller.trigger()
            await _wait_until(lambda: engine.synchronize.await_count == 1)
        finally:
            await poller.stop()

    def test_interval_follows_config(self, store):
        poller = SyncPoller(
            engine=_mock_engine(), store=store, config=SyncConfig(poll_interval_minutes=5)
        )

        assert poller.interval_seconds == 300
