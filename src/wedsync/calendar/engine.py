"""Two-way reconciliation between a tenant's local events and its provider calendar.

One pass (``CalendarSyncEngine.synchronize``):

1. take the tenant's sync lease;
2. load the connection (absent or disabled: not connected, no side effects);
3. push local changes: ``local`` and unlinked ``pending`` rows are created
   remotely, linked ``pending`` rows are written with ``If-Match``;
4. pull remote changes since the stored cursor, applying each page as it
   arrives;
5. persist the new cursor only when every page was fetched and applied;
6. append exactly one sync log entry and release the lease.

Local edits take precedence by default: a remote change to a row with
unpushed local edits marks the row ``conflict`` instead of overwriting it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal, TypeVar

from wedsync.calendar.errors import (
    CalendarSyncError,
    NotConnectedError,
    PersistenceError,
    ProviderConflictError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTransientError,
    SyncInProgressError,
    SyncTokenExpiredError,
    sanitize_error_message,
)
from wedsync.calendar.models import (
    CalendarConnection,
    CalendarEvent,
    RemoteEvent,
    SyncResult,
    SyncStatus,
)
from wedsync.calendar.provider import MAX_PAGES_PER_LISTING, CalendarProvider, ProviderFactory
from wedsync.calendar.store import CalendarSyncStore
from wedsync.config import ConflictPolicy, SyncConfig
from wedsync.core.logging import tenant_context
from wedsync.core.telemetry import sync_span

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_CONNECTED_ERROR = "not connected"
SYNC_IN_PROGRESS_ERROR = "sync already in progress"

ConflictResolution = Literal["local", "remote"]


@dataclass
class _PassTally:
    """Mutable counters for one pass."""

    pushed: int = 0
    pulled: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    conflicts: int = 0
    full_resync: bool = False
    error: str | None = None

    def to_result(self) -> SyncResult:
        return SyncResult(
            success=self.error is None,
            pushed=self.pushed,
            pulled=self.pulled,
            updated=self.updated,
            deleted=self.deleted,
            failed=self.failed,
            conflicts=self.conflicts,
            full_resync=self.full_resync,
            error=self.error,
        )


class CalendarSyncEngine:
    """Runs reconciliation passes and the sync-aware event operations."""

    def __init__(
        self,
        *,
        store: CalendarSyncStore,
        provider_factory: ProviderFactory,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._provider_factory = provider_factory
        self._config = config or SyncConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def conflict_policy(self) -> ConflictPolicy:
        return self._config.conflict_policy

    # ------------------------------------------------------------------
    # Pass entry point
    # ------------------------------------------------------------------

    async def synchronize(self, tenant_id: str) -> SyncResult:
        """Run one reconciliation pass for *tenant_id*.

        Never raises: every failure is reported through the returned
        ``SyncResult``. Task cancellation still propagates.
        """
        with tenant_context(tenant_id), sync_span("sync", tenant_id=tenant_id) as span:
            try:
                holder = await self._store.acquire_sync_lease(
                    tenant_id,
                    ceiling_seconds=self._config.lock_ceiling_seconds,
                )
            except PersistenceError as exc:
                logger.error("Could not acquire sync lease: %s", exc)
                return SyncResult(success=False, error=sanitize_error_message(exc))

            if holder is None:
                logger.info("Calendar sync skipped: another pass holds the lease")
                return SyncResult(success=False, error=SYNC_IN_PROGRESS_ERROR)

            try:
                result = await self._run_pass(tenant_id)
            finally:
                try:
                    await self._store.release_sync_lease(tenant_id, holder)
                except PersistenceError as exc:
                    # Stale-lease takeover reclaims it after the ceiling.
                    logger.warning("Could not release sync lease: %s", exc)

            for key, value in result.model_dump(exclude={"error"}).items():
                span.set_attribute(f"wedsync.sync.{key}", value)
            return result

    async def _run_pass(self, tenant_id: str) -> SyncResult:
        try:
            connection = await self._load_connection(tenant_id)
        except NotConnectedError:
            logger.info("Calendar sync skipped: tenant is not connected")
            return SyncResult(success=False, error=NOT_CONNECTED_ERROR)
        except PersistenceError as exc:
            logger.error("Could not load calendar connection: %s", exc)
            result = SyncResult(success=False, error=sanitize_error_message(exc))
            await self._append_log(tenant_id, result)
            return result

        tally = _PassTally()
        try:
            provider = self._provider_factory(connection)
        except CalendarSyncError as exc:
            tally.error = sanitize_error_message(exc)
        else:
            try:
                await self._push(provider, connection, tally)
                await self._pull(provider, connection, tally)
            except CalendarSyncError as exc:
                logger.warning("Calendar sync pass failed: %s", exc)
                tally.error = sanitize_error_message(exc)
            except Exception as exc:
                logger.exception("Unexpected error during calendar sync pass")
                tally.error = sanitize_error_message(exc)
            finally:
                await self._shutdown_provider(provider)

        result = tally.to_result()
        logger.info(
            "Calendar sync finished: success=%s pushed=%d pulled=%d updated=%d deleted=%d "
            "failed=%d conflicts=%d",
            result.success,
            result.pushed,
            result.pulled,
            result.updated,
            result.deleted,
            result.failed,
            result.conflicts,
        )
        await self._append_log(tenant_id, result)
        return result

    async def _load_connection(self, tenant_id: str) -> CalendarConnection:
        connection = await self._store.get_connection(tenant_id)
        if connection is None or not connection.sync_enabled:
            raise NotConnectedError(tenant_id)
        return connection

    async def _append_log(self, tenant_id: str, result: SyncResult) -> None:
        try:
            await self._store.append_sync_log(tenant_id, result)
        except PersistenceError as exc:
            logger.error("Could not append sync log entry: %s", exc)

    @staticmethod
    async def _shutdown_provider(provider: CalendarProvider) -> None:
        try:
            await provider.shutdown()
        except Exception:
            logger.warning("Provider shutdown failed", exc_info=True)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await one provider call under the per-call timeout."""
        timeout = self._config.provider_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as exc:
            raise ProviderTransientError(f"provider call timed out after {timeout:g}s") from exc

    # ------------------------------------------------------------------
    # Push phase
    # ------------------------------------------------------------------

    async def _push(
        self,
        provider: CalendarProvider,
        connection: CalendarConnection,
        tally: _PassTally,
    ) -> None:
        events = await self._store.list_events(connection.tenant_id)
        for event in events:
            if event.sync_status not in (SyncStatus.local, SyncStatus.pending):
                continue
            try:
                await self._push_event(provider, connection, event, tally)
            except ProviderConflictError:
                logger.info("Remote copy of event %s changed since last sync", event.id)
                if await self._store.mark_conflict(connection.tenant_id, event.id):
                    tally.conflicts += 1
            except (ProviderError, PersistenceError) as exc:
                logger.warning("Failed to push event %s: %s", event.id, exc)
                tally.failed += 1
            except Exception:
                logger.exception("Unexpected error pushing event %s", event.id)
                tally.failed += 1

    async def _push_event(
        self,
        provider: CalendarProvider,
        connection: CalendarConnection,
        event: CalendarEvent,
        tally: _PassTally,
    ) -> None:
        fields = event.to_fields()
        if event.provider_event_id is None:
            result = await self._call(
                provider.create_event(calendar_id=connection.calendar_id, event=fields)
            )
        else:
            try:
                result = await self._call(
                    provider.update_event(
                        calendar_id=connection.calendar_id,
                        event_id=event.provider_event_id,
                        event=fields,
                        etag=event.etag,
                    )
                )
            except ProviderNotFoundError:
                if event.etag is not None:
                    # Deleted remotely while edited locally.
                    raise ProviderConflictError(
                        f"remote event {event.provider_event_id} no longer exists"
                    ) from None
                result = await self._call(
                    provider.create_event(calendar_id=connection.calendar_id, event=fields)
                )
        if not await self._store.mark_pushed(
            connection.tenant_id,
            event.id,
            expected_version=event.version,
            result=result,
        ):
            logger.info("Event %s was deleted or disconnected during push", event.id)
            return
        tally.pushed += 1

    # ------------------------------------------------------------------
    # Pull phase
    # ------------------------------------------------------------------

    async def _pull(
        self,
        provider: CalendarProvider,
        connection: CalendarConnection,
        tally: _PassTally,
    ) -> None:
        try:
            next_cursor, complete = await self._pull_pages(
                provider, connection, connection.sync_token, tally
            )
        except SyncTokenExpiredError:
            logger.warning("Sync cursor expired; falling back to a full sync")
            tally.full_resync = True
            next_cursor, complete = await self._pull_pages(provider, connection, None, tally)

        if not complete:
            logger.warning("Pull incomplete; keeping previous cursor")
            return
        await self._store.update_sync_cursor(
            connection.tenant_id,
            sync_token=next_cursor,
            synced_at=self._clock(),
        )

    async def _pull_pages(
        self,
        provider: CalendarProvider,
        connection: CalendarConnection,
        cursor: str | None,
        tally: _PassTally,
    ) -> tuple[str, bool]:
        """Fetch and apply every page; returns the final cursor and completeness."""
        complete = True
        page_token: str | None = None
        for _ in range(MAX_PAGES_PER_LISTING):
            page = await self._call(
                provider.list_page(
                    calendar_id=connection.calendar_id,
                    cursor=cursor,
                    page_token=page_token,
                )
            )
            # Unreadable items stay unreadable on a re-pull; they do not hold the cursor.
            tally.failed += page.skipped
            for remote in page.events:
                try:
                    await self._apply_remote(connection.tenant_id, remote, tally)
                except Exception as exc:
                    logger.warning(
                        "Failed to apply remote event %s: %s", remote.provider_event_id, exc
                    )
                    tally.failed += 1
                    complete = False
            if page.next_page_token is None:
                if page.next_cursor is None:
                    raise ProviderTransientError("provider listing ended without a sync cursor")
                return page.next_cursor, complete
            page_token = page.next_page_token
        raise ProviderTransientError(
            f"provider listing exceeded {MAX_PAGES_PER_LISTING} pages"
        )

    def _remote_wins(self, local: CalendarEvent) -> bool:
        return (
            local.sync_status == SyncStatus.synced
            or self.conflict_policy == ConflictPolicy.REMOTE_WINS
        )

    async def _apply_remote(self, tenant_id: str, remote: RemoteEvent, tally: _PassTally) -> None:
        local = await self._store.get_event_by_provider_id(tenant_id, remote.provider_event_id)

        if remote.deleted:
            if local is None:
                return
            if self._remote_wins(local):
                if await self._store.delete_event(
                    tenant_id, local.id, expected_version=local.version
                ):
                    tally.deleted += 1
                return
            await self._record_conflict(tenant_id, local, tally)
            return

        if local is None:
            if await self._store.insert_remote_event(tenant_id, remote) is not None:
                tally.pulled += 1
            return

        if remote.etag is not None and remote.etag == local.etag:
            # Our own push echoed back, or nothing changed.
            return

        if self._remote_wins(local):
            if await self._store.apply_remote(
                tenant_id, local.id, expected_version=local.version, remote=remote
            ):
                tally.updated += 1
            else:
                logger.info("Event %s was edited during the pull; keeping the edit", local.id)
            return

        await self._record_conflict(tenant_id, local, tally)

    async def _record_conflict(
        self,
        tenant_id: str,
        local: CalendarEvent,
        tally: _PassTally,
    ) -> None:
        if local.sync_status == SyncStatus.conflict:
            # Already flagged, possibly by this pass' push phase.
            return
        logger.info("Conflict on event %s: remote changed while local edits are unpushed", local.id)
        if await self._store.mark_conflict(tenant_id, local.id):
            tally.conflicts += 1

    # ------------------------------------------------------------------
    # Sync-aware event operations
    # ------------------------------------------------------------------

    async def disconnect(self, tenant_id: str) -> bool:
        """Remove the tenant's connection and unlink its events.

        Holds the sync lease for the duration so no pass can re-link events
        to the old calendar. Returns ``False`` when there was no connection.

        Raises:
            SyncInProgressError: a pass currently holds the lease.
        """
        with tenant_context(tenant_id), sync_span("disconnect", tenant_id=tenant_id):
            holder = await self._store.acquire_sync_lease(
                tenant_id,
                ceiling_seconds=self._config.lock_ceiling_seconds,
            )
            if holder is None:
                raise SyncInProgressError(SYNC_IN_PROGRESS_ERROR)
            try:
                removed = await self._store.delete_connection(tenant_id)
            finally:
                try:
                    await self._store.release_sync_lease(tenant_id, holder)
                except PersistenceError as exc:
                    logger.warning("Could not release sync lease: %s", exc)
            if removed:
                logger.info("Calendar disconnected; local events unlinked")
            return removed

    async def delete_event(self, tenant_id: str, event_id: uuid.UUID) -> bool:
        """Delete an event locally after removing its provider copy.

        A provider copy that is already gone counts as deleted. Any other
        provider error propagates and leaves the local row in place.
        Returns ``False`` when the event does not exist.
        """
        with tenant_context(tenant_id), sync_span("delete_event", tenant_id=tenant_id):
            event = await self._store.get_event(tenant_id, event_id)
            if event is None:
                return False

            if event.provider_event_id is not None:
                connection = await self._store.get_connection(tenant_id)
                if connection is not None and connection.sync_enabled:
                    provider = self._provider_factory(connection)
                    try:
                        await self._call(
                            provider.delete_event(
                                calendar_id=connection.calendar_id,
                                event_id=event.provider_event_id,
                            )
                        )
                    except ProviderNotFoundError:
                        logger.debug(
                            "Remote event %s already deleted; treating as success",
                            event.provider_event_id,
                        )
                    finally:
                        await self._shutdown_provider(provider)
                else:
                    logger.info("Tenant not connected; deleting event %s locally only", event_id)

            return await self._store.delete_event(tenant_id, event_id)

    async def resolve_conflict(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        keep: ConflictResolution,
    ) -> CalendarEvent | None:
        """Resolve a ``conflict`` row.

        ``keep="local"`` re-queues the local content so the next pass
        overwrites the remote copy. ``keep="remote"`` fetches the provider's
        current version and overwrites the local row with it, or deletes the
        local row when the remote one is gone (returning ``None``).

        Raises:
            KeyError: the event does not exist.
            ValueError: the event is not in conflict or is not linked remotely.
            NotConnectedError: ``keep="remote"`` without a connection.
        """
        with tenant_context(tenant_id), sync_span("resolve_conflict", tenant_id=tenant_id):
            event = await self._store.get_event(tenant_id, event_id)
            if event is None:
                raise KeyError(str(event_id))
            if event.sync_status != SyncStatus.conflict:
                raise ValueError(f"Event {event_id} is not in conflict")

            if keep == "local":
                logger.info("Conflict on %s resolved in favour of the local copy", event_id)
                return await self._store.mark_for_repush(tenant_id, event_id)

            connection = await self._load_connection(tenant_id)
            if event.provider_event_id is None:
                raise ValueError(f"Event {event_id} is not linked to a provider event")
            provider = self._provider_factory(connection)
            try:
                remote = await self._call(
                    provider.get_event(
                        calendar_id=connection.calendar_id,
                        event_id=event.provider_event_id,
                    )
                )
            finally:
                await self._shutdown_provider(provider)

            logger.info("Conflict on %s resolved in favour of the remote copy", event_id)
            if remote is None:
                await self._store.delete_event(tenant_id, event_id)
                return None
            if not await self._store.apply_remote(
                tenant_id, event_id, expected_version=event.version, remote=remote
            ):
                raise ValueError(f"Event {event_id} changed while resolving the conflict")
            return await self._store.get_event(tenant_id, event_id)
