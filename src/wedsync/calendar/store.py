"""Persistence for calendar events, connections, sync leases and the sync log.

``CalendarSyncStore`` is the contract the reconciliation engine and the HTTP
layer depend on. ``PostgresCalendarStore`` implements it on asyncpg; every
write that matters to synchronization is a single SQL statement, so a
cancelled pass never leaves a half-updated row behind.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from wedsync.calendar.errors import PersistenceError
from wedsync.calendar.models import (
    CalendarConnection,
    CalendarEvent,
    CalendarEventUpdate,
    EventFields,
    PushResult,
    RemoteEvent,
    SyncLogEntry,
    SyncResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SYNC_LOG_LIMIT = 20


class CalendarSyncStore(Protocol):
    """Persistence contract for the calendar sync engine and API."""

    # -- connections ---------------------------------------------------------

    async def get_connection(self, tenant_id: str) -> CalendarConnection | None:
        """Return the tenant's connection, or ``None`` when never connected."""
        ...

    async def save_connection(self, connection: CalendarConnection) -> CalendarConnection:
        """Insert or replace the tenant's connection."""
        ...

    async def delete_connection(self, tenant_id: str) -> bool:
        """Remove the tenant's connection and unlink its events.

        Unlinked events drop their provider id and etag and go back to
        ``local``, so a later connection pushes them to its own calendar.
        Returns whether a connection existed.
        """
        ...

    async def update_sync_cursor(
        self,
        tenant_id: str,
        *,
        sync_token: str,
        synced_at: datetime,
    ) -> None:
        """Persist the cursor and last sync time together."""
        ...

    async def list_sync_enabled_tenants(self) -> list[str]:
        """Return tenant ids whose connection has sync enabled."""
        ...

    # -- events --------------------------------------------------------------

    async def list_events(self, tenant_id: str) -> list[CalendarEvent]:
        """Return all events for a tenant, latest start first."""
        ...

    async def get_event(self, tenant_id: str, event_id: uuid.UUID) -> CalendarEvent | None: ...

    async def get_event_by_provider_id(
        self,
        tenant_id: str,
        provider_event_id: str,
    ) -> CalendarEvent | None: ...

    async def create_event(self, tenant_id: str, fields: EventFields) -> CalendarEvent:
        """Insert a user-created event with status ``local``."""
        ...

    async def update_event(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        update: CalendarEventUpdate,
    ) -> CalendarEvent | None:
        """Apply a user edit, bump the version and mark a synced row ``pending``."""
        ...

    async def delete_event(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        *,
        expected_version: int | None = None,
    ) -> bool:
        """Delete an event, optionally only if its version is unchanged."""
        ...

    # -- sync writes ---------------------------------------------------------

    async def insert_remote_event(
        self,
        tenant_id: str,
        remote: RemoteEvent,
    ) -> CalendarEvent | None:
        """Create a ``synced`` local copy; ``None`` if the provider id is already linked."""
        ...

    async def mark_pushed(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        *,
        expected_version: int,
        result: PushResult,
    ) -> bool:
        """Record provider id and etag after a push.

        The row becomes ``synced`` only if its version still equals
        *expected_version*; otherwise it keeps the link but stays ``pending``.
        Returns ``False`` without writing when the tenant has no connection.
        """
        ...

    async def mark_conflict(self, tenant_id: str, event_id: uuid.UUID) -> bool: ...

    async def apply_remote(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        *,
        expected_version: int,
        remote: RemoteEvent,
    ) -> bool:
        """Overwrite content and etag from the provider if the version is unchanged."""
        ...

    async def mark_for_repush(self, tenant_id: str, event_id: uuid.UUID) -> CalendarEvent | None:
        """Clear the etag and mark ``pending`` so the next push overwrites the remote copy."""
        ...

    # -- leases and log ------------------------------------------------------

    async def acquire_sync_lease(self, tenant_id: str, *, ceiling_seconds: float) -> str | None:
        """Take the tenant's sync lease; ``None`` while a live pass holds it."""
        ...

    async def release_sync_lease(self, tenant_id: str, holder: str) -> None: ...

    async def append_sync_log(self, tenant_id: str, result: SyncResult) -> SyncLogEntry: ...

    async def list_sync_log(
        self,
        tenant_id: str,
        *,
        limit: int = DEFAULT_SYNC_LOG_LIMIT,
    ) -> list[SyncLogEntry]: ...

    async def prune_sync_log(self, *, older_than: datetime) -> int:
        """Delete log entries created before *older_than*; returns the count."""
        ...


def new_lease_holder() -> str:
    return secrets.token_hex(16)


_EVENT_COLUMNS = """
    id, tenant_id, title, description, start_time, end_time, all_day, location,
    category, color, vendor_id, task_id, provider_event_id, etag, sync_status,
    version, last_synced_at, created_at, updated_at
"""

_CONNECTION_COLUMNS = """
    tenant_id, calendar_id, calendar_name, sync_enabled, sync_token, last_sync_at,
    google_email, refresh_token, access_token, token_expires_at, connected_at,
    connected_by
"""

_SYNC_LOG_COLUMNS = """
    id, tenant_id, created_at, success, pushed, pulled, updated, deleted, failed,
    conflicts, full_resync, error
"""


def _row_to_event(row: Any) -> CalendarEvent:
    return CalendarEvent(**dict(row))


def _row_to_connection(row: Any) -> CalendarConnection:
    return CalendarConnection(**dict(row))


def _row_to_log_entry(row: Any) -> SyncLogEntry:
    return SyncLogEntry(**dict(row))


def _field_args(fields: EventFields) -> tuple[Any, ...]:
    return (
        fields.title,
        fields.description,
        fields.start_time,
        fields.end_time,
        fields.all_day,
        fields.location,
        fields.category.value,
        fields.color,
        fields.vendor_id,
        fields.task_id,
    )


@asynccontextmanager
async def _persistence_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc


def _affected(status: str) -> int:
    """Parse the row count from an asyncpg command status like ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresCalendarStore:
    """asyncpg-backed implementation of ``CalendarSyncStore``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- connections ---------------------------------------------------------

    async def get_connection(self, tenant_id: str) -> CalendarConnection | None:
        async with _persistence_errors("get_connection"):
            row = await self._pool.fetchrow(
                f"SELECT {_CONNECTION_COLUMNS} FROM calendar_connections WHERE tenant_id = $1",
                tenant_id,
            )
        return _row_to_connection(row) if row is not None else None

    async def save_connection(self, connection: CalendarConnection) -> CalendarConnection:
        async with _persistence_errors("save_connection"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO calendar_connections (
                    tenant_id, calendar_id, calendar_name, sync_enabled, sync_token,
                    last_sync_at, google_email, refresh_token, access_token,
                    token_expires_at, connected_at, connected_by
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, COALESCE($11, now()), $12)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    calendar_id = EXCLUDED.calendar_id,
                    calendar_name = EXCLUDED.calendar_name,
                    sync_enabled = EXCLUDED.sync_enabled,
                    sync_token = EXCLUDED.sync_token,
                    last_sync_at = EXCLUDED.last_sync_at,
                    google_email = EXCLUDED.google_email,
                    refresh_token = EXCLUDED.refresh_token,
                    access_token = EXCLUDED.access_token,
                    token_expires_at = EXCLUDED.token_expires_at,
                    connected_at = EXCLUDED.connected_at,
                    connected_by = EXCLUDED.connected_by
                RETURNING {_CONNECTION_COLUMNS}
                """,
                connection.tenant_id,
                connection.calendar_id,
                connection.calendar_name,
                connection.sync_enabled,
                connection.sync_token,
                connection.last_sync_at,
                connection.google_email,
                connection.refresh_token,
                connection.access_token,
                connection.token_expires_at,
                connection.connected_at,
                connection.connected_by,
            )
        return _row_to_connection(row)

    async def delete_connection(self, tenant_id: str) -> bool:
        async with _persistence_errors("delete_connection"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    status = await conn.execute(
                        "DELETE FROM calendar_connections WHERE tenant_id = $1",
                        tenant_id,
                    )
                    await conn.execute(
                        """
                        UPDATE calendar_events SET
                            provider_event_id = NULL,
                            etag = NULL,
                            last_synced_at = NULL,
                            sync_status = 'local',
                            updated_at = now()
                        WHERE tenant_id = $1 AND provider_event_id IS NOT NULL
                        """,
                        tenant_id,
                    )
        return _affected(status) > 0

    async def update_sync_cursor(
        self,
        tenant_id: str,
        *,
        sync_token: str,
        synced_at: datetime,
    ) -> None:
        async with _persistence_errors("update_sync_cursor"):
            await self._pool.execute(
                """
                UPDATE calendar_connections
                SET sync_token = $2, last_sync_at = $3
                WHERE tenant_id = $1
                """,
                tenant_id,
                sync_token,
                synced_at,
            )

    async def list_sync_enabled_tenants(self) -> list[str]:
        async with _persistence_errors("list_sync_enabled_tenants"):
            rows = await self._pool.fetch(
                "SELECT tenant_id FROM calendar_connections WHERE sync_enabled ORDER BY tenant_id"
            )
        return [row["tenant_id"] for row in rows]

    # -- events --------------------------------------------------------------

    async def list_events(self, tenant_id: str) -> list[CalendarEvent]:
        async with _persistence_errors("list_events"):
            rows = await self._pool.fetch(
                f"""
                SELECT {_EVENT_COLUMNS} FROM calendar_events
                WHERE tenant_id = $1
                ORDER BY start_time DESC, id
                """,
                tenant_id,
            )
        return [_row_to_event(row) for row in rows]

    async def get_event(self, tenant_id: str, event_id: uuid.UUID) -> CalendarEvent | None:
        async with _persistence_errors("get_event"):
            row = await self._pool.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM calendar_events WHERE tenant_id = $1 AND id = $2",
                tenant_id,
                event_id,
            )
        return _row_to_event(row) if row is not None else None

    async def get_event_by_provider_id(
        self,
        tenant_id: str,
        provider_event_id: str,
    ) -> CalendarEvent | None:
        async with _persistence_errors("get_event_by_provider_id"):
            row = await self._pool.fetchrow(
                f"""
                SELECT {_EVENT_COLUMNS} FROM calendar_events
                WHERE tenant_id = $1 AND provider_event_id = $2
                """,
                tenant_id,
                provider_event_id,
            )
        return _row_to_event(row) if row is not None else None

    async def create_event(self, tenant_id: str, fields: EventFields) -> CalendarEvent:
        async with _persistence_errors("create_event"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO calendar_events (
                    tenant_id, title, description, start_time, end_time, all_day,
                    location, category, color, vendor_id, task_id, sync_status
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, 'local')
                RETURNING {_EVENT_COLUMNS}
                """,
                tenant_id,
                *_field_args(fields),
            )
        return _row_to_event(row)

    async def update_event(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        update: CalendarEventUpdate,
    ) -> CalendarEvent | None:
        async with _persistence_errors("update_event"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        SELECT {_EVENT_COLUMNS} FROM calendar_events
                        WHERE tenant_id = $1 AND id = $2
                        FOR UPDATE
                        """,
                        tenant_id,
                        event_id,
                    )
                    if row is None:
                        return None
                    merged = update.apply_to(_row_to_event(row).to_fields())
                    updated = await conn.fetchrow(
                        f"""
                        UPDATE calendar_events SET
                            title = $3, description = $4, start_time = $5, end_time = $6,
                            all_day = $7, location = $8, category = $9, color = $10,
                            vendor_id = $11, task_id = $12,
                            version = version + 1,
                            sync_status = CASE sync_status
                                WHEN 'synced' THEN 'pending'
                                ELSE sync_status
                            END,
                            updated_at = now()
                        WHERE tenant_id = $1 AND id = $2
                        RETURNING {_EVENT_COLUMNS}
                        """,
                        tenant_id,
                        event_id,
                        *_field_args(merged),
                    )
        return _row_to_event(updated)

    async def delete_event(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        *,
        expected_version: int | None = None,
    ) -> bool:
        async with _persistence_errors("delete_event"):
            status = await self._pool.execute(
                """
                DELETE FROM calendar_events
                WHERE tenant_id = $1 AND id = $2
                  AND ($3::integer IS NULL OR version = $3::integer)
                """,
                tenant_id,
                event_id,
                expected_version,
            )
        return _affected(status) > 0

    # -- sync writes ---------------------------------------------------------

    async def insert_remote_event(
        self,
        tenant_id: str,
        remote: RemoteEvent,
    ) -> CalendarEvent | None:
        if remote.event is None:
            raise ValueError("cannot insert a deletion marker")
        async with _persistence_errors("insert_remote_event"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO calendar_events (
                    tenant_id, title, description, start_time, end_time, all_day,
                    location, category, color, vendor_id, task_id,
                    provider_event_id, etag, sync_status, last_synced_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, 'synced', now())
                ON CONFLICT (tenant_id, provider_event_id)
                    WHERE provider_event_id IS NOT NULL
                    DO NOTHING
                RETURNING {_EVENT_COLUMNS}
                """,
                tenant_id,
                *_field_args(remote.event),
                remote.provider_event_id,
                remote.etag,
            )
        return _row_to_event(row) if row is not None else None

    async def mark_pushed(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        *,
        expected_version: int,
        result: PushResult,
    ) -> bool:
        async with _persistence_errors("mark_pushed"):
            status = await self._pool.execute(
                """
                UPDATE calendar_events SET
                    provider_event_id = $3,
                    etag = $4,
                    last_synced_at = now(),
                    sync_status = CASE
                        WHEN version = $5 THEN 'synced'
                        WHEN sync_status = 'conflict' THEN 'conflict'
                        ELSE 'pending'
                    END,
                    updated_at = now()
                WHERE tenant_id = $1 AND id = $2
                  AND EXISTS (SELECT 1 FROM calendar_connections c WHERE c.tenant_id = $1)
                """,
                tenant_id,
                event_id,
                result.provider_event_id,
                result.etag,
                expected_version,
            )
        return _affected(status) > 0

    async def mark_conflict(self, tenant_id: str, event_id: uuid.UUID) -> bool:
        async with _persistence_errors("mark_conflict"):
            status = await self._pool.execute(
                """
                UPDATE calendar_events SET sync_status = 'conflict', updated_at = now()
                WHERE tenant_id = $1 AND id = $2 AND provider_event_id IS NOT NULL
                """,
                tenant_id,
                event_id,
            )
        return _affected(status) > 0

    async def apply_remote(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        *,
        expected_version: int,
        remote: RemoteEvent,
    ) -> bool:
        if remote.event is None:
            raise ValueError("cannot apply a deletion marker")
        async with _persistence_errors("apply_remote"):
            status = await self._pool.execute(
                """
                UPDATE calendar_events SET
                    title = $4, description = $5, start_time = $6, end_time = $7,
                    all_day = $8, location = $9, category = $10, color = $11,
                    vendor_id = $12, task_id = $13,
                    etag = $14,
                    sync_status = 'synced',
                    last_synced_at = now(),
                    updated_at = now()
                WHERE tenant_id = $1 AND id = $2 AND version = $3
                """,
                tenant_id,
                event_id,
                expected_version,
                *_field_args(remote.event),
                remote.etag,
            )
        return _affected(status) > 0

    async def mark_for_repush(self, tenant_id: str, event_id: uuid.UUID) -> CalendarEvent | None:
        async with _persistence_errors("mark_for_repush"):
            row = await self._pool.fetchrow(
                f"""
                UPDATE calendar_events SET
                    etag = NULL,
                    sync_status = 'pending',
                    version = version + 1,
                    updated_at = now()
                WHERE tenant_id = $1 AND id = $2
                RETURNING {_EVENT_COLUMNS}
                """,
                tenant_id,
                event_id,
            )
        return _row_to_event(row) if row is not None else None

    # -- leases and log ------------------------------------------------------

    async def acquire_sync_lease(self, tenant_id: str, *, ceiling_seconds: float) -> str | None:
        holder = new_lease_holder()
        async with _persistence_errors("acquire_sync_lease"):
            acquired = await self._pool.fetchval(
                """
                INSERT INTO calendar_sync_leases (tenant_id, holder, acquired_at)
                VALUES ($1, $2, now())
                ON CONFLICT (tenant_id) DO UPDATE SET
                    holder = EXCLUDED.holder,
                    acquired_at = EXCLUDED.acquired_at
                WHERE calendar_sync_leases.acquired_at
                    < now() - make_interval(secs => $3::double precision)
                RETURNING holder
                """,
                tenant_id,
                holder,
                float(ceiling_seconds),
            )
        return acquired

    async def release_sync_lease(self, tenant_id: str, holder: str) -> None:
        async with _persistence_errors("release_sync_lease"):
            await self._pool.execute(
                "DELETE FROM calendar_sync_leases WHERE tenant_id = $1 AND holder = $2",
                tenant_id,
                holder,
            )

    async def append_sync_log(self, tenant_id: str, result: SyncResult) -> SyncLogEntry:
        async with _persistence_errors("append_sync_log"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO calendar_sync_log (
                    tenant_id, success, pushed, pulled, updated, deleted, failed,
                    conflicts, full_resync, error
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING {_SYNC_LOG_COLUMNS}
                """,
                tenant_id,
                result.success,
                result.pushed,
                result.pulled,
                result.updated,
                result.deleted,
                result.failed,
                result.conflicts,
                result.full_resync,
                result.error,
            )
        return _row_to_log_entry(row)

    async def list_sync_log(
        self,
        tenant_id: str,
        *,
        limit: int = DEFAULT_SYNC_LOG_LIMIT,
    ) -> list[SyncLogEntry]:
        async with _persistence_errors("list_sync_log"):
            rows = await self._pool.fetch(
                f"""
                SELECT {_SYNC_LOG_COLUMNS} FROM calendar_sync_log
                WHERE tenant_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                tenant_id,
                limit,
            )
        return [_row_to_log_entry(row) for row in rows]

    async def prune_sync_log(self, *, older_than: datetime) -> int:
        async with _persistence_errors("prune_sync_log"):
            status = await self._pool.execute(
                "DELETE FROM calendar_sync_log WHERE created_at < $1",
                older_than,
            )
        return _affected(status)
