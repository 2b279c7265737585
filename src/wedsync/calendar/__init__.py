"""Two-way calendar sync between tenant wedding events and Google Calendar."""

from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.errors import (
    CalendarSyncError,
    NotConnectedError,
    PersistenceError,
    ProviderError,
)
from wedsync.calendar.models import (
    CalendarConnection,
    CalendarEvent,
    CalendarEventUpdate,
    EventCategory,
    EventFields,
    SyncLogEntry,
    SyncResult,
    SyncStatus,
)
from wedsync.calendar.poller import SyncPoller
from wedsync.calendar.store import CalendarSyncStore, PostgresCalendarStore

__all__ = [
    "CalendarConnection",
    "CalendarEvent",
    "CalendarEventUpdate",
    "CalendarSyncEngine",
    "CalendarSyncError",
    "CalendarSyncStore",
    "EventCategory",
    "EventFields",
    "NotConnectedError",
    "PersistenceError",
    "PostgresCalendarStore",
    "ProviderError",
    "SyncLogEntry",
    "SyncPoller",
    "SyncResult",
    "SyncStatus",
]
