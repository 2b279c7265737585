"""Request and response models for the calendar endpoints.

Request bodies accept the camelCase keys the web client sends
(``startTime``, ``allDay``, ``vendorId`` ...) as well as snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from wedsync.calendar.models import (
    CalendarConnection,
    CalendarEvent,
    CalendarEventUpdate,
    EventFields,
)

_REQUEST_CONFIG = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class CalendarEventCreateRequest(EventFields):
    """Body of ``POST /api/calendar/events``."""

    model_config = _REQUEST_CONFIG

    def to_fields(self) -> EventFields:
        return EventFields(**self.model_dump())


class CalendarEventUpdateRequest(CalendarEventUpdate):
    """Body of ``PATCH /api/calendar/events/{id}``; omitted keys stay unchanged."""

    model_config = _REQUEST_CONFIG

    def to_update(self) -> CalendarEventUpdate:
        return CalendarEventUpdate(**self.model_dump(exclude_unset=True))


class ResolveConflictRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keep: Literal["local", "remote"]


class DeleteEventResponse(BaseModel):
    deleted: bool = True


class ResolveConflictResponse(BaseModel):
    """Outcome of a conflict resolution; ``event`` is ``None`` when the event was removed."""

    resolution: Literal["local", "remote"]
    event: CalendarEvent | None = None


class ConnectStartResponse(BaseModel):
    """Returned by the connect endpoint when ``?redirect=false``."""

    authorization_url: str


class ConnectCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Google Calendar connected."
    calendar_name: str
    google_email: str | None = None


class ConnectCallbackError(BaseModel):
    """Callback failure payload; never carries raw provider error text."""

    success: bool = False
    error_code: str
    message: str


class ConnectionStatus(BaseModel):
    """A tenant's connection as shown to the client; tokens are never included."""

    connected: bool
    calendar_name: str | None = None
    google_email: str | None = None
    sync_enabled: bool = False
    last_sync_at: datetime | None = None
    connected_at: datetime | None = None

    @classmethod
    def from_connection(cls, connection: CalendarConnection | None) -> ConnectionStatus:
        if connection is None:
            return cls(connected=False)
        return cls(
            connected=True,
            calendar_name=connection.calendar_name,
            google_email=connection.google_email,
            sync_enabled=connection.sync_enabled,
            last_sync_at=connection.last_sync_at,
            connected_at=connection.connected_at,
        )


class DisconnectResponse(BaseModel):
    disconnected: bool
