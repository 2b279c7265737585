"""Pydantic models for calendar events, connections and sync outcomes."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EventCategory(StrEnum):
    vendor = "vendor"
    deadline = "deadline"
    appointment = "appointment"
    milestone = "milestone"
    personal = "personal"
    other = "other"


class SyncStatus(StrEnum):
    """Where a local event stands relative to its provider copy.

    - ``local``: never pushed; has no provider id.
    - ``synced``: matches the provider copy identified by the stored etag.
    - ``pending``: edited locally since the last successful push.
    - ``conflict``: both sides changed; waits for resolution.
    """

    local = "local"
    synced = "synced"
    pending = "pending"
    conflict = "conflict"


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class EventFields(BaseModel):
    """The user-visible content of an event, as exchanged with the provider."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    description: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    all_day: bool = False
    location: str | None = None
    category: EventCategory = EventCategory.other
    color: str | None = "blue"
    vendor_id: str | None = None
    task_id: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("description", "location", "vendor_id", "task_id")
    @classmethod
    def _normalize_text(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_time_order(self) -> EventFields:
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be earlier than start_time")
        return self


EVENT_FIELD_NAMES: frozenset[str] = frozenset(EventFields.model_fields)


class CalendarEvent(EventFields):
    """A tenant's locally stored calendar event with its sync bookkeeping."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID
    tenant_id: str
    provider_event_id: str | None = None
    etag: str | None = None
    sync_status: SyncStatus = SyncStatus.local
    version: int = Field(default=1, ge=1)
    last_synced_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def to_fields(self) -> EventFields:
        return EventFields(**self.model_dump(include=set(EVENT_FIELD_NAMES)))


class CalendarEventUpdate(BaseModel):
    """Partial edit of an event's content; unset fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    all_day: bool | None = None
    location: str | None = None
    category: EventCategory | None = None
    color: str | None = None
    vendor_id: str | None = None
    task_id: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    def apply_to(self, fields: EventFields) -> EventFields:
        """Return *fields* with every explicitly set value of this update applied."""
        merged = fields.model_dump()
        merged.update(self.model_dump(exclude_unset=True))
        return EventFields(**merged)


class RemoteEvent(BaseModel):
    """One changed event as reported by the provider.

    ``event`` is ``None`` for deletion markers.
    """

    model_config = ConfigDict(extra="forbid")

    provider_event_id: str = Field(min_length=1)
    etag: str | None = None
    deleted: bool = False
    event: EventFields | None = None

    @model_validator(mode="after")
    def _validate_shape(self) -> RemoteEvent:
        if not self.deleted and self.event is None:
            raise ValueError("non-deleted remote events must carry event fields")
        return self


class RemoteEventPage(BaseModel):
    """One page of a provider listing.

    ``next_cursor`` is only present on the final page. ``skipped`` counts
    items the provider listed but could not translate.
    """

    events: list[RemoteEvent] = Field(default_factory=list)
    skipped: int = 0
    next_page_token: str | None = None
    next_cursor: str | None = None


class PushResult(BaseModel):
    """Provider identity of an event after a create or update."""

    provider_event_id: str
    etag: str | None = None


class CalendarConnection(BaseModel):
    """A tenant's link to its dedicated provider calendar."""

    tenant_id: str
    calendar_id: str
    calendar_name: str
    sync_enabled: bool = True
    sync_token: str | None = None
    last_sync_at: datetime | None = None
    google_email: str | None = None
    refresh_token: str = Field(repr=False)
    access_token: str | None = Field(default=None, repr=False)
    token_expires_at: datetime | None = None
    connected_at: datetime | None = None
    connected_by: str | None = None


class SyncResult(BaseModel):
    """Summary of one reconciliation pass."""

    success: bool
    pushed: int = 0
    pulled: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    conflicts: int = 0
    full_resync: bool = False
    error: str | None = None


class SyncLogEntry(SyncResult):
    """A persisted sync log row."""

    id: int
    tenant_id: str
    created_at: datetime
