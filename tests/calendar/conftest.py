"""Shared fixtures for calendar sync tests: an in-memory store, a provider
mirror standing in for Google Calendar, and an engine wired to both."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.models import CalendarConnection, EventFields
from wedsync.config import SyncConfig
from wedsync.testing import FakeCalendarProvider, InMemoryCalendarStore, ProviderMirror

TENANT_ID = "tenant-rivera-chen"
CALENDAR_ID = "wedding-planning@group.calendar.google.com"


def make_fields(title: str = "Cake tasting", **overrides) -> EventFields:
    values = {
        "title": title,
        "start_time": datetime(2026, 5, 2, 15, 0, tzinfo=UTC),
        "end_time": datetime(2026, 5, 2, 16, 0, tzinfo=UTC),
    }
    values.update(overrides)
    return EventFields(**values)


@pytest.fixture
def fields_factory() -> Callable[..., EventFields]:
    return make_fields


@pytest.fixture
def store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
def mirror() -> ProviderMirror:
    return ProviderMirror(page_size=2)


@pytest.fixture
def providers() -> list[FakeCalendarProvider]:
    """Every provider instance the engine builds, in order."""
    return []


@pytest.fixture
def make_engine(
    store: InMemoryCalendarStore,
    mirror: ProviderMirror,
    providers: list[FakeCalendarProvider],
) -> Callable[..., CalendarSyncEngine]:
    def _make(**config_overrides) -> CalendarSyncEngine:
        def _factory(connection: CalendarConnection) -> FakeCalendarProvider:
            provider = FakeCalendarProvider(mirror)
            providers.append(provider)
            return provider

        return CalendarSyncEngine(
            store=store,
            provider_factory=_factory,
            config=SyncConfig(**config_overrides),
        )

    return _make


@pytest.fixture
def engine(make_engine: Callable[..., CalendarSyncEngine]) -> CalendarSyncEngine:
    return make_engine()


@pytest.fixture
async def connection(store: InMemoryCalendarStore) -> CalendarConnection:
    return await store.save_connection(
        CalendarConnection(
            tenant_id=TENANT_ID,
            calendar_id=CALENDAR_ID,
            calendar_name="Wedding Planning",
            refresh_token="refresh-token",
        )
    )
