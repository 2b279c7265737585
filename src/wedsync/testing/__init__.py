"""Test support utilities for the wedsync package.

In-memory stand-ins for the persistence layer and the external calendar,
used by the unit tests and handy for exercising the engine without Postgres
or Google. Nothing here depends on pytest.
"""

from __future__ import annotations

from wedsync.testing.fakes import (
    FakeCalendarProvider,
    InMemoryCalendarStore,
    ProviderMirror,
)

__all__ = ["FakeCalendarProvider", "InMemoryCalendarStore", "ProviderMirror"]
