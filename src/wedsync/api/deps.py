"""FastAPI dependencies for the calendar API.

The ``get_*`` functions are stubs: ``wire_dependencies()`` overrides them
with the running ``CalendarRuntime``'s collaborators at startup, and tests
override them with in-memory doubles.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from fastapi import Header

from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.store import CalendarSyncStore
from wedsync.config import GoogleConfig

if TYPE_CHECKING:
    from fastapi import FastAPI

    from wedsync.daemon import CalendarRuntime

logger = logging.getLogger(__name__)


def get_store() -> CalendarSyncStore:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("Calendar store not initialized")


def get_engine() -> CalendarSyncEngine:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("Calendar sync engine not initialized")


def get_google_config() -> GoogleConfig:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("Google configuration not initialized")


def get_http_client() -> httpx.AsyncClient | None:
    """Shared outbound HTTP client; ``None`` lets callers open their own."""
    return None


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    """Tenant id set by the authenticating proxy in front of this service."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise ValueError("X-Tenant-Id header is required")
    return tenant_id


def get_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    user_id = (x_user_id or "").strip()
    return user_id or None


def wire_dependencies(app: FastAPI, runtime: CalendarRuntime) -> None:
    """Point every dependency stub at *runtime*'s live collaborators."""
    if runtime.store is None or runtime.engine is None:
        raise RuntimeError("CalendarRuntime must be started before wiring dependencies")

    store = runtime.store
    engine = runtime.engine
    google_config = runtime.config.google
    http_client = runtime.http_client

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_google_config] = lambda: google_config
    app.dependency_overrides[get_http_client] = lambda: http_client
    logger.debug("Calendar API dependencies wired to runtime")
