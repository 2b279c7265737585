"""Shared fixtures for calendar API tests.

Covers:
- An app built with ``manage_runtime=False`` whose dependency stubs point at
  an in-memory store and an engine over a provider mirror
- An ASGI client that sends the tenant header by default
- A scripted Google OAuth/Calendar endpoint for the connect callback
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from wedsync.api.app import create_app
from wedsync.api.deps import get_engine, get_google_config, get_http_client, get_store
from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.models import CalendarConnection
from wedsync.config import GoogleConfig
from wedsync.testing import FakeCalendarProvider, InMemoryCalendarStore, ProviderMirror

TENANT_ID = "tenant-rivera-chen"
STATE_SECRET = "api-test-state-secret"


class GoogleStub:
    """Answers the token, primary-calendar and calendars.insert endpoints."""

    def __init__(self) -> None:
        self.token_status = 200
        self.refresh_token: str | None = "1//api-refresh-token"
        self.calendar_insert_status = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            tokens = {"access_token": "ya29.api-access-token", "expires_in": 3599}
            if self.refresh_token is not None:
                tokens["refresh_token"] = self.refresh_token
            return httpx.Response(200, json=tokens)
        if request.url.path.endswith("/calendars/primary"):
            return httpx.Response(200, json={"id": "couple@example.com"})
        if request.method == "POST" and request.url.path.endswith("/calendars"):
            if self.calendar_insert_status != 200:
                return httpx.Response(
                    self.calendar_insert_status, json={"error": {"message": "backend"}}
                )
            return httpx.Response(200, json={"id": "wedding@group.calendar.google.com"})
        return httpx.Response(404, json={})


@pytest.fixture
def tenant_id() -> str:
    return TENANT_ID


@pytest.fixture
def store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
def mirror() -> ProviderMirror:
    return ProviderMirror()


@pytest.fixture
def engine(store: InMemoryCalendarStore, mirror: ProviderMirror) -> CalendarSyncEngine:
    return CalendarSyncEngine(
        store=store,
        provider_factory=lambda connection: FakeCalendarProvider(mirror),
    )


@pytest.fixture
def google_config() -> GoogleConfig:
    return GoogleConfig(
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",
        redirect_uri="http://testserver/api/calendar/google/callback",
        state_secret=STATE_SECRET,
        timezone="America/Chicago",
    )


@pytest.fixture
def google_stub() -> GoogleStub:
    return GoogleStub()


@pytest.fixture
async def google_http(google_stub: GoogleStub) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(google_stub)) as client:
        yield client


@pytest.fixture
def app(store, engine, google_config, google_http) -> FastAPI:
    app = create_app(manage_runtime=False)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_google_config] = lambda: google_config
    app.dependency_overrides[get_http_client] = lambda: google_http
    return app


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Tenant-Id": TENANT_ID},
    ) as client:
        yield client


@pytest.fixture
async def connection(store: InMemoryCalendarStore) -> CalendarConnection:
    return await store.save_connection(
        CalendarConnection(
            tenant_id=TENANT_ID,
            calendar_id="wedding@group.calendar.google.com",
            calendar_name="Wedding Planning",
            google_email="couple@example.com",
            refresh_token="1//stored-refresh-token",
            access_token="ya29.stored-access-token",
        )
    )
