"""Unit tests for the Google connect flow.

Covers:
- Signed state: round trip, tampering, wrong secret, expiry, malformed input
- Consent URL parameters (offline access, forced consent, calendar scopes)
- Code exchange: success, HTTP failure without leaking the body, network error
- complete_connection: first connect creates the dedicated calendar,
  reconnect keeps calendar and cursor, missing refresh token is rejected
"""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from wedsync.calendar.models import CalendarConnection
from wedsync.calendar.oauth import (
    CALENDAR_SCOPES,
    GOOGLE_TOKEN_URL,
    MissingRefreshTokenError,
    OAuthState,
    OAuthStateError,
    TokenExchangeError,
    build_authorization_url,
    complete_connection,
    create_signed_state,
    exchange_code_for_tokens,
    verify_signed_state,
)
from wedsync.config import GoogleConfig
from wedsync.testing import InMemoryCalendarStore

pytestmark = pytest.mark.unit

SECRET = "state-signing-secret"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

_TOKEN_RESPONSE = {
    "access_token": "ya29.fake_access_token",
    "refresh_token": "1//fake_refresh_token",
    "expires_in": 3599,
    "token_type": "Bearer",
}


def _google_config(**overrides) -> GoogleConfig:
    values = {
        "client_id": "client-id.apps.googleusercontent.com",
        "client_secret": "client-secret",
        "redirect_uri": "https://app.example.com/api/calendar/google/callback",
        "state_secret": SECRET,
        "calendar_name": "Wedding Planning",
        "timezone": "America/Chicago",
    }
    values.update(overrides)
    return GoogleConfig(**values)


def _google_client(
    *,
    token_response: httpx.Response | None = None,
    created_calendar_id: str = "new-calendar@group.calendar.google.com",
) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            return token_response or httpx.Response(200, json=_TOKEN_RESPONSE)
        if request.url.path.endswith("/calendars/primary"):
            return httpx.Response(200, json={"id": "couple@example.com"})
        if request.method == "POST" and request.url.path.endswith("/calendars"):
            return httpx.Response(200, json={"id": created_calendar_id})
        return httpx.Response(404, json={})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


class TestSignedState:
    def test_round_trip(self):
        state = create_signed_state("tenant-1", "user-1", secret=SECRET, now=NOW)

        decoded = verify_signed_state(state, secret=SECRET, now=NOW + timedelta(minutes=5))

        assert decoded == OAuthState(tenant_id="tenant-1", user_id="user-1", issued_at=NOW)

    def test_state_is_url_safe(self):
        state = create_signed_state("tenant-1", "user-1", secret=SECRET, now=NOW)

        assert "=" not in state
        assert "+" not in state
        assert "/" not in state

    def test_tampered_payload_is_rejected(self):
        state = create_signed_state("tenant-1", "user-1", secret=SECRET, now=NOW)
        padded = state + "=" * (-len(state) % 4)
        envelope = json.loads(base64.urlsafe_b64decode(padded))
        envelope["payload"] = envelope["payload"].replace("tenant-1", "tenant-2")
        forged = base64.urlsafe_b64encode(json.dumps(envelope).encode()).decode()

        with pytest.raises(OAuthStateError, match="signature"):
            verify_signed_state(forged, secret=SECRET, now=NOW)

    def test_wrong_secret_is_rejected(self):
        state = create_signed_state("tenant-1", "user-1", secret=SECRET, now=NOW)

        with pytest.raises(OAuthStateError, match="signature"):
            verify_signed_state(state, secret="another-secret", now=NOW)

    def test_expired_state_is_rejected(self):
        state = create_signed_state("tenant-1", "user-1", secret=SECRET, now=NOW)

        with pytest.raises(OAuthStateError, match="expired"):
            verify_signed_state(state, secret=SECRET, now=NOW + timedelta(hours=1, seconds=1))

    @pytest.mark.parametrize("state", ["", "not-base64!!", "e30"])
    def test_malformed_state_is_rejected(self, state):
        with pytest.raises(OAuthStateError, match="malformed"):
            verify_signed_state(state, secret=SECRET, now=NOW)

    def test_empty_ids_are_rejected(self):
        state = create_signed_state("", "user-1", secret=SECRET, now=NOW)

        with pytest.raises(OAuthStateError, match="missing required fields"):
            verify_signed_state(state, secret=SECRET, now=NOW)

    def test_signing_requires_secret(self):
        with pytest.raises(ValueError, match="secret"):
            create_signed_state("tenant-1", "user-1", secret="")


class TestAuthorizationUrl:
    def test_requests_offline_calendar_access(self):
        url = build_authorization_url(_google_config(), "signed-state")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://accounts.google.com/o/oauth2/v2/auth"
        )
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["response_type"] == ["code"]
        assert params["state"] == ["signed-state"]
        assert params["scope"] == [" ".join(CALENDAR_SCOPES)]
        assert params["redirect_uri"] == ["https://app.example.com/api/calendar/google/callback"]


class TestExchangeCode:
    async def test_successful_exchange(self):
        client, requests = _google_client()

        tokens = await exchange_code_for_tokens(
            code="auth-code", google_config=_google_config(), http_client=client
        )

        assert tokens["refresh_token"] == "1//fake_refresh_token"
        form = parse_qs(requests[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]

    async def test_http_failure_hides_response_body(self):
        client, _ = _google_client(
            token_response=httpx.Response(400, json={"error_description": "client_secret=abc"})
        )

        with pytest.raises(TokenExchangeError) as exc_info:
            await exchange_code_for_tokens(
                code="bad-code", google_config=_google_config(), http_client=client
            )

        assert str(exc_info.value) == "Token endpoint returned HTTP 400"

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(TokenExchangeError, match="Network error"):
            await exchange_code_for_tokens(
                code="auth-code", google_config=_google_config(), http_client=client
            )


class TestCompleteConnection:
    async def test_first_connection_creates_dedicated_calendar(self):
        client, requests = _google_client()
        store = InMemoryCalendarStore()

        connection = await complete_connection(
            code="auth-code",
            state=OAuthState(tenant_id="tenant-1", user_id="user-1", issued_at=NOW),
            google_config=_google_config(),
            store=store,
            http_client=client,
        )

        assert connection.calendar_id == "new-calendar@group.calendar.google.com"
        assert connection.calendar_name == "Wedding Planning"
        assert connection.google_email == "couple@example.com"
        assert connection.refresh_token == "1//fake_refresh_token"
        assert connection.access_token == "ya29.fake_access_token"
        assert connection.connected_by == "user-1"
        assert connection.sync_enabled is True
        assert connection.sync_token is None
        assert await store.get_connection("tenant-1") == connection
        insert = next(r for r in requests if r.method == "POST" and "calendars" in r.url.path)
        assert json.loads(insert.content) == {
            "summary": "Wedding Planning",
            "timeZone": "America/Chicago",
        }
        # The fresh access token is used directly, without a refresh round trip.
        assert sum(1 for r in requests if str(r.url) == GOOGLE_TOKEN_URL) == 1

    async def test_reconnect_keeps_calendar_and_cursor(self):
        client, requests = _google_client()
        store = InMemoryCalendarStore()
        await store.save_connection(
            CalendarConnection(
                tenant_id="tenant-1",
                calendar_id="existing@group.calendar.google.com",
                calendar_name="Our Wedding",
                sync_token="sync-7",
                refresh_token="old-refresh-token",
            )
        )

        connection = await complete_connection(
            code="auth-code",
            state=OAuthState(tenant_id="tenant-1", user_id="user-2", issued_at=NOW),
            google_config=_google_config(),
            store=store,
            http_client=client,
        )

        assert connection.calendar_id == "existing@group.calendar.google.com"
        assert connection.calendar_name == "Our Wedding"
        assert connection.sync_token == "sync-7"
        assert connection.refresh_token == "1//fake_refresh_token"
        assert not any(r.method == "POST" and r.url.path.endswith("/calendars") for r in requests)

    async def test_missing_refresh_token_is_rejected(self):
        client, _ = _google_client(
            token_response=httpx.Response(
                200, json={"access_token": "ya29.only_access", "expires_in": 3599}
            )
        )
        store = InMemoryCalendarStore()

        with pytest.raises(MissingRefreshTokenError):
            await complete_connection(
                code="auth-code",
                state=OAuthState(tenant_id="tenant-1", user_id="user-1", issued_at=NOW),
                google_config=_google_config(),
                store=store,
                http_client=client,
            )

        assert store.connections == {}
