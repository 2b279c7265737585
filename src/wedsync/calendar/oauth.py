"""Google OAuth connect flow for a tenant's wedding calendar.

1. ``build_authorization_url`` sends the user to Google's consent screen with
   an HMAC-signed ``state`` that binds the flow to a tenant and user.
2. On callback, ``verify_signed_state`` authenticates the state (timing-safe,
   one hour expiry) and ``complete_connection`` exchanges the code for tokens,
   provisions the dedicated calendar and stores the connection.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from wedsync.calendar.errors import ProviderError
from wedsync.calendar.google import GoogleCalendarProvider, GoogleOAuthCredentials
from wedsync.calendar.models import CalendarConnection
from wedsync.calendar.store import CalendarSyncStore
from wedsync.config import GoogleConfig

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)
STATE_TTL = timedelta(hours=1)


class OAuthStateError(ValueError):
    """Raised when an OAuth state parameter is malformed, forged or expired."""


class TokenExchangeError(Exception):
    """Raised when the authorization code → token exchange fails."""


class MissingRefreshTokenError(TokenExchangeError):
    """Raised when Google answers the exchange without a refresh token."""


@dataclass(frozen=True)
class OAuthState:
    tenant_id: str
    user_id: str
    issued_at: datetime


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def create_signed_state(
    tenant_id: str,
    user_id: str,
    *,
    secret: str,
    now: datetime | None = None,
) -> str:
    """Encode *tenant_id* and *user_id* into a signed, URL-safe state string."""
    if not secret:
        raise ValueError("An OAuth state secret is required for state signing")
    issued_at = now or datetime.now(UTC)
    payload = json.dumps(
        {
            "tenant_id": tenant_id,
            "user_id": user_id,
            "timestamp": int(issued_at.timestamp() * 1000),
        },
        separators=(",", ":"),
    )
    signed = json.dumps({"payload": payload, "signature": _sign(payload, secret)})
    return base64.urlsafe_b64encode(signed.encode()).decode().rstrip("=")


def verify_signed_state(
    state: str,
    *,
    secret: str,
    now: datetime | None = None,
) -> OAuthState:
    """Authenticate and decode a state produced by ``create_signed_state``.

    Raises:
        OAuthStateError: the state is malformed, its signature does not
            match, it is older than one hour or it lacks tenant/user ids.
    """
    if not secret:
        raise OAuthStateError("An OAuth state secret is required for state verification")
    try:
        padded = state + "=" * (-len(state) % 4)
        envelope = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        payload_str = envelope["payload"]
        signature = envelope["signature"]
    except (ValueError, KeyError, TypeError) as exc:
        raise OAuthStateError("OAuth state is malformed") from exc

    if not isinstance(payload_str, str) or not isinstance(signature, str):
        raise OAuthStateError("OAuth state is malformed")
    if not hmac.compare_digest(signature, _sign(payload_str, secret)):
        raise OAuthStateError("OAuth state signature verification failed")

    try:
        payload = json.loads(payload_str)
        issued_at = datetime.fromtimestamp(int(payload["timestamp"]) / 1000, tz=UTC)
    except (ValueError, KeyError, TypeError) as exc:
        raise OAuthStateError("OAuth state payload is malformed") from exc

    age = (now or datetime.now(UTC)) - issued_at
    if age > STATE_TTL:
        raise OAuthStateError("OAuth state expired")

    tenant_id = payload.get("tenant_id")
    user_id = payload.get("user_id")
    if not (isinstance(tenant_id, str) and tenant_id and isinstance(user_id, str) and user_id):
        raise OAuthStateError("OAuth state missing required fields")
    return OAuthState(tenant_id=tenant_id, user_id=user_id, issued_at=issued_at)


def build_authorization_url(google_config: GoogleConfig, state: str) -> str:
    """Return Google's consent URL requesting offline calendar access."""
    params = {
        "client_id": google_config.client_id,
        "redirect_uri": google_config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",  # Force refresh token to be returned
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(
    *,
    code: str,
    google_config: GoogleConfig,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for OAuth tokens.

    Raises
    ------
    TokenExchangeError
        If the exchange fails for any reason (HTTP error, invalid code, network error).
    """
    payload = {
        "code": code,
        "client_id": google_config.client_id,
        "client_secret": google_config.client_secret,
        "redirect_uri": google_config.redirect_uri,
        "grant_type": "authorization_code",
    }

    client = http_client or httpx.AsyncClient(timeout=15.0)
    try:
        response = await client.post(GOOGLE_TOKEN_URL, data=payload)
    except httpx.TransportError as exc:
        raise TokenExchangeError(f"Network error during token exchange: {exc}") from exc
    finally:
        if http_client is None:
            await client.aclose()

    if response.status_code != 200:
        # Status only; the body may contain sensitive details
        raise TokenExchangeError(f"Token endpoint returned HTTP {response.status_code}")

    try:
        data = response.json()
    except ValueError as exc:
        raise TokenExchangeError(f"Invalid JSON in token response: {exc}") from exc
    if not isinstance(data, dict):
        raise TokenExchangeError("Token endpoint returned an unexpected payload")
    return data


async def complete_connection(
    *,
    code: str,
    state: OAuthState,
    google_config: GoogleConfig,
    store: CalendarSyncStore,
    http_client: httpx.AsyncClient | None = None,
) -> CalendarConnection:
    """Finish the connect flow for ``state.tenant_id``.

    Reconnecting keeps the tenant's existing dedicated calendar (and its sync
    cursor) so already-linked events stay linked; a first connection creates
    a new calendar named ``google_config.calendar_name``.
    """
    tokens = await exchange_code_for_tokens(
        code=code,
        google_config=google_config,
        http_client=http_client,
    )
    refresh_token = tokens.get("refresh_token")
    access_token = tokens.get("access_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        raise MissingRefreshTokenError(
            "Google did not return a refresh token; offline access with prompt=consent "
            "is required"
        )

    expires_in = tokens.get("expires_in")
    token_expires_at = None
    if isinstance(access_token, str) and isinstance(expires_in, int | float) and expires_in > 0:
        token_expires_at = datetime.now(UTC) + timedelta(seconds=max(expires_in - 60, 30))
    else:
        access_token = None

    provider = GoogleCalendarProvider(
        GoogleOAuthCredentials(
            client_id=google_config.client_id or "",
            client_secret=google_config.client_secret or "",
            refresh_token=refresh_token,
        ),
        timezone=google_config.timezone,
        http_client=http_client,
        access_token=access_token,
        access_token_expires_at=token_expires_at,
    )
    existing = await store.get_connection(state.tenant_id)
    try:
        try:
            google_email = await provider.get_account_email()
        except ProviderError as exc:
            logger.warning("Could not read the Google account email: %s", exc)
            google_email = None

        if existing is not None:
            calendar_id = existing.calendar_id
            calendar_name = existing.calendar_name
        else:
            calendar_name = google_config.calendar_name
            calendar_id = await provider.create_calendar(
                summary=calendar_name,
                timezone=google_config.timezone,
            )
            logger.info("Created dedicated calendar for tenant %s", state.tenant_id)
    finally:
        await provider.shutdown()

    connection = CalendarConnection(
        tenant_id=state.tenant_id,
        calendar_id=calendar_id,
        calendar_name=calendar_name,
        sync_enabled=True,
        sync_token=existing.sync_token if existing is not None else None,
        last_sync_at=existing.last_sync_at if existing is not None else None,
        google_email=google_email,
        refresh_token=refresh_token.strip(),
        access_token=access_token,
        token_expires_at=token_expires_at,
        connected_at=datetime.now(UTC),
        connected_by=state.user_id,
    )
    saved = await store.save_connection(connection)
    logger.info("Google Calendar connected for tenant %s", state.tenant_id)
    return saved
