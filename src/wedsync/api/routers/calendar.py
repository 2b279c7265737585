"""Calendar API endpoints.

Events CRUD, conflict resolution, on-demand sync and the sync log live under
``/api/calendar``; the Google connect flow lives under
``/api/calendar/google``:

  1. GET /api/calendar/google/connect
     - Builds an HMAC-signed state binding the flow to the tenant and user.
     - Redirects to Google's consent screen (or returns the URL as JSON with
       ``?redirect=false``).

  2. GET /api/calendar/google/callback
     - Verifies the state, exchanges the code, provisions the dedicated
       wedding calendar and stores the connection.
     - Redirects to the dashboard when ``OAUTH_DASHBOARD_URL`` is set,
       otherwise returns a JSON payload.

  3. DELETE /api/calendar/google
     - Disconnects the tenant. Local events are kept and unlinked. Answers
       409 while a sync pass holds the tenant's lease.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from wedsync.api.deps import (
    get_engine,
    get_google_config,
    get_http_client,
    get_store,
    get_tenant_id,
    get_user_id,
)
from wedsync.api.models import ApiResponse, ErrorDetail, ErrorResponse
from wedsync.api.models.calendar import (
    CalendarEventCreateRequest,
    CalendarEventUpdateRequest,
    ConnectCallbackError,
    ConnectCallbackSuccess,
    ConnectionStatus,
    ConnectStartResponse,
    DeleteEventResponse,
    DisconnectResponse,
    ResolveConflictRequest,
    ResolveConflictResponse,
)
from wedsync.calendar.engine import CalendarSyncEngine
from wedsync.calendar.errors import ProviderError
from wedsync.calendar.models import CalendarEvent, SyncLogEntry, SyncResult
from wedsync.calendar.oauth import (
    MissingRefreshTokenError,
    OAuthStateError,
    TokenExchangeError,
    build_authorization_url,
    complete_connection,
    create_signed_state,
    verify_signed_state,
)
from wedsync.calendar.store import DEFAULT_SYNC_LOG_LIMIT, CalendarSyncStore
from wedsync.config import GoogleConfig
from wedsync.core.logging import tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])

_MAX_SYNC_LOG_LIMIT = 100


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.get("/events", response_model=ApiResponse[list[CalendarEvent]])
async def list_events(
    tenant_id: str = Depends(get_tenant_id),
    store: CalendarSyncStore = Depends(get_store),
) -> ApiResponse[list[CalendarEvent]]:
    """List the tenant's events, latest start first."""
    events = await store.list_events(tenant_id)
    return ApiResponse[list[CalendarEvent]](data=events)


@router.post("/events", response_model=ApiResponse[CalendarEvent], status_code=201)
async def create_event(
    body: CalendarEventCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    store: CalendarSyncStore = Depends(get_store),
) -> ApiResponse[CalendarEvent]:
    """Create an event; it reaches Google on the next sync pass."""
    event = await store.create_event(tenant_id, body.to_fields())
    logger.info("Created calendar event %s for tenant %s", event.id, tenant_id)
    return ApiResponse[CalendarEvent](data=event)


@router.patch("/events/{event_id}", response_model=ApiResponse[CalendarEvent])
async def update_event(
    event_id: UUID,
    body: CalendarEventUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    store: CalendarSyncStore = Depends(get_store),
) -> ApiResponse[CalendarEvent]:
    event = await store.update_event(tenant_id, event_id, body.to_update())
    if event is None:
        raise KeyError(str(event_id))
    return ApiResponse[CalendarEvent](data=event)


@router.delete("/events/{event_id}", response_model=ApiResponse[DeleteEventResponse])
async def delete_event(
    event_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[DeleteEventResponse]:
    """Delete an event here and, when linked, in Google Calendar."""
    if not await engine.delete_event(tenant_id, event_id):
        raise KeyError(str(event_id))
    return ApiResponse[DeleteEventResponse](data=DeleteEventResponse())


@router.post(
    "/events/{event_id}/resolve",
    response_model=ApiResponse[ResolveConflictResponse],
)
async def resolve_conflict(
    event_id: UUID,
    body: ResolveConflictRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[ResolveConflictResponse]:
    """Keep the local or the Google copy of an event in conflict."""
    event = await engine.resolve_conflict(tenant_id, event_id, body.keep)
    return ApiResponse[ResolveConflictResponse](
        data=ResolveConflictResponse(resolution=body.keep, event=event)
    )


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post("/sync", response_model=ApiResponse[SyncResult])
async def trigger_sync(
    tenant_id: str = Depends(get_tenant_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Run one reconciliation pass now and return its summary."""
    result = await engine.synchronize(tenant_id)
    return ApiResponse[SyncResult](data=result)


@router.get("/sync/log", response_model=ApiResponse[list[SyncLogEntry]])
async def list_sync_log(
    limit: int = Query(default=DEFAULT_SYNC_LOG_LIMIT, ge=1, le=_MAX_SYNC_LOG_LIMIT),
    tenant_id: str = Depends(get_tenant_id),
    store: CalendarSyncStore = Depends(get_store),
) -> ApiResponse[list[SyncLogEntry]]:
    entries = await store.list_sync_log(tenant_id, limit=limit)
    return ApiResponse[list[SyncLogEntry]](data=entries)


# ---------------------------------------------------------------------------
# Google connection
# ---------------------------------------------------------------------------


def _not_configured_response(google_config: GoogleConfig) -> JSONResponse:
    logger.error(
        "Google Calendar connect flow is missing settings: %s",
        ", ".join(google_config.missing_oauth_settings()),
    )
    body = ErrorResponse(
        error=ErrorDetail(code="NOT_CONFIGURED", message="Google Calendar is not configured")
    )
    return JSONResponse(status_code=500, content=body.model_dump())


def _callback_failure(
    google_config: GoogleConfig,
    error_code: str,
    message: str,
    *,
    status_code: int = 400,
) -> Response:
    if google_config.dashboard_url:
        query = urlencode({"calendar_error": error_code})
        return RedirectResponse(url=f"{google_config.dashboard_url}?{query}", status_code=302)
    payload = ConnectCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@router.get("/google", response_model=ApiResponse[ConnectionStatus])
async def connection_status(
    tenant_id: str = Depends(get_tenant_id),
    store: CalendarSyncStore = Depends(get_store),
) -> ApiResponse[ConnectionStatus]:
    connection = await store.get_connection(tenant_id)
    return ApiResponse[ConnectionStatus](data=ConnectionStatus.from_connection(connection))


@router.get(
    "/google/connect",
    responses={
        200: {"model": ConnectStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to Google authorization URL"},
    },
)
async def connect_google(
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to Google authorization URL. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    tenant_id: str = Depends(get_tenant_id),
    user_id: str | None = Depends(get_user_id),
    google_config: GoogleConfig = Depends(get_google_config),
) -> Response:
    """Begin the Google OAuth flow for the tenant's wedding calendar."""
    if google_config.missing_oauth_settings():
        return _not_configured_response(google_config)

    state = create_signed_state(
        tenant_id,
        user_id or tenant_id,
        secret=google_config.state_secret or "",
    )
    authorization_url = build_authorization_url(google_config, state)
    logger.info("Google Calendar connect flow started for tenant %s", tenant_id)

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    return JSONResponse(
        content=ConnectStartResponse(authorization_url=authorization_url).model_dump()
    )


@router.get("/google/callback")
async def google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="Signed state from the connect step."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    google_config: GoogleConfig = Depends(get_google_config),
    store: CalendarSyncStore = Depends(get_store),
    http_client: httpx.AsyncClient | None = Depends(get_http_client),
) -> Response:
    """Finish the connect flow started by ``/google/connect``.

    No tenant header is expected here: Google redirects the browser, so the
    tenant comes from the verified state.
    """
    if google_config.missing_oauth_settings():
        return _not_configured_response(google_config)

    if error:
        logger.warning("Google OAuth provider error: %s", error)
        return _callback_failure(
            google_config,
            "provider_error",
            "Google Calendar access was not granted.",
        )
    if not code or not state:
        return _callback_failure(
            google_config,
            "missing_parameters",
            "Authorization code or state is missing from the callback.",
        )

    try:
        verified = verify_signed_state(state, secret=google_config.state_secret or "")
    except OAuthStateError as exc:
        logger.warning("Google OAuth callback rejected: %s", exc)
        return _callback_failure(
            google_config,
            "invalid_state",
            "State parameter is invalid or expired. Please restart the connect flow.",
        )

    with tenant_context(verified.tenant_id):
        try:
            connection = await complete_connection(
                code=code,
                state=verified,
                google_config=google_config,
                store=store,
                http_client=http_client,
            )
        except MissingRefreshTokenError:
            logger.warning("Google OAuth token response did not include a refresh token")
            return _callback_failure(
                google_config,
                "no_refresh_token",
                "Google did not return a refresh token. Please restart the connect flow.",
            )
        except TokenExchangeError as exc:
            logger.warning("Google OAuth token exchange failed: %s", exc)
            return _callback_failure(
                google_config,
                "token_exchange_failed",
                "Failed to exchange authorization code for tokens. "
                "The code may have expired or already been used.",
            )
        except ProviderError as exc:
            logger.warning("Could not provision the wedding calendar: %s", exc)
            return _callback_failure(
                google_config,
                "calendar_setup_failed",
                "Connected to Google but the wedding calendar could not be created.",
                status_code=502,
            )

    if google_config.dashboard_url:
        return RedirectResponse(
            url=f"{google_config.dashboard_url}?{urlencode({'calendar_connected': 'true'})}",
            status_code=302,
        )
    payload = ConnectCallbackSuccess(
        calendar_name=connection.calendar_name,
        google_email=connection.google_email,
    )
    return JSONResponse(content=payload.model_dump())


@router.delete("/google", response_model=ApiResponse[DisconnectResponse])
async def disconnect_google(
    tenant_id: str = Depends(get_tenant_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[DisconnectResponse]:
    """Remove the tenant's Google connection; events stay, unlinked from Google."""
    disconnected = await engine.disconnect(tenant_id)
    return ApiResponse[DisconnectResponse](data=DisconnectResponse(disconnected=disconnected))
