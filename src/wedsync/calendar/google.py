"""Google Calendar API v3 provider.

Speaks the events/calendars REST endpoints with an OAuth refresh token held
per tenant connection, and maps Google event payloads to and from
``EventFields``. Wedding-specific fields travel in
``extendedProperties.private`` under ``wedsync_*`` keys.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from wedsync.calendar.errors import (
    ProviderAuthError,
    ProviderConflictError,
    ProviderError,
    ProviderNotFoundError,
    ProviderPayloadError,
    ProviderTransientError,
    SyncTokenExpiredError,
    sanitize_error_message,
)
from wedsync.calendar.models import (
    CalendarConnection,
    EventCategory,
    EventFields,
    PushResult,
    RemoteEvent,
    RemoteEventPage,
)
from wedsync.calendar.provider import CalendarProvider
from wedsync.config import GoogleConfig, SyncConfig

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

DEFAULT_SYNC_WINDOW_DAYS = 30
LIST_PAGE_SIZE = 250
DEFAULT_EVENT_DURATION = timedelta(hours=1)
UNTITLED_EVENT_TITLE = "(untitled)"

PRIVATE_CATEGORY_KEY = "wedsync_category"
PRIVATE_COLOR_KEY = "wedsync_color"
PRIVATE_VENDOR_KEY = "wedsync_vendor_id"
PRIVATE_TASK_KEY = "wedsync_task_id"

# Google event colour palette ids.
COLOR_IDS: dict[str, str] = {
    "lavender": "1",
    "sage": "2",
    "purple": "3",
    "grape": "3",
    "pink": "4",
    "flamingo": "4",
    "yellow": "5",
    "banana": "5",
    "orange": "6",
    "tangerine": "6",
    "peacock": "7",
    "gray": "8",
    "graphite": "8",
    "blue": "9",
    "blueberry": "9",
    "green": "10",
    "basil": "10",
    "red": "11",
    "tomato": "11",
}
_COLOR_NAMES_BY_ID: dict[str, str] = {
    "1": "lavender",
    "2": "sage",
    "3": "purple",
    "4": "pink",
    "5": "yellow",
    "6": "orange",
    "7": "peacock",
    "8": "gray",
    "9": "blue",
    "10": "green",
    "11": "red",
}


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1, repr=False)
    refresh_token: str = Field(min_length=1, repr=False)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        access_token: str | None = None,
        access_token_expires_at: datetime | None = None,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token = access_token
        self._access_token_expires_at = access_token_expires_at
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderTransientError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code >= 500:
            raise ProviderTransientError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}",
                status_code=response.status_code,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderAuthError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderAuthError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in")
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _error_for_response(response: httpx.Response, *, operation: str) -> ProviderError:
    """Classify a non-2xx Google response into the provider error family."""
    status = response.status_code
    detail = _safe_google_error_message(response)
    message = f"Google Calendar {operation} failed ({status}): {detail}"
    if status in (401, 403):
        return ProviderAuthError(message, status_code=status)
    if status in (404, 410):
        return ProviderNotFoundError(message, status_code=status)
    if status == 412:
        return ProviderConflictError(message, status_code=status)
    if status == 429 or status >= 500:
        return ProviderTransientError(message, status_code=status)
    return ProviderError(message, status_code=status)


# ---------------------------------------------------------------------------
# Event mapping
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_boundary(payload: Any, *, zone: ZoneInfo | tzinfo) -> tuple[datetime, bool]:
    """Return the boundary instant and whether it was a date-only (all-day) value."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing start/end payloads")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=zone), True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _parse_category(value: Any) -> EventCategory:
    if isinstance(value, str):
        try:
            return EventCategory(value.strip().lower())
        except ValueError:
            pass
    return EventCategory.other


def google_event_to_remote(payload: dict[str, Any], *, timezone: str) -> RemoteEvent:
    """Translate a Google event resource into a ``RemoteEvent``.

    Cancelled events become deletion markers. All-day events carry an
    exclusive end date at Google; a single-day event maps back to no end.
    """
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    etag = _normalize_optional_text(payload.get("etag"))

    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return RemoteEvent(provider_event_id=event_id, etag=etag, deleted=True)

    start_payload = payload.get("start")
    timezone_name = timezone
    if isinstance(start_payload, dict):
        timezone_name = _normalize_optional_text(start_payload.get("timeZone")) or timezone
    zone = _coerce_zoneinfo(timezone_name)
    start_time, all_day = _parse_boundary(start_payload, zone=zone)
    end_time: datetime | None
    if payload.get("end") is None:
        end_time = None
    else:
        end_time, _ = _parse_boundary(payload.get("end"), zone=zone)

    if all_day and end_time is not None:
        last_day = end_time - timedelta(days=1)
        end_time = last_day if last_day > start_time else None
    if end_time is not None and end_time < start_time:
        end_time = None

    private = {}
    extended = payload.get("extendedProperties")
    if isinstance(extended, dict) and isinstance(extended.get("private"), dict):
        private = extended["private"]

    color = _normalize_optional_text(private.get(PRIVATE_COLOR_KEY))
    if color is None:
        color_id = _normalize_optional_text(payload.get("colorId"))
        color = _COLOR_NAMES_BY_ID.get(color_id, "blue") if color_id else "blue"

    fields = EventFields(
        title=_normalize_optional_text(payload.get("summary")) or UNTITLED_EVENT_TITLE,
        description=_normalize_optional_text(payload.get("description")),
        start_time=start_time,
        end_time=end_time,
        all_day=all_day,
        location=_normalize_optional_text(payload.get("location")),
        category=_parse_category(private.get(PRIVATE_CATEGORY_KEY)),
        color=color,
        vendor_id=_normalize_optional_text(private.get(PRIVATE_VENDOR_KEY)),
        task_id=_normalize_optional_text(private.get(PRIVATE_TASK_KEY)),
    )
    return RemoteEvent(provider_event_id=event_id, etag=etag, event=fields)


def build_google_event_body(event: EventFields, *, timezone: str) -> dict[str, Any]:
    """Translate ``EventFields`` into a full Google Calendar event body."""
    body: dict[str, Any] = {"summary": event.title, "status": "confirmed"}
    body["description"] = event.description
    body["location"] = event.location

    if event.all_day:
        zone = _coerce_zoneinfo(timezone)
        start_date = event.start_time.astimezone(zone).date()
        last_date = event.end_time.astimezone(zone).date() if event.end_time else start_date
        if last_date < start_date:
            last_date = start_date
        body["start"] = {"date": start_date.isoformat()}
        # Google all-day end dates are exclusive.
        body["end"] = {"date": (last_date + timedelta(days=1)).isoformat()}
    else:
        end_time = event.end_time or event.start_time + DEFAULT_EVENT_DURATION
        body["start"] = {"dateTime": _google_rfc3339(event.start_time), "timeZone": timezone}
        body["end"] = {"dateTime": _google_rfc3339(end_time), "timeZone": timezone}

    color_id = COLOR_IDS.get((event.color or "").strip().lower())
    if color_id is not None:
        body["colorId"] = color_id

    private: dict[str, str] = {PRIVATE_CATEGORY_KEY: event.category.value}
    if event.color:
        private[PRIVATE_COLOR_KEY] = event.color
    if event.vendor_id:
        private[PRIVATE_VENDOR_KEY] = event.vendor_id
    if event.task_id:
        private[PRIVATE_TASK_KEY] = event.task_id
    body["extendedProperties"] = {"private": private}
    return body


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        timezone: str = "UTC",
        full_sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS,
        http_client: httpx.AsyncClient | None = None,
        access_token: str | None = None,
        access_token_expires_at: datetime | None = None,
    ) -> None:
        self._timezone = timezone
        self._full_sync_window_days = full_sync_window_days
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = _GoogleOAuthClient(
            credentials,
            self._http_client,
            access_token=access_token,
            access_token_expires_at=access_token_expires_at,
        )

    @classmethod
    def for_connection(
        cls,
        connection: CalendarConnection,
        google_config: GoogleConfig,
        *,
        sync_config: SyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> GoogleCalendarProvider:
        """Build a provider using a tenant connection's refresh token."""
        if not google_config.client_id or not google_config.client_secret:
            raise ProviderAuthError("Google OAuth client credentials are not configured")
        credentials = GoogleOAuthCredentials(
            client_id=google_config.client_id,
            client_secret=google_config.client_secret,
            refresh_token=connection.refresh_token,
        )
        return cls(
            credentials,
            timezone=google_config.timezone,
            full_sync_window_days=(
                sync_config.full_sync_window_days if sync_config else DEFAULT_SYNC_WINDOW_DAYS
            ),
            http_client=http_client,
            access_token=connection.access_token,
            access_token_expires_at=connection.token_expires_at,
        )

    @property
    def name(self) -> str:
        return "google"

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=True,
            )

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderTransientError(f"Google Calendar request failed: {exc}") from exc

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise _error_for_response(response, operation=operation)
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError(
                f"Google Calendar {operation} returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderTransientError(
                f"Google Calendar {operation} returned an unexpected payload shape"
            )
        return payload

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            normalized_event_id = event_id.strip()
            if not normalized_event_id:
                raise ValueError("event_id must be a non-empty string")
            path = f"{path}/{quote(normalized_event_id, safe='')}"
        return path

    def _push_result(self, payload: dict[str, Any], *, operation: str) -> PushResult:
        event_id = _normalize_optional_text(payload.get("id"))
        if event_id is None:
            raise ProviderTransientError(f"Google Calendar {operation} response is missing an id")
        return PushResult(
            provider_event_id=event_id,
            etag=_normalize_optional_text(payload.get("etag")),
        )

    async def list_page(
        self,
        *,
        calendar_id: str,
        cursor: str | None,
        page_token: str | None = None,
    ) -> RemoteEventPage:
        params: dict[str, Any] = {
            "showDeleted": True,
            "singleEvents": False,
            "maxResults": LIST_PAGE_SIZE,
        }
        if cursor is not None:
            params["syncToken"] = cursor
        else:
            # Full sync: restrict to a time window to avoid fetching all history.
            window_start = datetime.now(UTC) - timedelta(days=self._full_sync_window_days)
            params["timeMin"] = _google_rfc3339(window_start)
        if page_token is not None:
            params["pageToken"] = page_token

        response = await self._request_with_bearer(
            method="GET",
            path=self._events_path(calendar_id),
            params=params,
        )

        # 410 Gone on an incremental listing means the sync token expired.
        if response.status_code == 410 and cursor is not None:
            raise SyncTokenExpiredError(
                f"Sync token expired for calendar '{calendar_id}'; full re-sync required",
                status_code=410,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise _error_for_response(response, operation="events.list")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError(
                "Google Calendar sync response returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderTransientError(
                "Google Calendar sync response has unexpected payload shape"
            )

        events: list[RemoteEvent] = []
        skipped = 0
        items = payload.get("items")
        if isinstance(items, list):
            for item in items:
                if not isinstance(item, dict):
                    continue
                item_id = _normalize_optional_text(item.get("id"))
                if item_id is None:
                    continue
                try:
                    events.append(google_event_to_remote(item, timezone=self._timezone))
                except ValueError as exc:
                    logger.warning("Skipping unreadable Google event %s: %s", item_id, exc)
                    skipped += 1

        return RemoteEventPage(
            events=events,
            skipped=skipped,
            next_page_token=_normalize_optional_text(payload.get("nextPageToken")),
            next_cursor=_normalize_optional_text(payload.get("nextSyncToken")),
        )

    async def get_event(self, *, calendar_id: str, event_id: str) -> RemoteEvent | None:
        response = await self._request_with_bearer(
            method="GET",
            path=self._events_path(calendar_id, event_id),
        )
        if response.status_code in (404, 410):
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise _error_for_response(response, operation="events.get")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError(
                "Google Calendar API returned invalid JSON for get_event"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderTransientError(
                "Google Calendar API returned an unexpected get_event payload"
            )
        try:
            remote = google_event_to_remote(payload, timezone=self._timezone)
        except ValueError as exc:
            raise ProviderPayloadError(f"Google Calendar event is unreadable: {exc}") from exc
        return None if remote.deleted else remote

    async def create_event(self, *, calendar_id: str, event: EventFields) -> PushResult:
        payload = await self._request_google_json(
            "POST",
            self._events_path(calendar_id),
            operation="events.insert",
            json_body=build_google_event_body(event, timezone=self._timezone),
        )
        return self._push_result(payload, operation="events.insert")

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        event: EventFields,
        etag: str | None = None,
    ) -> PushResult:
        extra_headers = {"If-Match": etag} if etag is not None else None
        payload = await self._request_google_json(
            "PATCH",
            self._events_path(calendar_id, event_id),
            operation="events.patch",
            json_body=build_google_event_body(event, timezone=self._timezone),
            extra_headers=extra_headers,
        )
        return self._push_result(payload, operation="events.patch")

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        response = await self._request_with_bearer(
            method="DELETE",
            path=self._events_path(calendar_id, event_id),
            params={"sendUpdates": "none"},
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise _error_for_response(response, operation="events.delete")

    async def create_calendar(self, *, summary: str, timezone: str | None = None) -> str:
        """Create a secondary calendar and return its id."""
        payload = await self._request_google_json(
            "POST",
            "/calendars",
            operation="calendars.insert",
            json_body={"summary": summary, "timeZone": timezone or self._timezone},
        )
        calendar_id = _normalize_optional_text(payload.get("id"))
        if calendar_id is None:
            raise ProviderTransientError(
                "Google Calendar calendars.insert response is missing an id"
            )
        return calendar_id

    async def get_account_email(self) -> str | None:
        """Return the account's primary calendar id, which is its email address."""
        payload = await self._request_google_json(
            "GET",
            "/calendars/primary",
            operation="calendars.get",
        )
        return _normalize_optional_text(payload.get("id"))

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
