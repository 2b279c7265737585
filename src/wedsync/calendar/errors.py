"""Error taxonomy for calendar synchronization."""

from __future__ import annotations

from wedsync.core.logging import redact_credentials

_MAX_ERROR_LENGTH = 200


class CalendarSyncError(Exception):
    """Base class for all calendar synchronization errors."""


class NotConnectedError(CalendarSyncError):
    """Raised when a tenant has no enabled calendar connection."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Tenant '{tenant_id}' has no enabled calendar connection")


class SyncInProgressError(CalendarSyncError):
    """Raised when another pass holds the tenant's sync lease."""


class PersistenceError(CalendarSyncError):
    """Raised when the local store fails to read or write."""


class ProviderError(CalendarSyncError):
    """Base class for errors reported by the external calendar provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Network failure, timeout, rate limit or server error; safe to retry later."""


class ProviderAuthError(ProviderError):
    """Credentials were rejected or could not be refreshed."""


class ProviderConflictError(ProviderError):
    """The remote event changed since the etag we hold (HTTP 412)."""


class ProviderNotFoundError(ProviderError):
    """The remote event does not exist (or was already deleted)."""


class ProviderPayloadError(ProviderError):
    """The provider returned an event the sync layer cannot read."""


class SyncTokenExpiredError(ProviderError):
    """The incremental sync cursor is no longer valid; a full sync is required."""


def sanitize_error_message(error: BaseException | str) -> str:
    """Return a single-line, credential-free message of at most 200 characters."""
    raw = error if isinstance(error, str) else (str(error) or type(error).__name__)
    return " ".join(redact_credentials(raw).split())[:_MAX_ERROR_LENGTH]
