"""Provider-agnostic contract for the external calendar."""

from __future__ import annotations

import abc
from collections.abc import Callable

from wedsync.calendar.errors import ProviderTransientError
from wedsync.calendar.models import (
    CalendarConnection,
    EventFields,
    PushResult,
    RemoteEvent,
    RemoteEventPage,
)

# Safety valve against a provider that never stops returning page tokens.
MAX_PAGES_PER_LISTING = 500


class CalendarProvider(abc.ABC):
    """External calendar operations consumed by the reconciliation engine.

    Implementations raise the ``Provider*Error`` family from
    ``wedsync.calendar.errors`` and never return partial results silently.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_page(
        self,
        *,
        calendar_id: str,
        cursor: str | None,
        page_token: str | None = None,
    ) -> RemoteEventPage:
        """Return one page of changes since *cursor* (everything when ``None``).

        Raises:
            ``SyncTokenExpiredError`` when the provider no longer accepts
            *cursor*; the caller should restart the listing with
            ``cursor=None``.
        """
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> RemoteEvent | None:
        """Fetch the current state of one event, or ``None`` when it is gone."""
        ...

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, event: EventFields) -> PushResult:
        """Create an event and return its provider id and etag."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        event: EventFields,
        etag: str | None = None,
    ) -> PushResult:
        """Overwrite an event.

        When *etag* is given the write is conditional and raises
        ``ProviderConflictError`` if the remote copy has changed since.
        """
        ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an event; raises ``ProviderNotFoundError`` when already gone."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...

    async def list_events(
        self,
        *,
        calendar_id: str,
        cursor: str | None,
    ) -> tuple[list[RemoteEvent], str]:
        """Collect every page of changes since *cursor*.

        Returns the changed events and the cursor for the next listing.
        """
        events: list[RemoteEvent] = []
        page_token: str | None = None
        for _ in range(MAX_PAGES_PER_LISTING):
            page = await self.list_page(
                calendar_id=calendar_id,
                cursor=cursor,
                page_token=page_token,
            )
            events.extend(page.events)
            if page.next_page_token is None:
                if page.next_cursor is None:
                    raise ProviderTransientError(
                        f"{self.name} listing for '{calendar_id}' ended without a sync cursor"
                    )
                return events, page.next_cursor
            page_token = page.next_page_token
        raise ProviderTransientError(
            f"{self.name} listing for '{calendar_id}' exceeded {MAX_PAGES_PER_LISTING} pages"
        )


ProviderFactory = Callable[[CalendarConnection], CalendarProvider]
"""Builds a provider bound to one tenant's connection credentials."""
