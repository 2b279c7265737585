"""Unit tests for calendar models and request payloads.

Covers:
- EventFields normalization and validation
- CalendarEventUpdate partial application
- RemoteEvent shape rules
- Tokens never appear in repr or in the client-facing connection status
- camelCase request bodies
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from wedsync.api.models.calendar import (
    CalendarEventCreateRequest,
    CalendarEventUpdateRequest,
    ConnectionStatus,
)
from wedsync.calendar.models import (
    CalendarConnection,
    CalendarEventUpdate,
    EventCategory,
    EventFields,
    RemoteEvent,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 5, 2, 15, 0, tzinfo=UTC)


class TestEventFields:
    def test_defaults(self):
        fields = EventFields(title="Cake tasting", start_time=START)

        assert fields.category == EventCategory.other
        assert fields.color == "blue"
        assert fields.all_day is False
        assert fields.end_time is None

    def test_text_is_normalized(self):
        fields = EventFields(
            title="  Cake tasting  ", start_time=START, location="   ", description=" Bring Sam "
        )

        assert fields.title == "Cake tasting"
        assert fields.location is None
        assert fields.description == "Bring Sam"

    def test_blank_title_is_rejected(self):
        with pytest.raises(ValidationError):
            EventFields(title="   ", start_time=START)

    def test_end_before_start_is_rejected(self):
        with pytest.raises(ValidationError, match="end_time"):
            EventFields(
                title="Cake tasting",
                start_time=START,
                end_time=datetime(2026, 5, 1, tzinfo=UTC),
            )

    def test_naive_timestamps_are_treated_as_utc(self):
        fields = EventFields(title="Cake tasting", start_time=datetime(2026, 5, 2, 15, 0))

        assert fields.start_time == START
        assert fields.start_time.tzinfo is not None

    def test_unknown_category_is_rejected(self):
        with pytest.raises(ValidationError):
            EventFields(title="Cake tasting", start_time=START, category="catering")


class TestCalendarEventUpdate:
    def test_only_set_fields_are_applied(self):
        base = EventFields(title="Cake tasting", start_time=START, location="Bakery")

        merged = CalendarEventUpdate(title="Cake tasting #2").apply_to(base)

        assert merged.title == "Cake tasting #2"
        assert merged.location == "Bakery"

    def test_explicit_none_clears_a_field(self):
        base = EventFields(title="Cake tasting", start_time=START, location="Bakery")

        merged = CalendarEventUpdate(location=None).apply_to(base)

        assert merged.location is None

    def test_blank_title_is_rejected(self):
        with pytest.raises(ValidationError):
            CalendarEventUpdate(title=" ")


class TestRemoteEvent:
    def test_live_event_requires_fields(self):
        with pytest.raises(ValidationError, match="must carry event fields"):
            RemoteEvent(provider_event_id="evt-1")

    def test_deletion_marker_has_no_fields(self):
        marker = RemoteEvent(provider_event_id="evt-1", deleted=True)

        assert marker.event is None


class TestConnectionSecrets:
    def _connection(self) -> CalendarConnection:
        return CalendarConnection(
            tenant_id="tenant-1",
            calendar_id="wedding@group.calendar.google.com",
            calendar_name="Wedding Planning",
            refresh_token="1//secret-refresh",
            access_token="ya29.secret-access",
            google_email="couple@example.com",
        )

    def test_repr_hides_tokens(self):
        text = repr(self._connection())

        assert "secret-refresh" not in text
        assert "secret-access" not in text

    def test_status_has_no_tokens(self):
        status = ConnectionStatus.from_connection(self._connection())

        dumped = status.model_dump()
        assert dumped["connected"] is True
        assert dumped["google_email"] == "couple@example.com"
        assert "refresh_token" not in dumped
        assert "access_token" not in dumped

    def test_status_for_missing_connection(self):
        assert ConnectionStatus.from_connection(None) == ConnectionStatus(connected=False)


class TestRequestBodies:
    def test_create_accepts_camel_case(self):
        body = CalendarEventCreateRequest.model_validate(
            {
                "title": "Venue tour",
                "startTime": "2026-03-14T10:00:00Z",
                "allDay": False,
                "vendorId": "vendor-1",
            }
        )

        fields = body.to_fields()
        assert type(fields) is EventFields
        assert fields.vendor_id == "vendor-1"
        assert fields.start_time == datetime(2026, 3, 14, 10, tzinfo=UTC)

    def test_create_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            CalendarEventCreateRequest.model_validate(
                {"title": "Venue tour", "startTime": "2026-03-14T10:00:00Z", "syncStatus": "synced"}
            )

    def test_update_keeps_only_sent_keys(self):
        body = CalendarEventUpdateRequest.model_validate({"endTime": None, "location": "Barn"})

        update = body.to_update()

        assert update.model_dump(exclude_unset=True) == {"end_time": None, "location": "Barn"}
