"""Tests for wedsync.core.telemetry: tracer setup and calendar spans."""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import wedsync.core.telemetry as _telemetry_mod
from wedsync.core.telemetry import init_telemetry, sync_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None
    _telemetry_mod._tracer_provider_installed = False


@pytest.fixture
def otel_provider():
    """Install an in-memory tracer provider and yield its exporter."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "wedsync-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        _reset_otel_global_state()

        tracer = init_telemetry("wedsync-test")

        with tracer.start_as_current_span("noop") as span:
            assert span is not None
        assert _telemetry_mod._tracer_provider_installed is False


class TestSyncSpan:
    def test_span_name_and_tenant_attribute(self, otel_provider):
        with sync_span("sync", tenant_id="tenant-1"):
            pass

        spans = otel_provider.get_finished_spans()
        assert len(spans) == 1
        assert spans[0].name == "wedsync.calendar.sync"
        assert spans[0].attributes["wedsync.tenant_id"] == "tenant-1"

    def test_span_is_current_inside_block(self, otel_provider):
        with sync_span("delete_event", tenant_id="tenant-1") as span:
            assert trace.get_current_span() is span

    def test_exception_marks_span_as_error(self, otel_provider):
        with pytest.raises(RuntimeError), sync_span("sync", tenant_id="tenant-1"):
            raise RuntimeError("provider exploded")

        span = otel_provider.get_finished_spans()[0]
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"

