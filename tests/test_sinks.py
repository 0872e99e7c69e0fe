# tests/test_sinks.py
import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from apm_sample.sinks import InMemorySink, OpenTelemetrySink
from apm_sample.tracing import Tracer


@pytest.fixture
def exporter():
    return InMemorySpanExporter()


@pytest.fixture
def otel_tracer(exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return Tracer(sink=OpenTelemetrySink(provider))


def _by_name(spans):
    return {s.name: s for s in spans}


def test_messaging_transaction_becomes_parent_and_child(otel_tracer, exporter):
    with otel_tracer.start_transaction("ProcessMessage", "messaging") as tx:
        with tx.start_span("SimulateMessageSend", "send", span_type="messaging") as span:
            pass

    spans = _by_name(exporter.get_finished_spans())
    root = spans["ProcessMessage"]
    child = spans["SimulateMessageSend"]

    assert root.parent is None
    assert child.parent.span_id == root.context.span_id
    assert child.context.trace_id == root.context.trace_id
    assert root.kind is SpanKind.CONSUMER
    assert child.kind is SpanKind.PRODUCER
    # original timestamps are kept
    assert root.start_time == tx.start_time
    assert root.end_time == tx.end_time
    assert child.start_time == span.start_time
    assert child.end_time == span.end_time
    assert root.attributes["transaction.type"] == "messaging"
    assert root.attributes["transaction.outcome"] == "success"
    assert child.attributes["span.type"] == "messaging"
    assert child.attributes["span.subtype"] == "send"
    assert root.status.status_code is StatusCode.UNSET


def test_failed_request_carries_exception_event_and_error_status(otel_tracer, exporter):
    with pytest.raises(RuntimeError):
        with otel_tracer.start_transaction("HTTP GET /api/error", "request") as tx:
            tx.set_label("http.status_code", 500)
            raise RuntimeError("This is a test error!")

    (root,) = exporter.get_finished_spans()
    assert root.kind is SpanKind.SERVER
    assert root.status.status_code is StatusCode.ERROR
    assert root.attributes["http.status_code"] == 500
    (event,) = root.events
    assert event.name == "exception"
    assert event.attributes["exception.type"] == "RuntimeError"
    assert event.attributes["exception.message"] == "This is a test error!"
    assert "Traceback" in event.attributes["exception.stacktrace"]


def test_span_left_open_is_closed_at_transaction_end(otel_tracer, exporter):
    tx = otel_tracer.start_transaction("t", "request")
    tx.start_span("dangling", "query")
    tx.end()

    spans = _by_name(exporter.get_finished_spans())
    assert spans["dangling"].end_time == tx.end_time


def test_non_primitive_labels_are_stringified(otel_tracer, exporter):
    with otel_tracer.start_transaction("t", "request") as tx:
        tx.set_label("payload", {"a": 1})

    (root,) = exporter.get_finished_spans()
    assert root.attributes["payload"] == "{'a': 1}"


def test_unknown_kinds_map_to_internal(otel_tracer, exporter):
    with otel_tracer.start_transaction("job", "scheduled") as tx:
        with tx.start_span("step", "compute"):
            pass

    spans = _by_name(exporter.get_finished_spans())
    assert spans["job"].kind is SpanKind.INTERNAL
    assert spans["step"].kind is SpanKind.INTERNAL


def test_in_memory_sink_filters_by_kind():
    sink = InMemorySink()
    tracer = Tracer(sink=sink)
    tracer.start_transaction("a", "request").end()
    tracer.start_transaction("b", "messaging").end()

    assert [t.name for t in sink.by_kind("messaging")] == ["b"]
    sink.clear()
    assert sink.transactions == []
