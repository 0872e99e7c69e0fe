"""
sinks.py
--------
Where finished Transactions go.

A sink is anything with:
    record(transaction)  -> hand over one ended Transaction, must not block
    close()              -> flush and release resources at shutdown

- InMemorySink keeps them in a list (tests, local debugging).
- OpenTelemetrySink turns the Transaction tree into OpenTelemetry spans and
  queues them on the provider's BatchSpanProcessor, which exports from a
  background thread. Export errors are logged by the SDK; nothing reaches
  the request.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Protocol

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import SpanKind, Status, StatusCode

from apm_sample.tracing import Outcome, Span, Transaction


class Sink(Protocol):
    def record(self, transaction: Transaction) -> None: ...

    def close(self) -> None: ...


class InMemorySink:
    """Keeps every recorded Transaction; thread safe."""

    def __init__(self) -> None:
        self._items: List[Transaction] = []
        self._lock = threading.Lock()
        self.closed = False

    def record(self, transaction: Transaction) -> None:
        with self._lock:
            self._items.append(transaction)

    @property
    def transactions(self) -> List[Transaction]:
        with self._lock:
            return list(self._items)

    def by_kind(self, kind: str) -> List[Transaction]:
        return [t for t in self.transactions if t.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def close(self) -> None:
        self.closed = True


# Transaction/span kind -> OpenTelemetry SpanKind
_TRANSACTION_KINDS = {
    "request": SpanKind.SERVER,
    "messaging": SpanKind.CONSUMER,
}
_SPAN_KINDS = {
    "send": SpanKind.PRODUCER,
    "receive": SpanKind.CONSUMER,
    "request": SpanKind.CLIENT,
}


def _attr(value: Any) -> Any:
    # OTel attributes only take str/bool/int/float (or sequences of them)
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


class OpenTelemetrySink:
    """
    Replays a finished Transaction as OpenTelemetry spans with the original
    timestamps. The provider is owned by this sink (not registered globally).
    """

    def __init__(self, provider: TracerProvider, instrumentation_name: str = "apm_sample"):
        self.provider = provider
        self._tracer = provider.get_tracer(instrumentation_name)

    def record(self, transaction: Transaction) -> None:
        attributes = {
            "transaction.type": transaction.kind,
            "transaction.outcome": transaction.outcome.value,
            "transaction.id": transaction.transaction_id,
        }
        if transaction.result:
            attributes["transaction.result"] = transaction.result
        attributes.update({k: _attr(v) for k, v in transaction.labels.items()})

        root = self._tracer.start_span(
            transaction.name,
            context=Context(),
            kind=_TRANSACTION_KINDS.get(transaction.kind, SpanKind.INTERNAL),
            attributes=attributes,
            start_time=transaction.start_time,
        )
        otel_spans: Dict[int, Any] = {id(transaction): root}
        for span in transaction.spans:
            parent = otel_spans.get(id(span.parent), root)
            otel_spans[id(span)] = self._record_span(span, parent, transaction)

        self._finish(root, transaction, transaction.end_time)

    def _record_span(self, span: Span, parent: Any, transaction: Transaction) -> Any:
        attributes = {
            "span.type": span.span_type,
            "span.subtype": span.kind,
            "span.outcome": span.outcome.value,
        }
        attributes.update({k: _attr(v) for k, v in span.labels.items()})
        otel_span = self._tracer.start_span(
            span.name,
            context=trace.set_span_in_context(parent),
            kind=_SPAN_KINDS.get(span.kind, SpanKind.INTERNAL),
            attributes=attributes,
            start_time=span.start_time,
        )
        # a span left open is closed at its transaction's end
        self._finish(otel_span, span, span.end_time or transaction.end_time)
        return otel_span

    @staticmethod
    def _finish(otel_span: Any, unit: Any, end_time: Optional[int]) -> None:
        error = unit.error
        if error is not None:
            otel_span.add_event(
                "exception",
                attributes={
                    "exception.type": error.type,
                    "exception.message": error.message,
                    "exception.stacktrace": error.stacktrace,
                },
                timestamp=error.timestamp,
            )
        if unit.outcome is Outcome.FAILURE:
            otel_span.set_status(Status(StatusCode.ERROR, error.message if error else None))
        otel_span.end(end_time=end_time)

    def close(self) -> None:
        self.provider.force_flush()
        self.provider.shutdown()
