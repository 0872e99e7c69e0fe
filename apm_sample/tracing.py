"""
tracing.py
----------
Purpose: The request-scoped trace model. A Transaction is one top-level unit
of work (usually one HTTP request); a Span is a bounded sub-operation inside
a Transaction or inside another Span.

Key ideas:
- Lifecycle is Created -> Running -> Ended, never backwards.
- end() is idempotent: a second call keeps the first end timestamp/outcome.
- Transactions and Spans are context managers, so `with` gives the
  start/finally-end discipline for free, and errors raised in the block are
  captured and then re-raised untouched.
- A disabled tracer, an unsampled transaction or a missing parent hand out
  null objects (NoopTransaction / NoopSpan) with the same API, so call sites
  never need an `if transaction is not None` branch.
- The Tracer is passed around explicitly (no process-wide agent singleton).
"""

from __future__ import annotations

import os
import random
import threading
import time
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, NoReturn, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


# --- Enums -------------------------------------------------------------------

class Outcome(str, Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILURE = "failure"


class State(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    ENDED = "ended"


# --- Captured error ----------------------------------------------------------

@dataclass(frozen=True)
class CapturedError:
    """Immutable record of one exception, attached to one Transaction or Span."""
    type: str
    message: str
    stacktrace: str
    timestamp: int  # epoch nanoseconds

    @classmethod
    def from_exception(cls, exc: BaseException, timestamp: int) -> "CapturedError":
        return cls(
            type=type(exc).__qualname__,
            message=str(exc),
            stacktrace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            timestamp=timestamp,
        )


def _new_id(nbytes: int) -> str:
    return os.urandom(nbytes).hex()


# --- Shared lifecycle ----------------------------------------------------------

class _TraceUnit:
    """Lifecycle shared by Transaction and Span."""

    def __init__(self, tracer: "Tracer", name: str, kind: str):
        self.tracer = tracer
        self.name = name
        self.kind = kind
        self.state = State.CREATED
        self.start_time: Optional[int] = None
        self.end_time: Optional[int] = None
        self.outcome = Outcome.UNKNOWN
        self.error: Optional[CapturedError] = None
        self.labels: Dict[str, Any] = {}

    def _start(self) -> None:
        self.start_time = self.tracer.clock()
        self.state = State.RUNNING

    @property
    def is_running(self) -> bool:
        return self.state is State.RUNNING

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and end, None while the unit is still open."""
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time) / 1e9

    def set_label(self, key: str, value: Any) -> None:
        self.labels[key] = value

    def set_outcome(self, outcome: Outcome) -> None:
        if self.state is not State.ENDED:
            self.outcome = outcome

    def capture_exception(self, exc: BaseException) -> Optional[CapturedError]:
        """
        Attach 'exc' as this unit's CapturedError and mark the unit failed.
        The first capture wins; later ones return the existing record.
        Does NOT swallow or alter 'exc'; the caller keeps raising it.
        """
        if self.state is State.ENDED:
            return self.error
        if self.error is None:
            self.error = CapturedError.from_exception(exc, self.tracer.clock())
        self.outcome = Outcome.FAILURE
        return self.error

    def start_span(self, name: str, kind: str, span_type: str = "app") -> Union["Span", "NoopSpan"]:
        return self.tracer.start_span(self, name, kind, span_type=span_type)

    def end(self, outcome: Optional[Outcome] = None) -> None:
        """End exactly once; later calls are no-ops."""
        if self.state is State.ENDED:
            return
        self.end_time = self.tracer.clock()
        if outcome is not None:
            self.outcome = outcome
        elif self.outcome is Outcome.UNKNOWN:
            self.outcome = Outcome.FAILURE if self.error is not None else Outcome.SUCCESS
        self.state = State.ENDED
        self._on_end()

    def _on_end(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            if isinstance(exc, Exception):
                self.capture_exception(exc)
            else:
                # cancellation / interpreter exit: not an application fault
                self.set_outcome(Outcome.FAILURE)
        self.end()
        return False


class Transaction(_TraceUnit):
    """One top-level unit of work."""

    def __init__(self, tracer: "Tracer", name: str, kind: str, sampled: bool = True):
        super().__init__(tracer, name, kind)
        self.trace_id = _new_id(16)
        self.transaction_id = _new_id(8)
        self.sampled = sampled
        self.result: Optional[str] = None
        self._spans: List[Span] = []
        # sync FastAPI handlers run in a worker thread, so the span list can be
        # appended to from a thread other than the one that opened the request
        self._lock = threading.Lock()

    @property
    def spans(self) -> List["Span"]:
        with self._lock:
            return list(self._spans)

    def set_result(self, result: str) -> None:
        self.result = result

    def _add_span(self, span: "Span") -> None:
        with self._lock:
            self._spans.append(span)

    def _on_end(self) -> None:
        self.tracer._transaction_ended(self)

    def __repr__(self) -> str:
        return (
            f"Transaction(name={self.name!r}, kind={self.kind!r}, state={self.state.value}, "
            f"outcome={self.outcome.value}, spans={len(self._spans)})"
        )


class Span(_TraceUnit):
    """A sub-operation nested in a Transaction (directly or via another Span)."""

    def __init__(
        self,
        tracer: "Tracer",
        parent: Union[Transaction, "Span"],
        name: str,
        kind: str,
        span_type: str = "app",
    ):
        super().__init__(tracer, name, kind)
        self.parent = parent
        self.transaction: Transaction = parent if isinstance(parent, Transaction) else parent.transaction
        self.span_type = span_type
        self.span_id = _new_id(8)

    @property
    def trace_id(self) -> str:
        return self.transaction.trace_id

    def _on_end(self) -> None:
        self.tracer._span_ended(self)

    def __repr__(self) -> str:
        return f"Span(name={self.name!r}, kind={self.kind!r}, state={self.state.value}, outcome={self.outcome.value})"


# --- Null objects --------------------------------------------------------------

class NoopSpan:
    """Accepts the whole Span API and records nothing."""

    name = ""
    kind = ""
    span_type = ""
    start_time = None
    end_time = None
    duration = None
    error = None
    outcome = Outcome.UNKNOWN
    state = State.ENDED
    is_running = False
    trace_id = ""
    transaction_id = ""

    def set_label(self, key: str, value: Any) -> None:
        pass

    def set_outcome(self, outcome: Outcome) -> None:
        pass

    def set_result(self, result: str) -> None:
        pass

    def capture_exception(self, exc: BaseException) -> None:
        return None

    def start_span(self, name: str, kind: str, span_type: str = "app") -> "NoopSpan":
        return NOOP_SPAN

    def end(self, outcome: Optional[Outcome] = None) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def __bool__(self) -> bool:
        return False


class NoopTransaction(NoopSpan):
    """What a disabled tracer hands out instead of a Transaction."""

    sampled = False
    result = None
    spans: tuple = ()


NOOP_SPAN = NoopSpan()
NOOP_TRANSACTION = NoopTransaction()

TraceParent = Union[Transaction, Span, NoopSpan, None]


# --- Explicit capture step -------------------------------------------------------

def capture_and_reraise(unit: TraceParent, exc: BaseException) -> NoReturn:
    """
    Record 'exc' on 'unit' (if there is one) and raise the very same object,
    so upstream error handling sees the original type and message.
    """
    if unit is not None:
        unit.capture_exception(exc)
    raise exc


# --- Tracer ------------------------------------------------------------------------

class Tracer:
    """
    Hands out Transactions and Spans and forwards finished, sampled
    Transactions to the sink.

    - sink:        anything with record(transaction) / close(); None = keep nothing
    - sample_rate: share of transactions that are sent to the sink (0..1)
    - enabled:     False = every call returns a null object
    - clock:       epoch-nanoseconds source (tests may pin it)
    """

    def __init__(
        self,
        sink: Any = None,
        *,
        sample_rate: float = 1.0,
        enabled: bool = True,
        clock: Callable[[], int] = time.time_ns,
        rng: Callable[[], float] = random.random,
    ):
        self.sink = sink
        self.sample_rate = sample_rate
        self.enabled = enabled
        self.clock = clock
        self._rng = rng
        self._counter_lock = threading.Lock()
        self.started = 0
        self.ended = 0
        self.spans_started = 0
        self.spans_ended = 0

    @classmethod
    def disabled(cls) -> "Tracer":
        return cls(enabled=False)

    def _should_sample(self) -> bool:
        if self.sample_rate >= 1.0:
            return True
        if self.sample_rate <= 0.0:
            return False
        return self._rng() < self.sample_rate

    def start_transaction(
        self, name: str, kind: str, labels: Optional[Dict[str, Any]] = None
    ) -> Union[Transaction, NoopTransaction]:
        if not self.enabled:
            return NOOP_TRANSACTION
        transaction = Transaction(self, name, kind, sampled=self._should_sample())
        if labels:
            transaction.labels.update(labels)
        with self._counter_lock:
            self.started += 1
        transaction._start()
        return transaction

    def start_span(
        self, parent: TraceParent, name: str, kind: str, span_type: str = "app"
    ) -> Union[Span, NoopSpan]:
        """
        Start a Span under 'parent'. No parent, a null parent, a parent that
        is not running or an unsampled transaction all yield NOOP_SPAN.
        """
        if not self.enabled or not isinstance(parent, (Transaction, Span)) or not parent.is_running:
            return NOOP_SPAN
        owner = parent if isinstance(parent, Transaction) else parent.transaction
        if not owner.sampled:
            return NOOP_SPAN
        span = Span(self, parent, name, kind, span_type=span_type)
        with self._counter_lock:
            self.spans_started += 1
        span._start()
        owner._add_span(span)
        return span

    def _span_ended(self, span: Span) -> None:
        with self._counter_lock:
            self.spans_ended += 1

    def _transaction_ended(self, transaction: Transaction) -> None:
        with self._counter_lock:
            self.ended += 1
        if not transaction.sampled or self.sink is None:
            return
        try:
            self.sink.record(transaction)
        except Exception:
            # export is best effort; the request must not notice
            logger.exception(
                "sink_record_failed",
                transaction=transaction.name,
                trace_id=transaction.trace_id,
            )

    def close(self) -> None:
        if self.sink is not None:
            try:
                self.sink.close()
            except Exception:
                logger.exception("sink_close_failed")
