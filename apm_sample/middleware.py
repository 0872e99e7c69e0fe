"""Request tracing middleware and the per-request trace context."""

from dataclasses import dataclass
from typing import Any, Iterable, Union

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from apm_sample.tracing import (
    NOOP_TRANSACTION,
    NoopTransaction,
    Outcome,
    Tracer,
    Transaction,
    capture_and_reraise,
)

logger = structlog.get_logger(__name__)

TRACE_HEADER = "x-trace-id"
DEFAULT_EXCLUDED_PATHS = ("/health", "/metrics", "/swagger", "/favicon.ico")


@dataclass
class TraceContext:
    """What a handler gets to trace its own work: the tracer, the request's
    transaction and a logger already bound to the trace ids."""

    tracer: Tracer
    transaction: Union[Transaction, NoopTransaction]
    logger: Any


class TracingMiddleware(BaseHTTPMiddleware):
    """Wrap every request in a ``request`` transaction.

    * The transaction is named ``HTTP {method} {path}``.
    * A handler exception is captured onto the transaction, logged as
      ``request_failed`` and re-raised unchanged, so Starlette still turns it
      into a 500.
    * A response with status >= 500 marks the transaction failed.
    * The transaction is ended on every exit path, cancellation included.
    * Paths starting with one of ``excluded_paths`` pass through untraced.
    """

    def __init__(
        self,
        app: ASGIApp,
        tracer: Tracer,
        excluded_paths: Iterable[str] = DEFAULT_EXCLUDED_PATHS,
    ) -> None:
        super().__init__(app)
        self.tracer = tracer
        self.excluded_paths = tuple(excluded_paths)

    def _is_excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.excluded_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if self._is_excluded(path):
            return await call_next(request)

        method = request.method
        transaction = self.tracer.start_transaction(
            f"HTTP {method} {path}",
            "request",
            labels={"http.method": method, "url.path": path},
        )
        log = logger.bind(trace_id=transaction.trace_id, transaction_id=transaction.transaction_id)
        request.state.trace = TraceContext(tracer=self.tracer, transaction=transaction, logger=log)

        log.info("request_started", method=method, path=path)
        with structlog.contextvars.bound_contextvars(trace_id=transaction.trace_id), transaction:
            try:
                response = await call_next(request)
            except Exception as exc:
                log.exception("request_failed", method=method, path=path)
                capture_and_reraise(transaction, exc)

            status = response.status_code
            transaction.set_label("http.status_code", status)
            transaction.set_result(f"HTTP {status // 100}xx")
            if status >= 500:
                transaction.set_outcome(Outcome.FAILURE)

        log.info("request_completed", method=method, path=path, status_code=status)
        if transaction.trace_id and TRACE_HEADER not in response.headers:
            response.headers[TRACE_HEADER] = transaction.trace_id
        return response


def get_trace_context(request: Request) -> TraceContext:
    """FastAPI dependency: the TraceContext the middleware published.

    Untraced paths get a context with a null transaction, so handlers can
    still call ``ctx.transaction.start_span(...)`` without checks.
    """
    ctx = getattr(request.state, "trace", None)
    if ctx is not None:
        return ctx
    tracer = getattr(request.app.state, "tracer", None) or Tracer.disabled()
    return TraceContext(tracer=tracer, transaction=NOOP_TRANSACTION, logger=logger)
