"""Structlog configuration for the service."""

import logging
import sys
from typing import Any

import structlog

_SENSITIVE_KEYS = frozenset({"authorization", "secret_token", "api_key", "password", "headers"})
_REDACTED = "***"


def add_service_name(service_name: str) -> structlog.types.Processor:
    """Processor that stamps every entry with ``service``."""

    def processor(_logger: Any, _method: str, event_dict: dict) -> dict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def censor_sensitive_data(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask credential-looking keys so tokens never reach the log pipeline."""
    for key in list(event_dict):
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = _REDACTED
    return event_dict


def setup_logging(service_name: str, log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog and stdlib logging for the entire process.

    The OpenTelemetry SDK logs through stdlib ``logging`` under the
    ``opentelemetry`` name; it is pinned to the same level so exporter
    failures show up next to the application's own entries.
    """
    log_level = log_level.upper()
    level = getattr(logging, log_level, logging.INFO)
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service_name(service_name),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        censor_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "dev":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    otel_logger = logging.getLogger("opentelemetry")
    otel_logger.setLevel(level)
    otel_logger.propagate = True
