# telemetry.py
"""
Tracing bootstrap.
Call init_tracing(settings) once at startup; it returns the Tracer that the
app hands to the middleware and the routes.

If anything goes wrong while building the export pipeline (bad config,
exporter can't be created, backend unreachable) the error is logged once and
a disabled Tracer comes back instead: the service keeps serving requests,
just without traces.
"""

from typing import Dict, Optional

import requests
import structlog

# Core OpenTelemetry imports
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from apm_sample.config import Settings
from apm_sample.sinks import OpenTelemetrySink
from apm_sample.tracing import Tracer

logger = structlog.get_logger(__name__)


def _parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """
    Helper: turns a string like:
        "x-tenant=blue,env=prod"
    into:
        {"x-tenant": "blue", "env": "prod"}
    Used for OTEL_EXPORTER_OTLP_HEADERS if the backend needs extra headers.
    """
    if not raw:
        return {}
    pairs = [p.strip() for p in raw.split(",") if p.strip()]
    out: Dict[str, str] = {}
    for p in pairs:
        if "=" in p:
            k, v = p.split("=", 1)
            out[k.strip()] = v.strip()
    return out


def build_headers(settings: Settings) -> Dict[str, str]:
    """Extra headers first, then credentials (a secret token beats an API key)."""
    headers = _parse_headers(settings.extra_headers)
    if settings.secret_token:
        headers["Authorization"] = f"Bearer {settings.secret_token}"
    elif settings.api_key:
        headers["Authorization"] = f"ApiKey {settings.api_key}"
    return headers


class InsecureSession(requests.Session):
    """
    requests session that SKIPS TLS certificate validation.
    Only used when APM_VERIFY_SERVER_CERT=false; never the default.
    The exporter passes verify= on every call, so it is overridden here.
    """

    def request(self, method, url, **kwargs):
        kwargs["verify"] = False
        return super().request(method, url, **kwargs)


def build_exporter(settings: Settings) -> SpanExporter:
    if settings.exporter == "console":
        return ConsoleSpanExporter()

    session = None
    if not settings.verify_server_cert:
        logger.warning(
            "tls_verification_disabled",
            server_url=settings.server_url,
            reason="APM_VERIFY_SERVER_CERT=false",
        )
        session = InsecureSession()

    headers = build_headers(settings)
    return OTLPSpanExporter(
        endpoint=f"{settings.server_url}/v1/traces",
        certificate_file=settings.ca_cert_file,
        headers=headers or None,
        timeout=settings.export_timeout,
        session=session,
    )


def _build_tracer(settings: Settings, exporter: Optional[SpanExporter]) -> Tracer:
    settings.validate()
    if settings.exporter == "none" and exporter is None:
        return Tracer(sink=None, sample_rate=settings.sample_rate)

    # --- Define "who is sending telemetry" (the Resource)
    resource = Resource.create({
        "service.name": settings.service_name,
        "service.version": settings.service_version,
        "deployment.environment": settings.environment,
    })

    # Provider stays local to the sink; nothing is registered globally
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter or build_exporter(settings)))
    return Tracer(sink=OpenTelemetrySink(provider), sample_rate=settings.sample_rate)


def init_tracing(settings: Settings, exporter: Optional[SpanExporter] = None) -> Tracer:
    """
    Build the Tracer for this process.

    settings: already loaded Settings (sink address, credentials, sample rate)
    exporter: optional SpanExporter to use instead of the one settings describe
    """
    if not settings.enabled:
        logger.info("tracing_disabled", service=settings.service_name)
        return Tracer.disabled()

    try:
        tracer = _build_tracer(settings, exporter)
    except Exception:
        logger.exception(
            "tracing_init_failed",
            server_url=settings.server_url,
            exporter=settings.exporter,
            detail="continuing without tracing",
        )
        return Tracer.disabled()

    logger.info(
        "tracing_initialized",
        exporter=settings.exporter,
        server_url=settings.server_url,
        sample_rate=settings.sample_rate,
        verify_server_cert=settings.verify_server_cert,
    )
    return tracer
