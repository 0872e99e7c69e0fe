import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CollectorRegistry

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

from apm_sample.config import Settings, load_settings_from_env
from apm_sample.logging_setup import setup_logging
from apm_sample.middleware import DEFAULT_EXCLUDED_PATHS, TraceContext, TracingMiddleware, get_trace_context
from apm_sample.telemetry import init_tracing
from apm_sample.tracing import Tracer

logger = structlog.get_logger(__name__)

HELLO_MESSAGE = "Hello from Elastic APM Sample App!"
ERROR_MESSAGE = "This is a test error!"
MESSAGING_MESSAGE = "Messaging trace sent!"

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


# ---- Routes ----

@router.get(
    "/api/hello",
    response_class=PlainTextResponse,
    name="HelloWorld",
    operation_id="HelloWorld",
    tags=["Sample"],
)
def hello(ctx: TraceContext = Depends(get_trace_context)):
    ctx.logger.info("handling_request", route="/api/hello")
    return HELLO_MESSAGE


@router.get(
    "/api/error",
    response_class=PlainTextResponse,
    name="TestError",
    operation_id="TestError",
    tags=["Sample"],
)
def always_fail(ctx: TraceContext = Depends(get_trace_context)):
    # Always fails, so error capture and the 500 path can be exercised
    ctx.logger.info("handling_request", route="/api/error")
    raise RuntimeError(ERROR_MESSAGE)


@router.get(
    "/api/messaging",
    response_class=PlainTextResponse,
    name="MessagingTrace",
    operation_id="MessagingTrace",
    tags=["Messaging"],
)
async def messaging_trace(
    ctx: TraceContext = Depends(get_trace_context),
    settings: Settings = Depends(get_settings),
):
    """
    Emits a custom "messaging" transaction (next to the request one) with a
    single "send" span around a simulated outbound call.
    """
    ctx.logger.info("handling_request", route="/api/messaging")
    with ctx.tracer.start_transaction("ProcessMessage", "messaging") as transaction:
        with transaction.start_span("SimulateMessageSend", "send", span_type="messaging"):
            # Pretend to send a message
            await asyncio.sleep(settings.messaging_delay)
        return MESSAGING_MESSAGE


# Basic health endpoint, excluded from tracing
@router.get("/health", include_in_schema=False)
def health():
    return {"ok": True}


def create_app(settings: Optional[Settings] = None, tracer: Optional[Tracer] = None) -> FastAPI:
    """
    Build the FastAPI app.

    settings: defaults to load_settings_from_env()
    tracer:   defaults to init_tracing(settings); pass one in to inject a test
              double or a tracer with an InMemorySink
    """
    if settings is None:
        settings = load_settings_from_env()
    setup_logging(settings.service_name, settings.log_level, settings.log_format)
    logger.info("application_starting", service=settings.service_name, environment=settings.environment)

    if tracer is None:
        tracer = init_tracing(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application_running", service=settings.service_name)
        yield
        app.state.tracer.close()
        logger.info("application_stopped", service=settings.service_name)

    app = FastAPI(
        title=settings.service_name,
        version="v1",
        docs_url="/swagger",
        openapi_url="/swagger/v1/swagger.json",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.tracer = tracer

    # instrument and expose Prometheus metrics at /metrics
    Instrumentator(
        excluded_handlers=["/metrics", "/health"],
        registry=CollectorRegistry(),
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    app.add_middleware(TracingMiddleware, tracer=tracer, excluded_paths=DEFAULT_EXCLUDED_PATHS)
    app.include_router(router)
    logger.info("swagger_enabled", path="/swagger")
    return app


app = create_app()
