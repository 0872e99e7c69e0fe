import itertools
import os

# Keep the module-level app in apm_sample.main from pointing at a real backend.
os.environ.setdefault("APM_EXPORTER", "none")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from apm_sample.config import Settings
from apm_sample.main import create_app
from apm_sample.sinks import InMemorySink
from apm_sample.tracing import Tracer

MESSAGING_DELAY = 0.05


@pytest.fixture
def sink():
    return InMemorySink()


@pytest.fixture
def tracer(sink):
    return Tracer(sink=sink)


@pytest.fixture
def ticking_clock():
    """Deterministic clock: every reading is 1ms after the previous one."""
    counter = itertools.count(start=1_000_000_000, step=1_000_000)
    return lambda: next(counter)


@pytest.fixture
def settings():
    return Settings(exporter="none", log_level="INFO", messaging_delay=MESSAGING_DELAY)


@pytest.fixture
def client(settings, tracer):
    app = create_app(settings=settings, tracer=tracer)
    with TestClient(app) as c:
        yield c
