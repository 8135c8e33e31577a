import httpx
import pytest

from lmstudio_router.app import build_app, initialize_all
from lmstudio_router.model_registry import ModelInfo, ModelRegistry
from lmstudio_router.parsers.parser import parse_args
from lmstudio_router.routers.routing_logic import LeastInFlightRouter
from lmstudio_router.services.request_service.rewriter import ModelRewriter
from lmstudio_router.stats.inflight import InFlightTracker

BACKEND_URL = "http://lmstudio.test:1234"


def loaded(*model_ids):
    return [ModelInfo(id=model_id, state="loaded") for model_id in model_ids]


def _no_session():
    raise AssertionError("network access is not expected in this test")


@pytest.fixture
def tracker():
    return InFlightTracker()


@pytest.fixture
def registry():
    return ModelRegistry(BACKEND_URL, _no_session)


@pytest.fixture
def rewriter(registry, tracker):
    return ModelRewriter(registry, tracker, LeastInFlightRouter())


@pytest.fixture
def args():
    return parse_args(["--lm-studio-url", BACKEND_URL, "--max-payload-size", "1kb"])


@pytest.fixture
def app(args):
    app = build_app()
    initialize_all(app, args)
    return app


def start_backend(app, handler):
    """Point the proxy client at an in-process fake LM Studio."""
    app.state.httpx_client_wrapper.start(
        connect_timeout=1.0,
        read_timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def router_client(app, raise_app_exceptions=True):
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
    return httpx.AsyncClient(transport=transport, base_url="http://router.test")
