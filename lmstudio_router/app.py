# Copyright 2024-2025 The vLLM Production Stack Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import asyncio
import time
from contextlib import asynccontextmanager

import sentry_sdk
import uvicorn
from fastapi import FastAPI

from lmstudio_router.aiohttp_client import AiohttpClientWrapper
from lmstudio_router.graceful_shutdown import (
    GracefulShutdownManager,
    setup_signal_handlers,
)
from lmstudio_router.httpx_client import HttpxClientWrapper
from lmstudio_router.log import configure_logging, init_logger
from lmstudio_router.middleware import (
    GracefulShutdownMiddleware,
    RequestLifecycleMiddleware,
)
from lmstudio_router.model_registry import ModelRegistry
from lmstudio_router.parsers.parser import parse_args
from lmstudio_router.routers.health_router import health_router
from lmstudio_router.routers.proxy_router import router as proxy_router
from lmstudio_router.routers.routing_logic import LeastInFlightRouter
from lmstudio_router.services.model_refresh import ModelRefreshService
from lmstudio_router.services.request_service.rewriter import ModelRewriter
from lmstudio_router.stats.inflight import InFlightTracker
from lmstudio_router.utils import set_ulimit

logger = init_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "args", None) is None:
        # launched as `uvicorn lmstudio_router.app:app`; configure from env
        initialize_all(app, parse_args([]))
    args = app.state.args
    app.state.aiohttp_client_wrapper.start()
    app.state.httpx_client_wrapper.start(
        connect_timeout=args.backend_connect_timeout,
        read_timeout=args.request_timeout,
    )
    setup_signal_handlers(
        asyncio.get_running_loop(),
        app.state.shutdown_manager,
        getattr(app.state, "uvicorn_server", None),
    )

    # The first listing completes (or fails) before uvicorn starts accepting.
    await app.state.model_refresher.refresh_once()
    registry = app.state.registry
    if registry.is_empty():
        logger.warning(
            "No models currently loaded in LM Studio. Server will start and continue checking for models."
        )

    logger.info(f"Load balancer server running on port {args.port}")
    logger.info(f"Proxying requests to LM Studio at {registry.backend_url}")
    if registry.is_empty():
        logger.info(
            "No models currently available. Models will be detected automatically when loaded."
        )
    else:
        logger.info(f"Available models: [{', '.join(registry.model_ids())}]")

    app.state.model_refresher.start()

    yield

    shutdown_manager = app.state.shutdown_manager
    if shutdown_manager.is_shutting_down:
        logger.info(
            f"Waiting for {shutdown_manager.in_flight_requests} in-flight requests to complete..."
        )
        await shutdown_manager.wait_for_requests()

    logger.info("Stopping model updater")
    await app.state.model_refresher.stop()

    await app.state.httpx_client_wrapper.stop()
    await app.state.aiohttp_client_wrapper.stop()


def initialize_all(app: FastAPI, args):
    """
    Build the router's components from the parsed arguments and attach them
    to `app.state`.

    The registry and the in-flight tracker are created once here and handed
    by reference to the rewriter and the refresh service; request handlers
    reach them through `request.app.state`.

    Args:
        app (FastAPI): FastAPI application
        args: the parsed command-line arguments
    """
    configure_logging(args.log_level, args.log_format)

    if sentry_dsn := args.sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            traces_sample_rate=args.sentry_traces_sample_rate,
        )

    app.state.args = args
    app.state.start_time = time.time()
    app.state.aiohttp_client_wrapper = AiohttpClientWrapper()
    app.state.httpx_client_wrapper = HttpxClientWrapper()
    app.state.shutdown_manager = GracefulShutdownManager(
        timeout=args.graceful_shutdown_timeout
    )

    registry = ModelRegistry(
        args.lm_studio_url,
        app.state.aiohttp_client_wrapper,
        timeout=args.request_timeout,
    )
    tracker = InFlightTracker()
    app.state.registry = registry
    app.state.inflight_tracker = tracker
    app.state.router = LeastInFlightRouter()
    app.state.request_rewriter = ModelRewriter(registry, tracker, app.state.router)
    app.state.model_refresher = ModelRefreshService(
        registry, tracker, args.model_refresh_interval
    )


def build_app() -> FastAPI:
    # Every path that is not a status endpoint belongs to LM Studio, so the
    # interactive docs are disabled.
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

    # Added last, runs first: the shutdown gate wraps the lifecycle tracking.
    app.add_middleware(RequestLifecycleMiddleware)
    app.add_middleware(GracefulShutdownMiddleware)

    app.include_router(health_router)
    app.include_router(proxy_router)
    return app


app = build_app()


def main():
    args = parse_args()
    initialize_all(app, args)

    # Workaround to avoid footguns where uvicorn drops requests with too
    # many concurrent requests active.
    set_ulimit()

    config = uvicorn.Config(app, host=args.host, port=args.port, log_config=None)
    server = uvicorn.Server(config)
    app.state.uvicorn_server = server
    server.run()


if __name__ == "__main__":
    main()
