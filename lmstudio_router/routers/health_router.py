import time

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from lmstudio_router.log import init_logger
from lmstudio_router.utils import max_rss
from lmstudio_router.version import __version__

logger = init_logger(__name__)

health_router = APIRouter()


@health_router.get("/version")
async def show_version():
    return JSONResponse(content={"version": __version__, "type": "lmstudio-router"})


@health_router.get("/health")
async def health(request: Request) -> Response:
    """
    Liveness and a summary of routing state.

    Reports the loaded models, the in-flight entries, how many requests have
    been proxied and the process uptime. Returns 503 during graceful
    shutdown so upstream load balancers stop sending traffic.
    """
    state = request.app.state
    registry = state.registry
    tracker = state.inflight_tracker
    shutdown_manager = getattr(state, "shutdown_manager", None)

    if shutdown_manager is not None and shutdown_manager.is_shutting_down:
        return JSONResponse(
            content={
                "status": "shutting_down",
                "in_flight_requests": shutdown_manager.in_flight_requests,
            },
            status_code=503,
            headers={"Connection": "close"},
        )

    return JSONResponse(
        content={
            "status": "healthy",
            "availableModels": registry.model_ids(),
            "inProgressModels": tracker.entries(),
            "totalRequests": (
                shutdown_manager.total_requests if shutdown_manager is not None else 0
            ),
            "uptime": time.time() - state.start_time,
            "memory": {"maxrss": max_rss()},
            "backendReachable": registry.get_health(),
        },
        status_code=200,
    )


@health_router.get("/models")
async def model_status(request: Request) -> Response:
    """Per-model load: which loaded models are busy and which are free."""
    registry = request.app.state.registry
    tracker = request.app.state.inflight_tracker

    model_load = tracker.counts_by_model()
    available = registry.model_ids()
    return JSONResponse(
        content={
            "availableModels": available,
            "inProgressModels": tracker.entries(),
            "freeModels": [model_id for model_id in available if not model_load.get(model_id)],
            "modelLoad": model_load,
        },
        status_code=200,
    )
