"""
Middleware for graceful shutdown handling.

This middleware:
1. Counts every proxied request while it is in flight
2. Returns 503 Service Unavailable for new requests once shutdown is initiated
3. Lets the status endpoints keep responding during shutdown
"""

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from lmstudio_router.log import init_logger
from lmstudio_router.utils import error_response

logger = init_logger(__name__)

# Status endpoints are neither counted nor rejected
SHUTDOWN_EXEMPT_PATHS = {
    "/health",
    "/models",
    "/version",
}


class GracefulShutdownMiddleware:
    """
    When shutdown is initiated new proxy requests receive 503, in-flight ones
    are allowed to complete, and the status endpoints keep working.

    Pure ASGI so that a request only counts as completed once its streamed
    body has been fully sent.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        manager = getattr(scope["app"].state, "shutdown_manager", None)
        if scope["type"] != "http" or manager is None:
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if path in SHUTDOWN_EXEMPT_PATHS:
            await self.app(scope, receive, send)
            return

        if manager.is_shutting_down:
            logger.info(f"Rejecting request to {path} - server is shutting down")
            request_id = Headers(scope=scope).get("x-request-id")
            response = error_response(
                503,
                "Service is shutting down. Please retry shortly.",
                "SHUTTING_DOWN",
                request_id=request_id,
                headers={"Retry-After": "5", "Connection": "close"},
            )
            await response(scope, receive, send)
            return

        manager.request_started()
        try:
            await self.app(scope, receive, send)
        finally:
            manager.request_completed()
