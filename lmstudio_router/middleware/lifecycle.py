"""
Middleware that arms per-request in-flight cleanup.

Written as a plain ASGI middleware rather than a `BaseHTTPMiddleware`: the
latter returns as soon as the response starts, while cleanup here has to
wait until the last body chunk has been sent or the client has gone away.
"""

from starlette.requests import ClientDisconnect
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from lmstudio_router.log import init_logger
from lmstudio_router.services.request_service.lifecycle import (
    LIFECYCLE_STATE_KEY,
    RequestContext,
    RequestLifecycle,
)

logger = init_logger(__name__)


class RequestLifecycleMiddleware:
    """
    Creates a `RequestLifecycle` for every HTTP request and wires it to the
    connection:

    - an `http.disconnect` message fires `on_close`
    - the final `http.response.body` message fires `on_finish`
    - a `ClientDisconnect` escaping the app fires `on_close`
    - any other exception escaping the app fires `on_error`
    - leaving the middleware fires `terminate` whatever happened
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope["app"].state
        args = getattr(state, "args", None)
        lifecycle = RequestLifecycle(
            tracker=getattr(state, "inflight_tracker", None),
            context=RequestContext(url=scope.get("path", "")),
            log_requests=bool(getattr(args, "enable_request_logging", False)),
        )
        scope.setdefault("state", {})[LIFECYCLE_STATE_KEY] = lifecycle

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.disconnect":
                lifecycle.on_close()
            return message

        async def send_wrapper(message: Message) -> None:
            await send(message)
            if message["type"] == "http.response.body" and not message.get(
                "more_body", False
            ):
                lifecycle.on_finish()

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        except ClientDisconnect:
            # client hung up mid-response
            lifecycle.on_close()
        except Exception as e:
            lifecycle.on_error(e)
            raise
        finally:
            lifecycle.terminate()
