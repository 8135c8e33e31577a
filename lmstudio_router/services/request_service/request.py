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

# --- Request Processing & Routing ---
import asyncio
import time
import uuid

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from lmstudio_router.log import init_logger
from lmstudio_router.services.request_service.lifecycle import (
    LIFECYCLE_STATE_KEY,
    RequestContext,
    RequestLifecycle,
)
from lmstudio_router.services.request_service.rewriter import RewriteOutcome
from lmstudio_router.utils import error_response

logger = init_logger(__name__)

# nginx's "client closed request"; never seen by a client that is gone
CLIENT_CLOSED_REQUEST = 499

_HOP_BY_HOP_HEADERS = {
    "host",
    "connection",
    "keep-alive",
    "proxy-connection",
    "transfer-encoding",
    "content-length",
    "upgrade",
    "te",  # codespell:ignore
    "trailer",
}

_STREAMING_RESPONSE_HEADERS = {
    "cache-control": "no-cache",
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "Cache-Control",
}


class PayloadTooLargeError(Exception):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Request body of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class BackendRequestError(Exception):
    """A failure talking to the backend, with the response it maps to."""

    status_code = 500
    error = "Proxy error"
    code = "UNKNOWN_ERROR"


class BackendTimeoutError(BackendRequestError):
    status_code = 504
    error = "Gateway timeout - request too large or took too long"
    code = "ETIMEDOUT"


class BackendResetError(BackendRequestError):
    status_code = 504
    error = "Gateway timeout - request too large or took too long"
    code = "ECONNRESET"


class BackendConnectionError(BackendRequestError):
    status_code = 502
    error = "Bad gateway - LM Studio is not reachable"
    code = "ECONNREFUSED"


def _translate_transport_error(e: httpx.HTTPError, backend_url: str) -> BackendRequestError:
    if isinstance(e, httpx.TimeoutException):
        return BackendTimeoutError(
            f"Backend {backend_url} timed out ({type(e).__name__}): {e}"
        )
    if isinstance(e, httpx.ConnectError):
        return BackendConnectionError(f"Backend {backend_url} refused connection: {e}")
    if isinstance(e, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        return BackendResetError(f"Backend {backend_url} reset the connection: {e}")
    return BackendRequestError(f"Backend {backend_url} failed: {e}")


def get_request_lifecycle(request: Request) -> RequestLifecycle:
    """
    Return the lifecycle armed by `RequestLifecycleMiddleware`, or arm one
    here when the app runs without it.
    """
    lifecycle = request.scope.setdefault("state", {}).get(LIFECYCLE_STATE_KEY)
    if lifecycle is None:
        args = getattr(request.app.state, "args", None)
        lifecycle = RequestLifecycle(
            tracker=request.app.state.inflight_tracker,
            context=RequestContext(url=request.url.path),
            log_requests=bool(getattr(args, "enable_request_logging", False)),
        )
        request.scope["state"][LIFECYCLE_STATE_KEY] = lifecycle
    return lifecycle


async def read_request_body(request: Request, max_size: int) -> bytes:
    """Read the whole body, refusing it as soon as it exceeds `max_size`."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_size:
        raise PayloadTooLargeError(int(declared), max_size)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_size:
            raise PayloadTooLargeError(len(body), max_size)
    return bytes(body)


def _build_backend_url(backend_url: str, request: Request) -> str:
    url = backend_url + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


async def process_request(
    request: Request,
    body: bytes,
    backend_url: str,
    request_id: str,
    lifecycle: RequestLifecycle,
):
    """
    Forward a request to the backend and stream its response.

    Args:
        request(Request): Request object.
        body: The (possibly rewritten) body to send.
        backend_url: Base URL of the backend.
        request_id: A unique identifier for the request.
        lifecycle: The request's lifecycle; told about stream errors and
            client disconnects seen here.

    Yields:
        The response headers and status code, followed by the raw response
        content chunk by chunk.

    Raises:
        BackendRequestError: if the backend cannot be reached or the
            connection fails, before or during streaming.
    """
    start_time = time.time()

    headers = httpx.Headers(
        {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP_HEADERS}
    )
    # assignment replaces the caller's value whatever its case
    headers["Accept"] = "text/event-stream"
    headers["Cache-Control"] = "no-cache"
    headers["X-Request-Id"] = request_id

    client = request.app.state.httpx_client_wrapper()
    target_url = _build_backend_url(backend_url, request)
    logger.debug(f"[{request_id}] {request.method} {target_url}")

    total_len = 0
    try:
        async with client.stream(
            method=request.method,
            url=target_url,
            headers=headers,
            content=body,
        ) as backend_response:
            # aiter_bytes decodes the body, so content-encoding is not forwarded
            response_headers = {
                k.lower(): v
                for k, v in backend_response.headers.items()
                if k.lower() not in _HOP_BY_HOP_HEADERS and k.lower() != "content-encoding"
            }
            response_headers.update(_STREAMING_RESPONSE_HEADERS)
            response_headers["x-request-id"] = request_id
            yield response_headers, backend_response.status_code

            async for chunk in backend_response.aiter_bytes():
                total_len += len(chunk)
                yield chunk

    except (GeneratorExit, asyncio.CancelledError):
        lifecycle.on_close()
        raise
    except httpx.HTTPError as e:
        error = _translate_transport_error(e, backend_url)
        logger.error(f"[{request_id}] {error}")
        lifecycle.on_error(error)
        raise error from e

    logger.debug(
        f"[{request_id}] streamed {total_len} bytes in {(time.time() - start_time) * 1000:.2f}ms"
    )


async def route_general_request(request: Request) -> Response:
    """
    Route the incoming request to the backend and stream the response back.

    The body's `model` is replaced with the least-loaded loaded model before
    forwarding. Bodies that cannot be rewritten (not JSON, no `model`) are
    forwarded unchanged. A body that names a model while no model is loaded
    is refused with 503 rather than forwarded.

    Args:
        request (Request): The incoming HTTP request.

    Returns:
        StreamingResponse streaming the backend response, or a JSON error.
    """
    state = request.app.state
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    lifecycle = get_request_lifecycle(request)

    try:
        body = await read_request_body(request, state.args.max_payload_size)
    except PayloadTooLargeError as e:
        logger.error(f"Proxy error: {e}")
        return error_response(
            413, "Request entity too large", "PAYLOAD_TOO_LARGE", str(e), request_id
        )
    except ClientDisconnect:
        lifecycle.on_close()
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    if lifecycle.finished:
        # client went away while the body was being read
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    if lifecycle.log_requests:
        logger.info(f"Request URL: {request.url.path}")

    result = state.request_rewriter.rewrite(body, lifecycle.context)
    if result.outcome is RewriteOutcome.NO_MODELS_AVAILABLE:
        logger.warning(
            f"Rejecting request {request_id} for model {result.requested_model}: no models loaded"
        )
        return error_response(
            503,
            "No models available",
            "NO_MODELS_AVAILABLE",
            "LM Studio reports no loaded models. Load a model and retry.",
            request_id,
        )

    stream_generator = process_request(
        request, result.body, state.registry.backend_url, request_id, lifecycle
    )
    try:
        headers, status = await anext(stream_generator)
    except BackendRequestError as e:
        logger.error(f"Proxy error: {e}")
        return error_response(e.status_code, e.error, e.code, str(e), request_id)

    return StreamingResponse(
        stream_generator,
        status_code=status,
        headers=headers,
        background=BackgroundTask(lifecycle.on_finish),
    )
