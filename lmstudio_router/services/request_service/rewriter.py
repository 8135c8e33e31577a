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
import enum
import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from lmstudio_router.log import init_logger
from lmstudio_router.model_registry import ModelRegistry
from lmstudio_router.routers.routing_logic import (
    NoModelsAvailableError,
    RoutingInterface,
)
from lmstudio_router.services.request_service.lifecycle import RequestContext
from lmstudio_router.stats.inflight import InFlightTracker

logger = init_logger(__name__)

RequestBody = Union[bytes, bytearray, str, Mapping[str, Any], None]


class RewriteOutcome(enum.Enum):
    REWRITTEN = "rewritten"
    EMPTY_BODY = "empty_body"
    MALFORMED_BODY = "malformed_body"
    NO_MODEL_FIELD = "no_model_field"
    NO_MODELS_AVAILABLE = "no_models_available"
    FAILED = "failed"


@dataclass(frozen=True)
class RewriteResult:
    """
    Outcome of a rewrite attempt.

    `body` is always safe to forward: the rewritten JSON when a model was
    assigned, otherwise the caller's body unchanged.
    """

    body: bytes
    outcome: RewriteOutcome
    requested_model: Optional[Any] = None
    selected_model: Optional[str] = None

    @property
    def rewritten(self) -> bool:
        return self.outcome is RewriteOutcome.REWRITTEN


def _serialize(body: Mapping[str, Any]) -> bytes:
    return json.dumps(body).encode("utf-8")


def _pass_through(body: RequestBody) -> bytes:
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return _serialize(body)


class ModelRewriter:
    """Replaces the caller's `model` with the least-loaded loaded model."""

    def __init__(
        self,
        registry: ModelRegistry,
        tracker: InFlightTracker,
        router: RoutingInterface,
    ):
        self.registry = registry
        self.tracker = tracker
        self.router = router

    def rewrite(self, body: RequestBody, context: RequestContext) -> RewriteResult:
        """
        Assign a model to the request and rewrite its body.

        Never raises: anything that prevents a rewrite yields a pass-through
        result and leaves the tracker untouched. Does not await, so selection
        and acquisition happen in one event loop turn.
        """
        try:
            return self._rewrite(body, context)
        except Exception as e:
            logger.error(f"Error processing request body: {e}")
            logger.debug(f"Body content type: {type(body).__name__}")
            return self._safe_pass_through(body, RewriteOutcome.FAILED)

    def _rewrite(self, body: RequestBody, context: RequestContext) -> RewriteResult:
        if not body:
            return RewriteResult(_pass_through(body), RewriteOutcome.EMPTY_BODY)

        if isinstance(body, Mapping):
            parsed = body
        else:
            try:
                parsed = json.loads(body)
            except (UnicodeDecodeError, ValueError) as e:
                logger.debug(f"Request body is not JSON, forwarding unchanged: {e}")
                return RewriteResult(_pass_through(body), RewriteOutcome.MALFORMED_BODY)

        requested_model = parsed.get("model") if isinstance(parsed, Mapping) else None
        if not requested_model:
            return RewriteResult(_pass_through(body), RewriteOutcome.NO_MODEL_FIELD)

        if self.registry.is_empty():
            return RewriteResult(
                _pass_through(body),
                RewriteOutcome.NO_MODELS_AVAILABLE,
                requested_model=requested_model,
            )

        try:
            selected = self.router.select(self.registry, self.tracker)
        except NoModelsAvailableError:
            return RewriteResult(
                _pass_through(body),
                RewriteOutcome.NO_MODELS_AVAILABLE,
                requested_model=requested_model,
            )

        rewritten = dict(parsed)
        rewritten["model"] = selected.id
        # the tracker is only touched once the new body exists
        new_body = _serialize(rewritten)

        context.assign(selected.id)
        self.tracker.acquire(selected.id)

        logger.info(f"Selected model: {selected.id} (replaced from {requested_model})")
        logger.debug(f"In-progress models: [{', '.join(self.tracker.entries())}]")
        return RewriteResult(
            new_body,
            RewriteOutcome.REWRITTEN,
            requested_model=requested_model,
            selected_model=selected.id,
        )

    @staticmethod
    def _safe_pass_through(body: RequestBody, outcome: RewriteOutcome) -> RewriteResult:
        try:
            return RewriteResult(_pass_through(body), outcome)
        except (TypeError, ValueError):
            # a mapping that cannot be serialized; nothing sensible to forward
            return RewriteResult(b"", outcome)
