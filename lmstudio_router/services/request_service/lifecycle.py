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
from dataclasses import dataclass
from typing import Optional

from lmstudio_router.log import init_logger
from lmstudio_router.stats.inflight import InFlightTracker

logger = init_logger(__name__)

LIFECYCLE_STATE_KEY = "request_lifecycle"


@dataclass
class RequestContext:
    """Per-request routing state. Holds at most one assigned model."""

    url: str = ""
    assigned_model: Optional[str] = None

    def assign(self, model_id: str) -> None:
        if self.assigned_model is not None:
            raise RuntimeError(
                f"Request already assigned to {self.assigned_model}, cannot assign {model_id}"
            )
        self.assigned_model = model_id


class RequestLifecycle:
    """
    Releases a request's in-flight entry exactly once.

    Any of the termination signals (connection closed, response finished,
    stream error, explicit terminate) may fire, in any order and any number
    of times. Only the first one releases; the rest are no-ops.
    """

    def __init__(
        self,
        tracker: Optional[InFlightTracker],
        context: Optional[RequestContext] = None,
        log_requests: bool = False,
    ):
        self.tracker = tracker
        self.context = context if context is not None else RequestContext()
        self.log_requests = log_requests
        self._cleaned = False
        self.ended_by: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self._cleaned

    def on_close(self) -> None:
        if self.log_requests:
            logger.info(f"Client connection closed for request: {self.context.url}")
        self._cleanup("close")

    def on_finish(self) -> None:
        if self.log_requests:
            logger.info(f"Stream finished for request: {self.context.url}")
        self._cleanup("finish")

    def on_error(self, error: BaseException) -> None:
        logger.error(f"Stream error for request: {self.context.url}: {error}")
        self._cleanup("error")

    def terminate(self) -> None:
        self._cleanup("terminate")

    def _cleanup(self, reason: str) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        self.ended_by = reason

        model_id = self.context.assigned_model
        self.context.assigned_model = None
        if model_id is not None and self.tracker is not None:
            self.tracker.release(model_id)
            logger.debug(f"Request {self.context.url} ended by {reason}, released {model_id}")
