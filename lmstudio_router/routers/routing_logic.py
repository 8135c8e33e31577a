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
import abc
from typing import Dict, Sequence

from lmstudio_router.log import init_logger
from lmstudio_router.model_registry import ModelInfo, ModelRegistry
from lmstudio_router.stats.inflight import InFlightTracker

logger = init_logger(__name__)


class NoModelsAvailableError(Exception):
    """Raised when a model must be chosen but the registry is empty."""

    def __init__(self, message: str = "No models available"):
        super().__init__(message)


class RoutingInterface(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def route_request(
        self, models: Sequence[ModelInfo], in_flight_counts: Dict[str, int]
    ) -> ModelInfo:
        """
        Pick the model that should serve the next request.

        Args:
            models: The registry snapshot, in listing order.
            in_flight_counts: Model id to number of requests in flight.

        Raises:
            NoModelsAvailableError: if `models` is empty.
        """
        raise NotImplementedError

    def select(self, registry: ModelRegistry, tracker: InFlightTracker) -> ModelInfo:
        return self.route_request(registry.current_models(), tracker.counts_by_model())


class LeastInFlightRouter(RoutingInterface):
    """
    Greedy least-loaded selection.

    Walks the models in listing order and keeps the first one with the
    strictly smallest in-flight count, so the earliest-listed model wins a
    tie. Request cost is not considered.
    """

    def route_request(
        self, models: Sequence[ModelInfo], in_flight_counts: Dict[str, int]
    ) -> ModelInfo:
        if not models:
            raise NoModelsAvailableError()

        selected = None
        min_requests = None
        for model in models:
            request_count = in_flight_counts.get(model.id, 0)
            if min_requests is None or request_count < min_requests:
                min_requests = request_count
                selected = model

        logger.debug(
            f"Selected model {selected.id} with {min_requests} in-progress requests"
        )
        return selected
