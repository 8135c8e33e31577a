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
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp

from lmstudio_router.log import init_logger

logger = init_logger(__name__)

LOADED_STATE = "loaded"
MODELS_ENDPOINT = "/api/v0/models"


@dataclass(frozen=True)
class ModelInfo:
    """A model as reported by the backend's model listing."""

    id: str
    state: str
    type: Optional[str] = None
    publisher: Optional[str] = None
    arch: Optional[str] = None
    quantization: Optional[str] = None
    max_context_length: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "ModelInfo":
        """Create a ModelInfo instance from one entry of the listing."""
        return cls(
            id=data.get("id"),
            state=data.get("state", "not-loaded"),
            type=data.get("type"),
            publisher=data.get("publisher"),
            arch=data.get("arch"),
            quantization=data.get("quantization"),
            max_context_length=data.get("max_context_length"),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "state": self.state,
            "type": self.type,
            "publisher": self.publisher,
            "arch": self.arch,
            "quantization": self.quantization,
            "max_context_length": self.max_context_length,
        }

    @property
    def is_loaded(self) -> bool:
        return self.state == LOADED_STATE


class ModelRegistry:
    """
    Snapshot of the models the backend reports as loaded.

    The snapshot is an immutable tuple that `refresh` replaces wholesale, so
    a reader holding the previous value never observes a partial list.
    """

    def __init__(
        self,
        backend_url: str,
        client: Callable[[], aiohttp.ClientSession],
        timeout: float = 300.0,
    ):
        """
        Args:
            backend_url: Base URL of the LM Studio server.
            client: Zero-argument callable returning the shared aiohttp
                session (an `AiohttpClientWrapper`).
            timeout: Total timeout in seconds for one listing request.
        """
        self.backend_url = backend_url.rstrip("/")
        self._client = client
        self.timeout = timeout
        self._models: Tuple[ModelInfo, ...] = ()
        self.last_refresh_time: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def models_url(self) -> str:
        return f"{self.backend_url}{MODELS_ENDPOINT}"

    def current_models(self) -> Tuple[ModelInfo, ...]:
        return self._models

    def model_ids(self) -> List[str]:
        return [model.id for model in self._models]

    def is_empty(self) -> bool:
        return not self._models

    def get_health(self) -> bool:
        """True when the most recent refresh reached the backend."""
        return self.last_refresh_time is not None and self.last_error is None

    def update_snapshot(self, models: List[ModelInfo]) -> Tuple[ModelInfo, ...]:
        """Replace the snapshot with the loaded subset of `models`."""
        previous_count = len(self._models)
        self._models = tuple(model for model in models if model.is_loaded and model.id)
        if len(self._models) != previous_count:
            logger.info(f"Loaded models: [{', '.join(self.model_ids())}]")
            logger.info(f"Total loaded models: {len(self._models)}")
        return self._models

    async def _fetch_model_list(self) -> List[ModelInfo]:
        session = self._client()
        async with session.get(
            self.models_url,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning(f"Unexpected model listing from {self.models_url}, treating as empty")
            return []
        return [ModelInfo.from_dict(entry) for entry in entries if isinstance(entry, dict)]

    async def refresh(self) -> Tuple[ModelInfo, ...]:
        """
        Query the backend and swap in the new snapshot.

        Any failure empties the registry instead of raising: the backend may
        simply be restarting, and the next tick will try again.
        """
        try:
            models = await self._fetch_model_list()
        except aiohttp.ClientConnectorError as e:
            self._fail(e)
            logger.error("LM Studio is not running or not accessible")
            return self._models
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._fail(e)
            return self._models

        self.last_error = None
        self.last_refresh_time = time.time()
        return self.update_snapshot(models)

    def _fail(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"Failed to load models from LM Studio: {message}")
        self.last_error = message
        self.last_refresh_time = time.time()
        self.update_snapshot([])
