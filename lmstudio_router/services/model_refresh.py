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
from typing import Optional

from lmstudio_router.log import init_logger
from lmstudio_router.model_registry import ModelRegistry
from lmstudio_router.stats.inflight import InFlightTracker

logger = init_logger(__name__)


class ModelRefreshService:
    """
    Periodically re-reads the backend's model list and drops in-flight
    entries for models that are no longer loaded.

    Runs as a task on the server's own event loop: the registry and tracker
    are shared with request handlers and must only be touched from that
    loop.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        tracker: InFlightTracker,
        refresh_interval: float,
    ):
        self.registry = registry
        self.tracker = tracker
        self.refresh_interval = refresh_interval
        self._running = False
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def refresh_once(self) -> int:
        """
        Refresh the registry, then prune the tracker against it.

        Returns the number of stale in-flight entries removed.
        """
        logger.debug("Updating model list...")
        await self.registry.refresh()
        removed = self.tracker.prune_unlisted(self.registry.model_ids())
        logger.debug(
            f"Model update completed. Available models: {len(self.registry.current_models())}"
        )
        return removed

    async def refresh_loop(self) -> None:
        logger.debug(
            f"Starting model updater with {self.refresh_interval}s interval"
        )
        while self._running:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in model refresh loop: {e}", exc_info=True)

    def start(self) -> None:
        if self._running:
            logger.warning("Model updater already running")
            return
        self._running = True
        self._refresh_task = asyncio.get_running_loop().create_task(self.refresh_loop())
        logger.info(
            f"Model updater started - checking for new models every {self.refresh_interval}s"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None
        logger.info("Model updater stopped")
