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
from collections import Counter
from typing import Dict, Iterable, List

from lmstudio_router.log import init_logger

logger = init_logger(__name__)


class InFlightTracker:
    """
    Ordered multiset of model ids, one entry per request currently assigned
    to that model.

    Entries carry no request identity. Each request remembers the single
    model it was assigned and hands it back through `release` exactly once.
    All mutation happens on the event loop thread, so no locking is done.
    """

    def __init__(self):
        self._entries: List[str] = []

    def acquire(self, model_id: str) -> None:
        self._entries.append(model_id)
        logger.debug(f"In-flight acquire {model_id}: [{', '.join(self._entries)}]")

    def release(self, model_id: str) -> bool:
        """
        Remove the first entry for `model_id`.

        Returns False when there is no such entry (never acquired, already
        released, or pruned by a registry refresh). That case is expected
        and is not an error.
        """
        try:
            self._entries.remove(model_id)
        except ValueError:
            logger.debug(f"No in-flight entry for {model_id}, nothing to release")
            return False
        logger.debug(f"Released model: {model_id}")
        logger.debug(f"In-progress models: [{', '.join(self._entries)}]")
        return True

    def count(self, model_id: str) -> int:
        return self._entries.count(model_id)

    def counts_by_model(self) -> Dict[str, int]:
        return dict(Counter(self._entries))

    def prune_unlisted(self, valid_ids: Iterable[str]) -> int:
        """
        Drop every entry whose model is no longer listed by the backend.

        Returns the number of entries removed.
        """
        valid = set(valid_ids)
        kept = []
        removed = 0
        for model_id in self._entries:
            if model_id in valid:
                kept.append(model_id)
            else:
                logger.warning(f"Cleaned up unavailable model: {model_id}")
                removed += 1
        self._entries = kept
        if removed:
            logger.info(f"Cleaned up {removed} unavailable models")
        return removed

    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
