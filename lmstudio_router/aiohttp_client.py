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
import aiohttp
from aiohttp import TCPConnector
from aiohttp.resolver import AsyncResolver

from lmstudio_router.log import init_logger

logger = init_logger(__name__)

# DNS cache TTL in seconds
DNS_CACHE_TTL = 300


class AiohttpClientWrapper:
    """
    Holds the aiohttp session used for control-plane calls to the backend
    (the periodic model listing). Proxy traffic goes through httpx instead.
    """

    async_client = None

    def start(self, connection_limit: int = 10):
        """Instantiate the client. Call from the FastAPI lifespan."""
        try:
            resolver = AsyncResolver()
            logger.debug("Using AsyncResolver (aiodns) for DNS resolution")
        except Exception as e:
            logger.warning(f"Failed to create AsyncResolver: {e}, using default resolver")
            resolver = None

        connector = TCPConnector(
            limit=connection_limit,
            ttl_dns_cache=DNS_CACHE_TTL,
            keepalive_timeout=60,
            resolver=resolver,
        )
        self.async_client = aiohttp.ClientSession(connector=connector)
        logger.info(
            f"aiohttp ClientSession instantiated (limit={connection_limit}, "
            f"dns_ttl={DNS_CACHE_TTL}s). Id {id(self.async_client)}"
        )

    @property
    def started(self) -> bool:
        return self.async_client is not None and not self.async_client.closed

    async def stop(self):
        """Gracefully shutdown. Call from the FastAPI lifespan."""
        if self.async_client is None:
            return
        await self.async_client.close()
        logger.info(f"aiohttp ClientSession closed. Id {id(self.async_client)}")
        self.async_client = None

    def __call__(self) -> aiohttp.ClientSession:
        """Calling the instantiated AiohttpClientWrapper returns the wrapped session."""
        assert self.async_client is not None
        return self.async_client
