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
from typing import Optional

import httpx

from lmstudio_router.log import init_logger

logger = init_logger(__name__)


class HttpxClientWrapper:
    """
    Wrapper for the httpx AsyncClient that carries proxied traffic.

    HTTP/2 is enabled so many concurrent streaming completions can share
    one connection to the backend when it supports it.
    """

    async_client = None
    connect_timeout: float = 5.0
    read_timeout: Optional[float] = 300.0

    def start(
        self,
        connect_timeout: float = 5.0,
        read_timeout: Optional[float] = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Instantiate the client. Call from the FastAPI lifespan.

        Args:
            connect_timeout: Timeout in seconds for establishing connections.
            read_timeout: Timeout in seconds between received chunks. For a
                streaming completion this bounds the gap between tokens.
                None disables it.
            transport: Optional transport to use instead of the pooled
                HTTP/2 one (tests pass an `httpx.MockTransport`).
        """
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        if transport is None:
            transport = httpx.AsyncHTTPTransport(
                http2=True,
                limits=httpx.Limits(
                    max_connections=200,
                    max_keepalive_connections=100,
                    keepalive_expiry=120,
                ),
            )

        # write/pool are fixed; read doubles as the overall request timeout
        timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=30.0,
            pool=10.0,
        )

        self.async_client = httpx.AsyncClient(transport=transport, timeout=timeout)
        logger.info(
            f"httpx AsyncClient instantiated. "
            f"Timeouts: connect={connect_timeout}s, read={read_timeout}s. "
            f"Id {id(self.async_client)}"
        )

    async def stop(self):
        """Gracefully shutdown. Call from the FastAPI lifespan."""
        if self.async_client:
            logger.info(f"Closing httpx AsyncClient. Id: {id(self.async_client)}")
            await self.async_client.aclose()
            self.async_client = None
            logger.info("httpx AsyncClient closed")

    def __call__(self) -> httpx.AsyncClient:
        """Calling the instantiated HttpxClientWrapper returns the wrapped singleton."""
        assert self.async_client is not None
        return self.async_client
