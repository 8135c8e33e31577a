"""
Graceful shutdown for the router.

On SIGTERM/SIGINT the router:
1. Stops accepting new proxy requests (status endpoints keep answering)
2. Waits for in-flight requests to finish, up to a timeout
3. Asks the uvicorn server to exit
"""

import asyncio
import signal
from typing import Optional

from lmstudio_router.log import init_logger

logger = init_logger(__name__)


class GracefulShutdownManager:
    """
    Counts proxied requests and coordinates draining them on shutdown.

    Everything here runs on the server's event loop (signal handlers are
    registered with `loop.add_signal_handler`), so plain counters suffice.
    """

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Maximum time to wait for in-flight requests to complete (in seconds)
        """
        self._timeout = timeout
        self._is_shutting_down = False
        self._in_flight_requests = 0
        self._total_requests = 0
        self._all_requests_done = asyncio.Event()
        self._all_requests_done.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    @property
    def in_flight_requests(self) -> int:
        return self._in_flight_requests

    @property
    def total_requests(self) -> int:
        """Number of proxied requests accepted since startup."""
        return self._total_requests

    def request_started(self):
        self._total_requests += 1
        self._in_flight_requests += 1
        self._all_requests_done.clear()
        logger.debug(f"Request started. In-flight requests: {self._in_flight_requests}")

    def request_completed(self):
        self._in_flight_requests = max(0, self._in_flight_requests - 1)
        logger.debug(f"Request completed. In-flight requests: {self._in_flight_requests}")
        if self._in_flight_requests == 0:
            self._all_requests_done.set()

    def initiate_shutdown(self) -> bool:
        """
        Start rejecting new requests.

        Returns False if shutdown was already in progress.
        """
        if self._is_shutting_down:
            logger.warning("Shutdown already initiated")
            return False
        self._is_shutting_down = True
        logger.info(
            f"Graceful shutdown initiated. Waiting for {self._in_flight_requests} in-flight requests to complete..."
        )
        return True

    async def wait_for_requests(self) -> bool:
        """
        Wait for all in-flight requests to complete.

        Returns:
            True if all requests completed within timeout, False otherwise.
        """
        try:
            await asyncio.wait_for(self._all_requests_done.wait(), timeout=self._timeout)
            logger.info("All in-flight requests completed successfully")
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Graceful shutdown timeout ({self._timeout}s) reached with {self._in_flight_requests} "
                f"requests still in flight. Forcing shutdown."
            )
            return False


async def _drain_and_exit(manager: GracefulShutdownManager, server) -> None:
    await manager.wait_for_requests()
    server.should_exit = True


def setup_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    manager: GracefulShutdownManager,
    server=None,
) -> None:
    """
    Set up signal handlers for graceful shutdown.

    Args:
        loop: The running event loop.
        manager: The shutdown manager to notify.
        server: The `uvicorn.Server` to stop once requests have drained.
            Without one (e.g. when launched through the uvicorn CLI) uvicorn
            keeps its own signal handling.
    """
    if server is None:
        logger.info("No server handle, leaving signal handling to uvicorn")
        return

    def signal_handler(signum: int):
        sig_name = signal.Signals(signum).name
        if not manager.initiate_shutdown():
            logger.warning(f"Received {sig_name} again, forcing exit")
            server.force_exit = True
            server.should_exit = True
            return
        logger.info(f"Received {sig_name}, shutting down gracefully")
        loop.create_task(_drain_and_exit(manager, server))

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, signal_handler, signum)

    logger.info("Signal handlers registered for graceful shutdown (SIGTERM, SIGINT)")
