from lmstudio_router.middleware.graceful_shutdown import GracefulShutdownMiddleware
from lmstudio_router.middleware.lifecycle import RequestLifecycleMiddleware

__all__ = ["GracefulShutdownMiddleware", "RequestLifecycleMiddleware"]
