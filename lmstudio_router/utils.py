import re
import resource
from typing import Optional

from fastapi.responses import JSONResponse

from lmstudio_router.log import init_logger

logger = init_logger(__name__)

_SIZE_UNITS = {
    "b": 1,
    "kb": 1024,
    "mb": 1024**2,
    "gb": 1024**3,
}


def validate_url(url: str) -> bool:
    """
    Validates the format of the given URL.

    Args:
        url (str): The URL to validate.

    Returns:
        bool: True if the URL is valid, False otherwise.
    """
    regex = re.compile(
        r"^(http|https)://"  # Protocol
        r"(([a-zA-Z0-9_-]+\.)+[a-zA-Z]{2,}|"  # Domain name
        r"[a-zA-Z0-9_-]+|"  # Or single-label host (localhost, compose service)
        r"\d{1,3}(\.\d{1,3}){3})"  # Or IPv4 address
        r"(:\d+)?"  # Optional port
        r"(/.*)?$"  # Optional path
    )
    return bool(regex.match(url))


def parse_size(size: str) -> int:
    """
    Parse a human readable byte size such as "50mb", "512kb" or "1048576".

    Units are binary (1kb = 1024 bytes) and case-insensitive.

    Raises:
        ValueError: if the string is not a size.
    """
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([kmg]?b)?\s*", str(size).lower())
    if not match:
        raise ValueError(f"Invalid size: {size!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit or "b"])


# Adapted from: https://github.com/sgl-project/sglang/blob/v0.4.1/python/sglang/srt/utils.py#L630 # noqa: E501
def set_ulimit(target_soft_limit=65535):
    resource_type = resource.RLIMIT_NOFILE
    current_soft, current_hard = resource.getrlimit(resource_type)

    if current_soft < target_soft_limit:
        try:
            resource.setrlimit(resource_type, (target_soft_limit, current_hard))
        except ValueError as e:
            logger.warning(
                "Found ulimit of %s and failed to automatically increase "
                "with error %s. This can cause fd limit errors like "
                "`OSError: [Errno 24] Too many open files`. Consider "
                "increasing with ulimit -n",
                current_soft,
                e,
            )


def max_rss() -> int:
    """Peak resident set size of this process, as reported by getrusage."""
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss


def error_response(
    status_code: int,
    error: str,
    code: str,
    message: Optional[str] = None,
    request_id: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """
    Build the JSON error body shared by every failure the router reports.

    `code` is a stable machine-readable token (`NO_MODELS_AVAILABLE`,
    `ETIMEDOUT`, ...) so callers can tell capacity problems from transport
    failures without parsing `error`.
    """
    content = {"error": error, "code": code}
    if message is not None:
        content["message"] = message
    response_headers = dict(headers or {})
    if request_id is not None:
        response_headers["X-Request-Id"] = request_id
    return JSONResponse(status_code=status_code, content=content, headers=response_headers)
