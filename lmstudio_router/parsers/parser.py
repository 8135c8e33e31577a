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
import argparse
import logging
import os
from typing import Optional, Sequence

from lmstudio_router import utils
from lmstudio_router.version import __version__

logger = logging.getLogger(__name__)

# Every option falls back to the environment variable the LM Studio load
# balancer has always been configured with. Interval and timeout variables
# are in milliseconds, the command line flags in seconds.
DEFAULT_LM_STUDIO_URL = "http://localhost:1234"
DEFAULT_PORT = 4321
DEFAULT_REFRESH_INTERVAL_MS = 30000
DEFAULT_REQUEST_TIMEOUT_MS = 300000
DEFAULT_MAX_PAYLOAD_SIZE = "50mb"


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default


def _env_ms_as_seconds(name: str, default_ms: int) -> float:
    return _env_int(name, default_ms) / 1000.0


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() == "true"


def _size(value: str) -> int:
    try:
        return utils.parse_size(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def validate_args(args: argparse.Namespace) -> None:
    if not utils.validate_url(args.lm_studio_url):
        raise ValueError(f"Invalid LM Studio URL: {args.lm_studio_url}")
    if not (0 < args.port < 65536):
        raise ValueError("Port must be between 1 and 65535.")
    if args.model_refresh_interval <= 0:
        raise ValueError("Model refresh interval must be greater than 0.")
    if args.request_timeout <= 0:
        raise ValueError("Request timeout must be greater than 0.")
    if args.backend_connect_timeout <= 0:
        raise ValueError("Backend connect timeout must be greater than 0.")
    if args.max_payload_size <= 0:
        raise ValueError("Max payload size must be greater than 0.")
    if args.graceful_shutdown_timeout <= 0:
        raise ValueError("Graceful shutdown timeout must be greater than 0.")
    if not (0.0 <= args.sentry_traces_sample_rate <= 1.0):
        raise ValueError("Sentry traces sample rate must be between 0.0 and 1.0.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Least-loaded request router for models loaded in LM Studio."
    )
    parser.add_argument(
        "--lm-studio-url",
        type=str,
        default=os.environ.get("LM_STUDIO_URL", DEFAULT_LM_STUDIO_URL),
        help="Base URL of the LM Studio server (env: LM_STUDIO_URL). "
        f"Default: {DEFAULT_LM_STUDIO_URL}",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("LOAD_BALANCER_HOST", "0.0.0.0"),
        help="The host to run the server on (env: LOAD_BALANCER_HOST).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=_env_int("LOAD_BALANCER_PORT", DEFAULT_PORT),
        help=f"The port to run the server on (env: LOAD_BALANCER_PORT). Default: {DEFAULT_PORT}",
    )
    parser.add_argument(
        "--model-refresh-interval",
        type=float,
        default=_env_ms_as_seconds("MODEL_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL_MS),
        help="Seconds between polls of the LM Studio model list "
        "(env: MODEL_REFRESH_INTERVAL, in milliseconds). Default: 30",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=_env_ms_as_seconds("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_MS),
        help="Seconds to wait for data from LM Studio before failing a request; "
        "for streaming completions this bounds the gap between chunks "
        "(env: REQUEST_TIMEOUT, in milliseconds). Default: 300",
    )
    parser.add_argument(
        "--backend-connect-timeout",
        type=float,
        default=5.0,
        help="Timeout in seconds for establishing a connection to LM Studio (default: 5.0).",
    )
    parser.add_argument(
        "--max-payload-size",
        type=_size,
        default=os.environ.get("MAX_PAYLOAD_SIZE", DEFAULT_MAX_PAYLOAD_SIZE),
        help="Largest request body accepted, e.g. 50mb or 512kb "
        f"(env: MAX_PAYLOAD_SIZE). Default: {DEFAULT_MAX_PAYLOAD_SIZE}",
    )
    parser.add_argument(
        "--enable-request-logging",
        action="store_true",
        default=_env_flag("ENABLE_REQUEST_LOGGING"),
        help="Log every proxied request URL and when its connection closes "
        "(env: ENABLE_REQUEST_LOGGING=true).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.environ.get("LOG_LEVEL", "info").lower(),
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Log level (env: LOG_LEVEL). Default is 'info'.",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=os.environ.get("LOG_FORMAT", "text").lower(),
        choices=["text", "json"],
        help="Log format (env: LOG_FORMAT). Default is 'text'. Use 'json' for structured logging.",
    )
    parser.add_argument(
        "--graceful-shutdown-timeout",
        type=float,
        default=30.0,
        help="Maximum time in seconds to wait for in-flight requests to complete during shutdown (default: 30.0)",
    )
    parser.add_argument(
        "--sentry-dsn",
        type=str,
        default=os.environ.get("SENTRY_DSN"),
        help="Enables Sentry Error Reporting to the specified Data Source Name (env: SENTRY_DSN)",
    )
    parser.add_argument(
        "--sentry-traces-sample-rate",
        type=float,
        default=0.1,
        help="The sample rate for Sentry traces. Default is 0.1 (10%%)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show version and exit",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    args = build_parser().parse_args(argv)
    args.lm_studio_url = args.lm_studio_url.rstrip("/")
    validate_args(args)
    return args
