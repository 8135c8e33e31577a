import json
import logging
import sys
from datetime import datetime
from logging import Logger
from typing import Any, Dict

PACKAGE_LOGGER = "lmstudio_router"

LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "message",
}


def build_format(color):
    reset = "\x1b[0m"
    underline = "\x1b[3m"
    return f"{color}[%(asctime)s] %(levelname)s:{reset} %(message)s {underline}(%(filename)s:%(lineno)d:%(name)s){reset}"


class CustomFormatter(logging.Formatter):
    grey = "\x1b[1m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"

    FORMATTERS = {
        logging.DEBUG: logging.Formatter(build_format(grey)),
        logging.INFO: logging.Formatter(build_format(green)),
        logging.WARNING: logging.Formatter(build_format(yellow)),
        logging.ERROR: logging.Formatter(build_format(red)),
        logging.CRITICAL: logging.Formatter(build_format(bold_red)),
    }

    def format(self, record):
        formatter = self.FORMATTERS.get(record.levelno, self.FORMATTERS[logging.INFO])
        return formatter.format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with any `extra=` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "filename": record.filename,
            "line_number": record.lineno,
            "function": record.funcName,
            "exception": (
                self.formatException(record.exc_info) if record.exc_info else None
            ),
        }
        if record.stack_info:
            log_entry["stack_trace"] = self.formatStack(record.stack_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class MaxLevelFilter(logging.Filter):
    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _build_handlers(log_level: int, log_format: str):
    formatter = JsonFormatter() if log_format.lower() == "json" else CustomFormatter()

    # DEBUG..INFO to stdout, WARNING and above to stderr
    stdout_stream = logging.StreamHandler(sys.stdout)
    stdout_stream.setLevel(log_level)
    stdout_stream.setFormatter(formatter)
    stdout_stream.addFilter(MaxLevelFilter(logging.INFO))

    error_stream = logging.StreamHandler(sys.stderr)
    error_stream.setLevel(max(log_level, logging.WARNING))
    error_stream.setFormatter(formatter)
    return [stdout_stream, error_stream]


def init_logger(name: str, log_level=logging.DEBUG, log_format: str = "text") -> Logger:
    """
    Initialize a logger with specified format and level.

    Args:
        name: Logger name
        log_level: Logging level (default: DEBUG)
        log_format: Log format - "text" or "json" (default: "text")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.handlers.clear()
    for handler in _build_handlers(log_level, log_format):
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def configure_logging(level_name: str, log_format: str) -> Logger:
    """
    Apply the configured level and format to every package logger.

    Module loggers are created at import time with default settings, so they
    are re-initialized here once the command line has been parsed. The
    uvicorn logger is pointed at the same handlers so server and router
    output share one format.
    """
    log_level = LOG_LEVELS.get(level_name.lower(), logging.INFO)
    root_logger = init_logger(PACKAGE_LOGGER, log_level=log_level, log_format=log_format)

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(PACKAGE_LOGGER + "."):
            init_logger(name, log_level=log_level, log_format=log_format)

    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.setLevel(log_level)
        for handler in root_logger.handlers:
            uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False

    return root_logger
