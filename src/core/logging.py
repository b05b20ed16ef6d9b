"""
Centralized logging configuration.
Provides structured logging with support for JSON and plain text output.
"""

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from functools import cache
from pathlib import Path
from typing import Any

from .config import settings

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "getMessage", "message", "taskName",
})


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields, e.g. table/partition context
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    name: str,
    level: str | None = None,
    log_file: Path | None = None,
    use_json: bool | None = None,
) -> logging.Logger:
    """
    Set up logging for a module.

    Args:
        name: Logger name (usually __name__)
        level: Log level (default from settings)
        log_file: Log file path (default from settings)
        use_json: Use JSON format (default from settings)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    level = level or settings.log_level
    log_file = log_file or settings.log_file_path
    use_json = use_json if use_json is not None else (settings.log_format == "json")

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    logger.handlers.clear()

    formatter: JSONFormatter | logging.Formatter
    if use_json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


@cache
def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger with default configuration.
    Cached to avoid recreating loggers.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return setup_logging(name)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps a fixed context (e.g. ``table``) onto every record.
    Per-call ``extra`` values such as ``partition`` are merged over the context.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger_with_context(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a logger that adds ``context`` to every record.

    Args:
        name: Logger name
        **context: Record attributes, e.g. ``table="events"``
    """
    return ContextLoggerAdapter(get_logger(name), context)
