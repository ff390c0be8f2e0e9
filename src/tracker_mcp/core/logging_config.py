"""Logging setup with request-context injection.

Every record that passes through a tracker-mcp handler is stamped with the
active correlation and client IDs, so the lines emitted by a cascading
delete or a long batch can be grouped per tool call.

Usage:
    from tracker_mcp.core.logging_config import configure_logging, get_logger

    configure_logging(level="DEBUG", format="human")
    logger = get_logger(__name__)
"""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO, Union

from tracker_mcp.core.context import (
    get_client_id,
    get_correlation_id,
    get_start_time,
)

__all__ = [
    "ContextFilter",
    "StructuredFormatter",
    "HumanReadableFormatter",
    "configure_logging",
    "get_logger",
]

ROOT_LOGGER = "tracker_mcp"

# LogRecord attributes that are never copied into the "extra" block.
_RESERVED_ATTRS = frozenset(
    {
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
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
        "correlation_id",
        "client_id",
        "elapsed_ms",
    }
)


class ContextFilter(logging.Filter):
    """Inject correlation_id, client_id and elapsed_ms into each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        record.client_id = get_client_id() or "anonymous"

        start_time = get_start_time()
        if start_time > 0:
            record.elapsed_ms = round((time.time() - start_time) * 1000, 2)
        else:
            record.elapsed_ms = 0.0
        return True


class StructuredFormatter(logging.Formatter):
    """Newline-delimited JSON formatter.

    Example output:
        {"timestamp":"2025-01-15T10:30:45.123+00:00","level":"INFO",
         "logger":"tracker_mcp.core.deletion","message":"Deleted issue PROJ-4",
         "correlation_id":"req_a1b2c3d4e5f6","client_id":"anonymous",
         "elapsed_ms":12.5}
    """

    def __init__(self, *, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
            "client_id": getattr(record, "client_id", "anonymous"),
            "elapsed_ms": getattr(record, "elapsed_ms", 0.0),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = self._collect_extra(record)
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str)

    @staticmethod
    def _collect_extra(record: logging.LogRecord) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                extra[key] = value
            except (TypeError, ValueError):
                extra[key] = str(value)
        return extra


class HumanReadableFormatter(logging.Formatter):
    """Plain formatter: ``2025-01-15 10:30:45 [INFO] [req_x] core.sequence: msg``."""

    def __init__(self, *, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        if self.include_timestamp:
            parts.append(
                datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
            )
        parts.append(f"[{record.levelname}]")

        corr_id = getattr(record, "correlation_id", "-")
        if corr_id and corr_id != "-":
            parts.append(f"[{corr_id}]")

        logger_name = record.name
        prefix = ROOT_LOGGER + "."
        if logger_name.startswith(prefix):
            logger_name = logger_name[len(prefix) :]
        parts.append(f"{logger_name}:")
        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result


def configure_logging(
    *,
    level: Union[int, str] = logging.INFO,
    format: str = "structured",
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Configure the ``tracker_mcp`` logger.

    Logs go to stderr by default; stdout carries the MCP stdio transport.

    Args:
        level: Log level (default: INFO)
        format: "structured" for JSON lines, "human" for readable output
        stream: Output stream (default: stderr)

    Returns:
        The configured ``tracker_mcp`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    if format == "structured":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())
    handler.addFilter(ContextFilter())

    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``tracker_mcp`` namespace."""
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
