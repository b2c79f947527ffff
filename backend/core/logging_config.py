"""Structured JSON logging for the extractor service and CLI."""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

__all__ = ["configure_logging", "JSONLogFormatter"]

SERVICE_NAME = "subscription-extractor"

_configure_lock = threading.Lock()
_LOGGING_CONFIGURED = False


class JSONLogFormatter(logging.Formatter):
    """Render log records as one JSON object per line (Cloud Logging friendly)."""

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
            "exc_info",
            "exc_text",
            "stack_info",
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
        }
    )

    def __init__(self, service: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - default docstring is sufficient
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "service": self.service,
            "logger": record.name,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        # Anything passed through ``extra=`` ends up as a record attribute.
        for key, value in record.__dict__.items():
            if key not in self._RESERVED_ATTRS and key not in entry:
                entry[key] = value

        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = record.stack_info

        return json.dumps(entry, default=str, ensure_ascii=False)


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = logging.getLevelName(name)
    # getLevelName echoes a string back for unknown names
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """Install the JSON handler on the root logger, once per process."""

    global _LOGGING_CONFIGURED
    with _configure_lock:
        if _LOGGING_CONFIGURED:
            return

        root_logger = logging.getLogger()
        root_logger.setLevel(_resolve_level(level))

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(JSONLogFormatter())
        root_logger.addHandler(handler)

        logging.captureWarnings(True)
        _LOGGING_CONFIGURED = True
