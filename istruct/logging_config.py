"""Structured logging for the istruct agent.

Every log line carries the service name and host so lines from several hosts
can be merged by a log shipper without losing their origin.
"""

from __future__ import annotations

import json
import logging
import socket
import sys
from datetime import datetime, timezone

from istruct.config import settings

SERVICE_NAME = "istruct"

# Attributes every LogRecord has; anything else was passed via extra=.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

# Libraries that are chatty at INFO.
_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "asyncio")


class IstructJSONFormatter(logging.Formatter):
    """Format records as one JSON object per line."""

    def __init__(self, host: str | None = None):
        super().__init__()
        self.host = host or socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
            "host": self.host,
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class IstructTextFormatter(logging.Formatter):
    """Human-readable single-line format for interactive use."""

    def __init__(self, host: str | None = None):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(host)s] %(name)s: %(message)s",
        )
        self.host = host or socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        record.host = self.host
        return super().format(record)


def setup_logging(host: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Level and format come from settings.log_level and settings.log_format.
    Calling it again replaces the handler rather than adding another.
    """
    if settings.log_format == "text":
        formatter: logging.Formatter = IstructTextFormatter(host=host)
    else:
        formatter = IstructJSONFormatter(host=host)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
