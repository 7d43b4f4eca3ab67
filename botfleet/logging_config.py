"""Logging setup for botfleet.

Two output formats are supported: one JSON object per line for log
shippers, and a compact text form for terminals. Contextual fields passed
through ``extra=`` (host_id, tenant_id, phase, ...) are kept in both.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from botfleet.config import settings

# Attributes present on every LogRecord; anything else came from ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class FleetJSONFormatter(logging.Formatter):
    """Render records as single-line JSON."""

    def __init__(self, service: str | None = None):
        super().__init__()
        self.service = service or settings.service_name

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class FleetTextFormatter(logging.Formatter):
    """Human-readable single-line format with trailing context fields."""

    def __init__(self, service: str | None = None):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.service = service or settings.service_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        line = f"{timestamp} {record.levelname:<7} [{self.service}] {record.name}: {record.getMessage()}"
        extras = _record_extras(record)
        if extras:
            context = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
            line = f"{line} ({context})"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(service: str | None = None) -> None:
    """Configure the root logger from settings.

    Replaces any handlers already installed on the root logger so repeated
    calls (tests, reloads) do not duplicate output.
    """
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "text":
        handler.setFormatter(FleetTextFormatter(service))
    else:
        handler.setFormatter(FleetJSONFormatter(service))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    # asyncssh is chatty at INFO about every channel open/close
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
