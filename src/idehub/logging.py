"""Logging setup for the IDEHub control plane.

Records carry a ``LogEvent`` in ``extra={"event": ...}`` and usually the
``instance_id`` they concern. Both formats surface those two fields:

- text: ``<time> <level> <logger> [<event> <instance_id>] <message>``
- json: one object per line for log aggregation
"""

import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from pythonjsonlogger import json as jsonlogger

from idehub.config import LoggingConfig

# Loggers that would drown instance events at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")


def _event_name(record: logging.LogRecord) -> str | None:
    event = getattr(record, "event", None)
    return str(event) if event is not None else None


class EventThrottleFilter(logging.Filter):
    """Suppress repeats of the same event for the same instance.

    The maintenance sweep and readiness probes report the same condition
    (stuck instance, missing network, failed probe) once per cycle. A
    record is dropped if an identical (event, instance, message) key was
    let through less than ``window`` seconds ago. Errors always pass.
    """

    def __init__(self, window: float = 30.0, max_keys: int = 2000) -> None:
        super().__init__()
        self._window = window
        self._max_keys = max_keys
        self._seen: dict[tuple, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR or self._window <= 0:
            return True

        key = (
            _event_name(record) or record.name,
            getattr(record, "instance_id", None),
            record.getMessage(),
        )
        now = time.monotonic()
        last = self._seen.get(key)
        if last is not None and now - last < self._window:
            return False
        self._seen[key] = now

        if len(self._seen) > self._max_keys:
            cutoff = now - self._window
            self._seen = {k: t for k, t in self._seen.items() if t >= cutoff}
        return True


class EventTextFormatter(logging.Formatter):
    """Human-readable lines with the event tag in brackets."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(tag)s%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        parts = [p for p in (_event_name(record), getattr(record, "instance_id", None)) if p]
        record.tag = f"[{' '.join(parts)}] " if parts else ""
        return super().format(record)


class EventJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with the event name and service identity."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service = service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service
        event = _event_name(record)
        if event is not None:
            log_record["event"] = event
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        log_record.pop("color_message", None)


def setup_logging(config: LoggingConfig) -> None:
    """Install the stdout handler on the root and uvicorn loggers."""
    if config.format == "json":
        formatter: logging.Formatter = EventJsonFormatter(config.service_name)
    else:
        formatter = EventTextFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(EventThrottleFilter(window=config.throttle_seconds))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for name in ("uvicorn", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = False
        uv_logger.addHandler(handler)
    logging.getLogger("uvicorn.access").disabled = True

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
