"""logging.Handler that forwards records to an EventBus as LogEvents."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from athyr_agent.runtime.events import EventBus, LogEvent

# Attributes every LogRecord carries; anything else came in via ``extra=``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Return the attributes attached to *record* through ``extra=``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


def level_name(levelno: int) -> str:
    if levelno < logging.INFO:
        return "debug"
    if levelno < logging.WARNING:
        return "info"
    if levelno < logging.ERROR:
        return "warn"
    return "error"


class EventBusLogHandler(logging.Handler):
    """Emit every handled record onto *bus*.

    Parameters
    ----------
    bus:
        Destination event bus. Sends never block; full buffers drop.
    level:
        Minimum level forwarded.
    """

    def __init__(self, bus: EventBus, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.bus = bus

    def emit(self, record: logging.LogRecord) -> None:
        try:
            attrs = record_extras(record)
            attrs["logger"] = record.name
            self.bus.send(LogEvent(
                level=level_name(record.levelno),
                message=record.getMessage(),
                attrs=attrs,
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
            ))
        except Exception:
            self.handleError(record)
