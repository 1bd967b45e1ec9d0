"""Tests for athyr_agent.runtime.events and log_handler."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

import pytest

from athyr_agent.runtime.events import (
    Direction,
    EventBus,
    LogEvent,
    MessageEvent,
    StatusEvent,
    ToolEvent,
    ToolInfo,
    ToolsAvailableEvent,
    ToolStatus,
    event_to_dict,
)
from athyr_agent.runtime.log_handler import EventBusLogHandler, level_name, record_extras


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

class TestEventBus:
    def test_send_and_get_in_order(self):
        bus = EventBus(buffer_size=10)
        first = StatusEvent(connected=True, agent_name="a")
        second = MessageEvent(direction=Direction.INCOMING, topic="in", content="x")

        assert bus.send(first)
        assert bus.send(second)

        assert len(bus) == 2
        assert bus.get(timeout=0.1) is first
        assert bus.get(timeout=0.1) is second

    def test_full_buffer_drops_without_blocking(self):
        bus = EventBus(buffer_size=2)
        results = [bus.send(StatusEvent(connected=True)) for _ in range(5)]

        assert results == [True, True, False, False, False]
        assert bus.dropped == 3
        assert len(bus) == 2

    def test_get_timeout_returns_none(self):
        assert EventBus().get(timeout=0.01) is None

    def test_drain(self):
        bus = EventBus()
        for i in range(3):
            bus.send(LogEvent(level="info", message=str(i)))
        assert [e.message for e in bus.drain()] == ["0", "1", "2"]
        assert bus.drain() == []

    def test_close_rejects_new_events_keeps_queued(self):
        bus = EventBus()
        bus.send(StatusEvent(connected=True))
        bus.close()
        bus.close()

        assert bus.closed
        assert bus.send(StatusEvent(connected=False)) is False
        assert len(bus.drain()) == 1

    def test_concurrent_senders(self):
        bus = EventBus(buffer_size=1000)

        def send_many():
            for _ in range(100):
                bus.send(LogEvent(level="debug", message="m"))

        threads = [threading.Thread(target=send_many) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(bus.drain()) == 400
        assert bus.dropped == 0


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class TestEvents:
    def test_kinds(self):
        assert StatusEvent(connected=True).kind == "status"
        assert MessageEvent(direction=Direction.OUTGOING, topic="t").kind == "message"
        assert ToolEvent(status=ToolStatus.STARTED, name="t").kind == "tool"
        assert ToolsAvailableEvent().kind == "tool"
        assert LogEvent(level="info", message="m").kind == "log"

    def test_timestamps_are_utc(self):
        assert StatusEvent(connected=True).timestamp.tzinfo is timezone.utc

    def test_event_to_dict(self):
        stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        event = ToolEvent(
            status=ToolStatus.COMPLETED, name="lookup", result="42", duration=0.25,
            timestamp=stamp,
        )
        assert event_to_dict(event) == {
            "kind": "tool",
            "status": "completed",
            "name": "lookup",
            "args": "",
            "result": "42",
            "error": "",
            "duration": 0.25,
            "timestamp": "2024-05-01T12:00:00+00:00",
        }

    def test_event_to_dict_nested(self):
        event = ToolsAvailableEvent(tools=[ToolInfo(name="a", server="s")])
        data = event_to_dict(event)
        assert data["tools"] == [{"name": "a", "description": "", "server": "s"}]

    def test_direction_values(self):
        data = event_to_dict(MessageEvent(direction=Direction.INCOMING, topic="in"))
        assert data["direction"] == "in"


# ---------------------------------------------------------------------------
# EventBusLogHandler
# ---------------------------------------------------------------------------

class TestEventBusLogHandler:
    def _logger(self, bus, level=logging.INFO):
        log = logging.getLogger(f"test.events.{id(bus)}")
        log.setLevel(logging.DEBUG)
        log.propagate = False
        handler = EventBusLogHandler(bus, level=level)
        log.addHandler(handler)
        return log, handler

    def test_forwards_records(self):
        bus = EventBus()
        log, handler = self._logger(bus)
        try:
            log.warning("disk at %d%%", 91, extra={"mount": "/data"})
        finally:
            log.removeHandler(handler)

        event = bus.get(timeout=0.1)
        assert isinstance(event, LogEvent)
        assert event.level == "warn"
        assert event.message == "disk at 91%"
        assert event.attrs["mount"] == "/data"
        assert event.attrs["logger"] == log.name
        assert "levelname" not in event.attrs

    def test_respects_level(self):
        bus = EventBus()
        log, handler = self._logger(bus, level=logging.WARNING)
        try:
            log.info("quiet")
            log.error("loud")
        finally:
            log.removeHandler(handler)

        assert [e.message for e in bus.drain()] == ["loud"]

    @pytest.mark.parametrize("levelno,name", [
        (logging.DEBUG, "debug"),
        (logging.INFO, "info"),
        (logging.WARNING, "warn"),
        (logging.ERROR, "error"),
        (logging.CRITICAL, "error"),
    ])
    def test_level_name(self, levelno, name):
        assert level_name(levelno) == name

    def test_record_extras_skips_formatter_attributes(self):
        record = logging.LogRecord("athyr", logging.INFO, "", 0, "hi %s", ("x",), None)
        record.mount = "in"
        record._private = 1
        logging.Formatter("%(asctime)s %(message)s").format(record)

        assert record_extras(record) == {"mount": "in"}
