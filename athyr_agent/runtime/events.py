"""
Observability events for athyr-agent.

The runner and orchestrator report what they do as small timestamped
events on an EventBus. A presentation layer (the CLI's ``--events``
stream, the chat prompt) consumes them. Sending never blocks: when the
buffer is full the event is dropped and counted.

Event kinds:
    status  StatusEvent          connect / disconnect
    message MessageEvent         inbound and outbound messages
    tool    ToolEvent            tool call started / completed / failed
    tool    ToolsAvailableEvent  tools discovered on MCP servers
    log     LogEvent             forwarded log records
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union
import logging
import queue
import threading

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    """Message direction."""
    INCOMING = "in"
    OUTGOING = "out"


class ToolStatus(str, Enum):
    """State of a tool execution."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StatusEvent:
    """Connection status change.

    Attributes:
        connected: Whether the agent is connected.
        agent_id: Platform-assigned agent id.
        agent_name: Configured agent name.
        error: Error text when connecting failed.
    """

    kind: ClassVar[str] = "status"

    connected: bool
    agent_id: str = ""
    agent_name: str = ""
    error: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass
class MessageEvent:
    """A message received or sent."""

    kind: ClassVar[str] = "message"

    direction: Direction
    topic: str
    content: str = ""
    model: str = ""
    tokens: int = 0
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ToolEvent:
    """A tool execution step. ``duration`` is in seconds."""

    kind: ClassVar[str] = "tool"

    status: ToolStatus
    name: str
    args: str = ""
    result: str = ""
    error: str = ""
    duration: float = 0.0
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ToolInfo:
    name: str
    description: str = ""
    server: str = ""


@dataclass
class ToolsAvailableEvent:
    """Tools discovered on the configured MCP servers."""

    kind: ClassVar[str] = "tool"

    tools: list[ToolInfo] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_now)


@dataclass
class LogEvent:
    """A forwarded log record."""

    kind: ClassVar[str] = "log"

    level: str
    message: str
    attrs: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)


Event = Union[StatusEvent, MessageEvent, ToolEvent, ToolsAvailableEvent, LogEvent]


def event_to_dict(event: Event) -> dict[str, Any]:
    """Convert an event to a JSON-friendly dictionary."""
    data = asdict(event)
    data["kind"] = event.kind
    data["timestamp"] = event.timestamp.isoformat()
    for key, value in list(data.items()):
        if isinstance(value, Enum):
            data[key] = value.value
    return data


class EventBus:
    """Bounded, thread-safe, non-blocking event channel.

    Attributes:
        buffer_size: Maximum number of undelivered events.
        dropped: Number of events dropped because the buffer was full.

    Example:
        bus = EventBus(buffer_size=100)
        bus.send(StatusEvent(connected=True, agent_name="triage"))
        event = bus.get(timeout=1.0)
    """

    def __init__(self, buffer_size: int = 1000):
        """Initialize the bus.

        Args:
            buffer_size: Maximum number of undelivered events.
        """
        self.buffer_size = buffer_size
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        self._drop_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: Event) -> bool:
        """Queue an event without blocking.

        Args:
            event: Event to deliver.

        Returns:
            True if queued, False if dropped (full or closed).
        """
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            with self._drop_lock:
                self.dropped += 1
            return False

    def get(self, timeout: float | None = None) -> Event | None:
        """Wait for the next event.

        Args:
            timeout: Seconds to wait; None waits until an event arrives.

        Returns:
            The next event, or None on timeout.
        """
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        """Return every queued event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        """Stop accepting events. Already queued events stay readable."""
        if not self._closed.is_set():
            self._closed.set()
            if self.dropped:
                logger.debug("Event bus closed after dropping %d event(s)", self.dropped)

    def __len__(self) -> int:
        return self._queue.qsize()
