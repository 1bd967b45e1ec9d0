"""Runtime package -- observability events and the agent runner.

:class:`~athyr_agent.runtime.runner.AgentRunner` is imported from its
submodule; the orchestrator depends on the event types exported here.
"""

from athyr_agent.runtime.events import (
    Direction,
    Event,
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
from athyr_agent.runtime.log_handler import EventBusLogHandler

__all__ = [
    "Direction",
    "Event",
    "EventBus",
    "EventBusLogHandler",
    "LogEvent",
    "MessageEvent",
    "StatusEvent",
    "ToolEvent",
    "ToolInfo",
    "ToolsAvailableEvent",
    "ToolStatus",
    "event_to_dict",
]
