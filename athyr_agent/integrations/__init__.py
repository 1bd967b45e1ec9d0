"""External tool integrations -- MCP servers behind a single ToolBroker."""

from athyr_agent.integrations.mcp_client import (
    ToolBroker,
    ToolDefinition,
    ToolError,
    ToolExecutionError,
    UnknownToolError,
)

__all__ = [
    "ToolBroker",
    "ToolDefinition",
    "ToolError",
    "ToolExecutionError",
    "UnknownToolError",
]
