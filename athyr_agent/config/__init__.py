"""athyr-agent configuration -- process settings and agent-file schema/loader."""

from .agent_loader import (
    ConfigError,
    load_agent_file,
    parse_agent,
    resolve_plugin_paths,
)
from .agent_schema import (
    AgentConfig,
    AgentFile,
    ConnectionConfig,
    ConnectionOptions,
    MCPConfig,
    MCPServerConfig,
    MemoryConfig,
    PluginDefinition,
    RouteDefinition,
    SessionProfile,
    TopicsConfig,
    parse_duration,
)

__all__ = [
    "AgentConfig",
    "AgentFile",
    "ConfigError",
    "ConnectionConfig",
    "ConnectionOptions",
    "MCPConfig",
    "MCPServerConfig",
    "MemoryConfig",
    "PluginDefinition",
    "RouteDefinition",
    "SessionProfile",
    "TopicsConfig",
    "load_agent_file",
    "parse_agent",
    "parse_duration",
    "resolve_plugin_paths",
]
