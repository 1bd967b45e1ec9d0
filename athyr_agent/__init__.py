"""athyr-agent: config-driven LLM agents with Lua plugins and MCP tools."""

__version__ = "0.3.0"
