"""Pydantic models for athyr-agent agent files.

An agent file describes one agent: its model and instructions, the Lua
plugins it loads, the topics it subscribes and publishes to, optional
dynamic routes the model may choose between, session memory, MCP tool
servers and platform connection options.

Structural checks (types, shapes) are done by pydantic when the file is
loaded. Semantic checks (required fields, duplicates, exclusive options)
are collected by :meth:`AgentFile.validation_errors` so every problem can
be reported at once.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(text: str) -> float:
    """Parse a Go-style duration string into seconds.

    Accepts an optional sign followed by one or more number/unit pairs,
    e.g. ``"500ms"``, ``"10s"``, ``"1h30m"``, ``"-2s"``. ``"0"`` is allowed.

    Raises:
        ValueError: If *text* is not a valid duration.
    """
    s = text.strip()
    if not s:
        raise ValueError("empty duration")
    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _DURATION_PART.match(s, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ValueError(f"invalid duration {text!r}")
    return sign * total


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

class _Section(BaseModel):
    """Base for agent-file sections: YAML nulls fall back to defaults."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class PluginDefinition(_Section):
    """A Lua plugin: script file, restrictions and static config."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = ""
    file: str = ""
    restrict: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)


class RouteDefinition(_Section):
    """A destination the model may pick with ``route_to``."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    topic: str = ""
    description: str = ""


class TopicsConfig(_Section):
    subscribe: list[str] = Field(default_factory=list)
    publish: list[str] = Field(default_factory=list)
    routes: list[RouteDefinition] = Field(default_factory=list)

    @property
    def has_routes(self) -> bool:
        return len(self.routes) > 0

    def is_valid_route(self, topic: str) -> bool:
        return any(route.topic == topic for route in self.routes)

    def build_routing_prompt(self) -> str:
        """Build the routing block appended to the system instructions.

        Returns an empty string when no routes are configured.
        """
        if not self.has_routes:
            return ""
        lines = [
            "\n\n## Routing Instructions\n",
            "Based on your analysis, route this message to the appropriate destination.\n",
            "Include a `route_to` field in your JSON response with one of these topics:\n\n",
        ]
        for route in self.routes:
            lines.append(f"- `{route.topic}`: {route.description}\n")
        lines.append(
            "\nExample response format:\n"
            "```json\n"
            "{\n"
            '  "route_to": "<topic>",\n'
            '  "content": "your analysis or response"\n'
            "}\n"
            "```"
        )
        return "".join(lines)


class SessionProfile(_Section):
    """Session memory behavior requested from the platform."""

    type: str = "rolling_window"
    max_tokens: int = 4096
    summarization_threshold: int = 3000

    @model_validator(mode="after")
    def _apply_defaults(self) -> "SessionProfile":
        if not self.type:
            self.type = "rolling_window"
        if self.max_tokens == 0:
            self.max_tokens = 4096
        if self.summarization_threshold == 0:
            self.summarization_threshold = 3000
        return self


class MemoryConfig(_Section):
    enabled: bool = False
    session_prefix: str = ""
    ttl: str = ""
    profile: SessionProfile = Field(default_factory=SessionProfile)

    @property
    def ttl_seconds(self) -> float | None:
        """Parsed TTL, or None when unset."""
        return parse_duration(self.ttl) if self.ttl else None


class MCPServerConfig(_Section):
    """An MCP server: a local command (stdio) or a URL (Streamable HTTP)."""

    name: str = ""
    command: list[str] = Field(default_factory=list)
    url: str = ""
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, v: Any) -> Any:
        if isinstance(v, str):
            return shlex.split(v)
        return v


class MCPConfig(_Section):
    servers: list[MCPServerConfig] = Field(default_factory=list)


@dataclass(frozen=True)
class ConnectionOptions:
    """Parsed connection settings, in seconds."""

    request_timeout: float = 60.0
    max_retries: int = 0
    base_backoff: float = 1.0
    max_backoff: float = 30.0


class ConnectionConfig(_Section):
    timeout: str = ""
    max_retries: int = 0
    base_backoff: str = ""
    max_backoff: str = ""

    def options(self) -> ConnectionOptions:
        """Parse durations, applying defaults for unset values.

        Raises:
            ValueError: On an unparseable or negative duration.
        """
        defaults = ConnectionOptions()
        return ConnectionOptions(
            request_timeout=_duration_field("connection.timeout", self.timeout, defaults.request_timeout),
            max_retries=self.max_retries,
            base_backoff=_duration_field("connection.base_backoff", self.base_backoff, defaults.base_backoff),
            max_backoff=_duration_field("connection.max_backoff", self.max_backoff, defaults.max_backoff),
        )


def _duration_field(field_name: str, value: str, default: float) -> float:
    if not value:
        return default
    try:
        seconds = parse_duration(value)
    except ValueError as exc:
        raise ValueError(f"invalid {field_name}: {exc}") from exc
    if seconds < 0:
        raise ValueError(f"{field_name} cannot be negative: {value}")
    return seconds


class AgentConfig(_Section):
    name: str = ""
    description: str = ""
    model: str = ""
    instructions: str = ""
    plugins: list[PluginDefinition] = Field(default_factory=list)
    topics: TopicsConfig = Field(default_factory=TopicsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    def plugin(self, name: str) -> PluginDefinition | None:
        for plugin in self.plugins:
            if plugin.name == name:
                return plugin
        return None


# ---------------------------------------------------------------------------
# Top-level document
# ---------------------------------------------------------------------------

class AgentFile(_Section):
    """Root of an agent file (everything lives under ``agent:``)."""

    agent: AgentConfig = Field(default_factory=AgentConfig)

    def validation_errors(self) -> list[str]:
        """Return every semantic problem in the file (empty when valid)."""
        errors: list[str] = []
        agent = self.agent

        if not agent.name:
            errors.append("agent.name is required")
        if not agent.model:
            errors.append("agent.model is required")
        if not agent.topics.subscribe:
            errors.append("agent.topics.subscribe must have at least one topic")
        if not agent.topics.publish:
            errors.append("agent.topics.publish must have at least one topic")

        for i, route in enumerate(agent.topics.routes):
            if not route.topic:
                errors.append(f"agent.topics.routes[{i}].topic is required")
            if not route.description:
                errors.append(f"agent.topics.routes[{i}].description is required")

        seen: set[str] = set()
        for i, plugin in enumerate(agent.plugins):
            if not plugin.name:
                errors.append(f"agent.plugins[{i}].name is required")
            if not plugin.file:
                errors.append(f"agent.plugins[{i}].file is required")
            if plugin.name:
                if plugin.name in seen:
                    errors.append(f"agent.plugins[{i}]: duplicate plugin name {plugin.name!r}")
                seen.add(plugin.name)

        for i, server in enumerate(agent.mcp.servers):
            if not server.name:
                errors.append(f"agent.mcp.servers[{i}].name is required")
            if server.command and server.url:
                errors.append(f"agent.mcp.servers[{i}] must specify either command or url, not both")
            if not server.command and not server.url:
                errors.append(f"agent.mcp.servers[{i}] must specify either command or url")

        try:
            agent.connection.options()
        except ValueError as exc:
            errors.append(str(exc))

        if agent.memory.ttl:
            try:
                if parse_duration(agent.memory.ttl) < 0:
                    errors.append(f"agent.memory.ttl cannot be negative: {agent.memory.ttl}")
            except ValueError as exc:
                errors.append(f"invalid agent.memory.ttl: {exc}")

        return errors
