from __future__ import annotations

import json
import logging
import threading
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import get_default_environment, stdio_client
from mcp.client.streamable_http import streamablehttp_client

from athyr_agent.config.agent_schema import MCPServerConfig

logger = logging.getLogger(__name__)


class ToolError(Exception):
    pass


class UnknownToolError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unknown tool: {name}")


class ToolExecutionError(ToolError):
    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"tool {name} failed: {reason}")


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: dict = field(default_factory=dict)
    server: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "server": self.server}


class ToolBroker:
    def __init__(self) -> None:
        self._sessions: dict[str, ClientSession] = {}
        self._tools: dict[str, ToolDefinition] = {}
        self._lock = threading.Lock()
        self._stack = AsyncExitStack()

    async def connect(self, servers: list[MCPServerConfig]) -> None:
        for server in servers:
            try:
                session = await self._open_session(server)
            except Exception as exc:
                raise ToolError(f"failed to connect to MCP server {server.name}: {exc}") from exc
            await self.add_session(server.name, session)

    async def _open_session(self, server: MCPServerConfig) -> ClientSession:
        if server.url:
            logger.info("Connecting to MCP server %s via HTTP (%s)", server.name, server.url)
            read, write, _ = await self._stack.enter_async_context(
                streamablehttp_client(server.url)
            )
        else:
            logger.info("Connecting to MCP server %s via stdio (%s)", server.name, server.command)
            env = None
            if server.env:
                env = {**get_default_environment(), **server.env}
            params = StdioServerParameters(
                command=server.command[0],
                args=list(server.command[1:]),
                env=env,
            )
            read, write = await self._stack.enter_async_context(stdio_client(params))
        session = await self._stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        return session

    async def add_session(self, server_name: str, session: Any) -> int:
        with self._lock:
            self._sessions[server_name] = session

        discovered = 0
        result = await session.list_tools()
        while True:
            for tool in result.tools:
                self.register_tool(ToolDefinition(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                    server=server_name,
                ))
                discovered += 1
            cursor = getattr(result, "nextCursor", None)
            if not cursor:
                break
            result = await session.list_tools(cursor=cursor)

        logger.info("Connected to MCP server %s (%d tools)", server_name, discovered)
        return discovered

    def register_tool(self, tool: ToolDefinition) -> None:
        with self._lock:
            previous = self._tools.get(tool.name)
            self._tools[tool.name] = tool
        if previous is not None and previous.server != tool.server:
            logger.warning(
                "Tool %s from server %s replaces the one from server %s",
                tool.name, tool.server, previous.server,
            )
        else:
            logger.debug("Discovered tool %s on server %s", tool.name, tool.server)

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        with self._lock:
            return list(self._tools.values())

    def server_for(self, name: str) -> str | None:
        tool = self._tools.get(name)
        return tool.server if tool else None

    async def call(self, name: str, arguments: str | dict | None = None) -> str:
        with self._lock:
            tool = self._tools.get(name)
            session = self._sessions.get(tool.server) if tool else None
        if tool is None:
            raise UnknownToolError(name)
        if session is None:
            raise ToolExecutionError(name, f"no session for server {tool.server}")

        args = _parse_arguments(name, arguments)
        try:
            result = await session.call_tool(name, args)
        except Exception as exc:
            raise ToolExecutionError(name, str(exc)) from exc

        text = _extract_text(result)
        if getattr(result, "isError", False):
            raise ToolExecutionError(name, text or "tool reported an error")
        return text

    async def close(self) -> None:
        with self._lock:
            names = list(self._sessions)
            self._sessions.clear()
        try:
            await self._stack.aclose()
        except Exception:
            logger.exception("Error closing MCP sessions %s", names)
        self._stack = AsyncExitStack()
        if names:
            logger.info("Closed MCP sessions: %s", ", ".join(names))

    def __len__(self) -> int:
        return len(self._tools)


def _parse_arguments(name: str, arguments: str | dict | None) -> dict:
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(name, f"invalid arguments: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ToolExecutionError(name, "invalid arguments: expected a JSON object")
    return parsed


def _extract_text(result: Any) -> str:
    parts = []
    for content in getattr(result, "content", None) or []:
        if getattr(content, "type", None) == "text":
            parts.append(content.text)
    return "\n".join(parts)
