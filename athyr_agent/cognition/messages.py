"""Conversation and completion types shared by the orchestrator and platforms.

A :class:`ConversationContext` is built fresh for every inbound event and
only grows by appending tool round-trip messages. It is turned into a
:class:`CompletionRequest` for each iteration of the tool loop.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


# ---------------------------------------------------------------------------
# Messages and tools
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is the JSON text of the argument object.
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass
class Message:
    """One role-tagged conversation message."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


@dataclass(frozen=True)
class Tool:
    """A tool definition attached to a completion request."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Completion request / response
# ---------------------------------------------------------------------------

@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CompletionRequest:
    """Request sent to the platform's completion endpoint."""

    model: str
    messages: list[Message]
    tools: list[Tool] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 2048
    tool_choice: str = ""
    session_id: str = ""
    include_memory: bool = False


@dataclass
class CompletionResponse:
    """Result of one completion call."""

    content: str
    model: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: Usage = field(default_factory=Usage)


# ---------------------------------------------------------------------------
# Conversation context
# ---------------------------------------------------------------------------

@dataclass
class ConversationContext:
    """Ordered messages plus everything needed to request a completion.

    Parameters
    ----------
    model:
        Model identifier.
    messages:
        Conversation so far, oldest first.
    tools:
        Tools offered to the model.
    session_id:
        Platform session identifier; empty when no session applies.
    """

    model: str
    messages: list[Message] = field(default_factory=list)
    tools: list[Tool] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 2048
    session_id: str = ""

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def to_request(self) -> CompletionRequest:
        """Snapshot the context as a completion request."""
        return CompletionRequest(
            model=self.model,
            messages=list(self.messages),
            tools=list(self.tools),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tool_choice="auto" if self.tools else "",
            session_id=self.session_id,
            include_memory=bool(self.session_id),
        )


# ---------------------------------------------------------------------------
# Outbound result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutboundResponse:
    """The structure published to platform destinations."""

    content: str
    model: str
    source_topic: str
    tokens: int
    finish_reason: str

    @classmethod
    def from_completion(cls, response: CompletionResponse, source_topic: str) -> OutboundResponse:
        return cls(
            content=response.content,
            model=response.model,
            source_topic=source_topic,
            tokens=response.usage.total_tokens,
            finish_reason=response.finish_reason,
        )

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), ensure_ascii=False).encode("utf-8")
