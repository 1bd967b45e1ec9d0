"""Anthropic LLM client for athyr-agent.

Provides async Claude API integration with tool use. Requests and
responses use the provider-neutral types from
:mod:`athyr_agent.cognition.messages`; this module owns the translation
to and from the Messages API:

- system messages are joined into the ``system`` parameter
- an assistant turn that requested tools becomes ``tool_use`` blocks
- consecutive tool results are folded into one user turn of ``tool_result`` blocks
"""

from __future__ import annotations

import json
import logging
from typing import Any

from anthropic import AsyncAnthropic

from athyr_agent.cognition.messages import (
    CompletionRequest,
    CompletionResponse,
    Message,
    Tool,
    ToolCall,
    Usage,
)
from athyr_agent.config.settings import settings

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


class AnthropicClient:
    """Async Anthropic client for tool-using completions.

    Parameters
    ----------
    api_key:
        Anthropic API key. Falls back to ``settings.ANTHROPIC_API_KEY``.
    client:
        Optional pre-built ``AsyncAnthropic`` (tests pass a mock).
    """

    def __init__(
        self,
        api_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        if client is not None:
            self._client = client
            return

        self._api_key = api_key or settings.ANTHROPIC_API_KEY
        if not self._api_key:
            raise ValueError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY in environment."
            )
        self._client = AsyncAnthropic(api_key=self._api_key)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one completion.

        Parameters
        ----------
        request:
            Model, messages, tools and generation parameters.

        Returns
        -------
        CompletionResponse with text, requested tool calls and token usage.
        """
        system, messages = to_anthropic_messages(request.messages)

        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": messages,
            "temperature": request.temperature,
        }
        if system:
            kwargs["system"] = system
        if request.tools:
            kwargs["tools"] = to_anthropic_tools(request.tools)
            if request.tool_choice:
                kwargs["tool_choice"] = {"type": request.tool_choice}

        logger.debug(
            "Requesting completion model=%s messages=%d tools=%d",
            request.model, len(messages), len(request.tools),
        )
        response = await self._client.messages.create(**kwargs)
        return from_anthropic_response(response)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


def create_llm_client(api_key: str | None = None) -> AnthropicClient | None:
    """Create an Anthropic client if an API key is available, else None."""
    try:
        return AnthropicClient(api_key=api_key)
    except ValueError:
        logger.warning("No Anthropic API key -- completions are unavailable")
        return None


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------

def to_anthropic_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Convert conversation messages to ``(system, messages)`` for the API."""
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
            continue

        if message.role == "tool":
            role = "user"
            blocks = [{
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
            }]
        elif message.role == "assistant":
            role = "assistant"
            blocks = _text_blocks(message.content)
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": _parse_arguments(call.arguments),
                })
        else:
            role = "user"
            blocks = _text_blocks(message.content)

        if not blocks:
            continue
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    return "\n\n".join(system_parts), converted


def to_anthropic_tools(tools: list[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters or {"type": "object", "properties": {}},
        }
        for tool in tools
    ]


def from_anthropic_response(response: Any) -> CompletionResponse:
    text = ""
    tool_calls: list[ToolCall] = []
    for block in response.content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            text += block.text
        elif block_type == "tool_use":
            tool_calls.append(ToolCall(
                id=block.id,
                name=block.name,
                arguments=json.dumps(block.input or {}),
            ))

    input_tokens = response.usage.input_tokens
    output_tokens = response.usage.output_tokens
    stop_reason = response.stop_reason or ""

    return CompletionResponse(
        content=text,
        model=response.model,
        tool_calls=tool_calls,
        finish_reason=_FINISH_REASONS.get(stop_reason, stop_reason),
        usage=Usage(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        ),
    )


def _text_blocks(text: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": text}] if text else []


def _parse_arguments(arguments: str) -> dict[str, Any]:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.debug("Tool arguments are not valid JSON: %r", arguments)
        return {}
    return parsed if isinstance(parsed, dict) else {}
