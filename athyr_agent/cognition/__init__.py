"""Cognition package -- provider-neutral messages and the LLM client.

The orchestrator, session store and destinations live in their own
submodules and are imported from there; they depend on the platform layer,
which in turn depends on the message types exported here.
"""

from __future__ import annotations

from athyr_agent.cognition.messages import (
    CompletionRequest,
    CompletionResponse,
    ConversationContext,
    Message,
    OutboundResponse,
    Tool,
    ToolCall,
    Usage,
)
from athyr_agent.cognition.llm_client import (
    AnthropicClient,
    create_llm_client,
)

__all__ = [
    # Messages
    "CompletionRequest",
    "CompletionResponse",
    "ConversationContext",
    "Message",
    "OutboundResponse",
    "Tool",
    "ToolCall",
    "Usage",
    # LLM client
    "AnthropicClient",
    "create_llm_client",
]
