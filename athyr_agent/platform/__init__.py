"""Messaging and LLM platform abstraction plus the in-process implementation."""

from athyr_agent.platform.base import (
    AgentPlatform,
    MessageHandler,
    PlatformError,
    PlatformMessage,
    Subscription,
)
from athyr_agent.platform.local import LocalPlatform

__all__ = [
    "AgentPlatform",
    "LocalPlatform",
    "MessageHandler",
    "PlatformError",
    "PlatformMessage",
    "Subscription",
]
