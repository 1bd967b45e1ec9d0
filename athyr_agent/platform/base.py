"""
Platform infrastructure for athyr-agent.

An agent talks to exactly one platform: the service that carries its
pub/sub traffic, runs completions, and stores session memory. This
module defines the collaborator interface the runner and orchestrator
program against, plus the small wire types it exchanges.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from athyr_agent.cognition.messages import CompletionRequest, CompletionResponse
from athyr_agent.config.agent_schema import SessionProfile


class PlatformError(Exception):
    """Raised when a platform operation fails."""


@dataclass(frozen=True)
class PlatformMessage:
    """
    A message delivered to a subscription handler.

    Attributes:
        subject: Subject the message was published on.
        data: Raw payload bytes.
        reply: Subject to send a direct reply to (request/reply), or "".
        received_at: When the platform delivered the message.
    """

    subject: str
    data: bytes
    reply: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Handlers are plain callables and must return quickly; long work belongs
# in a task the handler schedules.
MessageHandler = Callable[[PlatformMessage], None]


class Subscription(ABC):
    """Handle for an active subscription."""

    subject: str

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop delivering messages to this subscription's handler."""


class AgentPlatform(ABC):
    """
    Abstract base class for agent platforms.

    Example:
        class NatsPlatform(AgentPlatform):
            async def publish(self, subject, data):
                await self._nc.publish(subject, data)
            ...
    """

    @property
    @abstractmethod
    def agent_id(self) -> str:
        """Identifier assigned by the platform on connect ("" before)."""

    @abstractmethod
    async def connect(self) -> None:
        """
        Connect and register the agent.

        Raises:
            PlatformError: If the platform is unreachable.
        """

    @abstractmethod
    async def close(self) -> None:
        """Disconnect and drop every subscription."""

    @abstractmethod
    async def publish(self, subject: str, data: bytes, reply: str = "") -> None:
        """
        Publish a message.

        Args:
            subject: Destination subject.
            data: Payload bytes.
            reply: Optional reply subject for the receiver.

        Raises:
            PlatformError: If not connected or delivery fails.
        """

    @abstractmethod
    async def subscribe(self, subject: str, handler: MessageHandler) -> Subscription:
        """
        Subscribe a handler to a subject.

        Raises:
            PlatformError: If not connected.
        """

    @abstractmethod
    async def request(self, subject: str, data: bytes, timeout: float) -> bytes:
        """
        Send a request and wait for the first reply.

        Raises:
            PlatformError: If nobody can answer.
            TimeoutError: If no reply arrives in time.
        """

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """
        Run an LLM completion, with session memory when requested.

        Raises:
            PlatformError: If the completion backend fails.
        """

    @abstractmethod
    async def create_session(self, profile: SessionProfile, system_prompt: str) -> str:
        """
        Create a memory session and return its platform identifier.

        Raises:
            PlatformError: If the session cannot be created.
        """

    async def health_check(self) -> bool:
        """
        Check if the platform connection is healthy.

        Returns:
            True if the connection is healthy, False otherwise.
        """
        return bool(self.agent_id)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} agent_id={self.agent_id or '-'}>"
