"""Destinations: where the orchestrator delivers a finished response.

A destination name from the agent file is either a loaded plugin (its
``publish`` entry point receives the response text) or a platform topic
(it receives the JSON :class:`OutboundResponse`). One resolver decides
which, so the pipeline only ever deals with :class:`Destination`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from athyr_agent.cognition.messages import OutboundResponse
from athyr_agent.platform.base import AgentPlatform
from athyr_agent.plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class Destination(ABC):
    """A named sink for orchestrator output."""

    kind: str = ""

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def deliver(self, response: OutboundResponse) -> None:
        """Deliver *response*; raise on failure."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name!r}>"


class TopicDestination(Destination):
    kind = "topic"

    def __init__(self, name: str, platform: AgentPlatform) -> None:
        super().__init__(name)
        self._platform = platform

    async def deliver(self, response: OutboundResponse) -> None:
        await self._platform.publish(self.name, response.to_json())


class PluginDestination(Destination):
    """Runs the plugin's ``publish`` on a worker thread."""

    kind = "plugin"

    def __init__(self, name: str, registry: PluginRegistry) -> None:
        super().__init__(name)
        self._registry = registry

    async def deliver(self, response: OutboundResponse) -> None:
        await asyncio.to_thread(self._registry.publish, self.name, response.content)


class DestinationResolver:
    """Resolve destination names to plugin or topic destinations.

    Parameters
    ----------
    platform:
        Platform used for topic destinations.
    registry:
        Plugin registry, or None when no plugins are configured.
    """

    def __init__(self, platform: AgentPlatform, registry: PluginRegistry | None = None) -> None:
        self._platform = platform
        self._registry = registry

    def resolve(self, name: str) -> Destination:
        if self._registry is not None and self._registry.is_plugin(name):
            return PluginDestination(name, self._registry)
        return TopicDestination(name, self._platform)

    def resolve_all(self, names: list[str]) -> list[Destination]:
        return [self.resolve(name) for name in names]

    def reply(self, subject: str) -> Destination:
        """Destination for a request's reply subject (always the platform)."""
        return TopicDestination(subject, self._platform)
