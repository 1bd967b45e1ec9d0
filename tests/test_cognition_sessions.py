"""Tests for athyr_agent.cognition.sessions and destinations."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from athyr_agent.cognition.destinations import (
    DestinationResolver,
    PluginDestination,
    TopicDestination,
)
from athyr_agent.cognition.messages import OutboundResponse
from athyr_agent.cognition.sessions import SessionError, SessionStore
from athyr_agent.config.agent_schema import MemoryConfig, SessionProfile
from athyr_agent.platform.base import PlatformError


def _platform(delay: float = 0.0):
    platform = MagicMock()
    counter = {"n": 0}

    async def create_session(profile, system_prompt):
        await asyncio.sleep(delay)
        counter["n"] += 1
        return f"sess-{counter['n']}"

    platform.create_session = AsyncMock(side_effect=create_session)
    return platform


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------

class TestSessionStore:
    @pytest.mark.asyncio
    async def test_resolve_creates_then_reuses(self):
        platform = _platform()
        store = SessionStore(platform, MemoryConfig(enabled=True), "instructions")

        first = await store.resolve("alice")
        second = await store.resolve("alice")

        assert first == second == "sess-1"
        platform.create_session.assert_awaited_once()
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_profile_and_prompt_are_passed(self):
        platform = _platform()
        profile = SessionProfile(type="summary", max_tokens=1000)
        store = SessionStore(platform, MemoryConfig(enabled=True, profile=profile), "be kind")

        await store.resolve("k")

        args = platform.create_session.call_args.args
        assert args[0].type == "summary"
        assert args[0].max_tokens == 1000
        assert args[1] == "be kind"

    @pytest.mark.asyncio
    async def test_concurrent_first_use_creates_one_session(self):
        platform = _platform(delay=0.02)
        store = SessionStore(platform, MemoryConfig(enabled=True))

        ids = await asyncio.gather(*(store.resolve("same") for _ in range(5)))

        assert set(ids) == {"sess-1"}
        assert platform.create_session.await_count == 1

    @pytest.mark.asyncio
    async def test_prefix_namespaces_keys(self):
        platform = _platform()
        store = SessionStore(platform, MemoryConfig(enabled=True, session_prefix="bot-"))

        await store.resolve("u1")

        assert [m.key for m in store.mappings()] == ["bot-u1"]
        assert store.get("u1") == "sess-1"
        assert store.get("u2") is None

    @pytest.mark.asyncio
    async def test_creation_failure(self):
        platform = MagicMock()
        platform.create_session = AsyncMock(side_effect=PlatformError("store offline"))
        store = SessionStore(platform, MemoryConfig(enabled=True))

        with pytest.raises(SessionError) as exc_info:
            await store.resolve("k")

        assert exc_info.value.key == "k"
        assert "store offline" in exc_info.value.reason
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_failure_is_retried_on_next_event(self):
        platform = MagicMock()
        platform.create_session = AsyncMock(side_effect=[PlatformError("blip"), "sess-ok"])
        store = SessionStore(platform, MemoryConfig(enabled=True))

        with pytest.raises(SessionError):
            await store.resolve("k")
        assert await store.resolve("k") == "sess-ok"


# ---------------------------------------------------------------------------
# Destinations
# ---------------------------------------------------------------------------

def _outbound(content="text") -> OutboundResponse:
    return OutboundResponse(
        content=content, model="m", source_topic="in", tokens=3, finish_reason="stop"
    )


class TestDestinations:
    def test_resolver_without_registry_uses_topics(self):
        resolver = DestinationResolver(MagicMock())
        destination = resolver.resolve("anything")
        assert isinstance(destination, TopicDestination)
        assert destination.kind == "topic"

    def test_resolver_prefers_plugins(self):
        registry = MagicMock()
        registry.is_plugin.side_effect = lambda name: name == "sink"
        resolver = DestinationResolver(MagicMock(), registry)

        kinds = [d.kind for d in resolver.resolve_all(["sink", "topic"])]

        assert kinds == ["plugin", "topic"]
        assert isinstance(resolver.resolve("sink"), PluginDestination)

    def test_reply_is_always_a_topic(self):
        registry = MagicMock()
        registry.is_plugin.return_value = True
        resolver = DestinationResolver(MagicMock(), registry)
        assert isinstance(resolver.reply("_INBOX.1"), TopicDestination)

    @pytest.mark.asyncio
    async def test_topic_destination_publishes_json(self):
        platform = MagicMock()
        platform.publish = AsyncMock()

        await TopicDestination("out", platform).deliver(_outbound("hello"))

        subject, data = platform.publish.call_args.args
        assert subject == "out"
        assert b'"content": "hello"' in data

    @pytest.mark.asyncio
    async def test_plugin_destination_passes_content(self):
        registry = MagicMock()

        await PluginDestination("sink", registry).deliver(_outbound("hello"))

        registry.publish.assert_called_once_with("sink", "hello")

    def test_repr(self):
        assert repr(TopicDestination("out", MagicMock())) == "<TopicDestination 'out'>"
