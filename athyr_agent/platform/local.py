"""
In-process platform for athyr-agent.

LocalPlatform implements AgentPlatform without any server: pub/sub is an
exact-subject fan-out inside the process, request/reply uses a private
inbox subject, completions go straight to the Anthropic API, and session
memory is a rolling transcript kept in memory.

It is what ``athyr-agent run`` uses, and what the tests drive.
"""

from dataclasses import dataclass, field
from typing import Any
import asyncio
import logging
import threading
import uuid

from athyr_agent.cognition.llm_client import create_llm_client
from athyr_agent.cognition.messages import CompletionRequest, CompletionResponse, Message
from athyr_agent.config.agent_schema import SessionProfile
from athyr_agent.platform.base import (
    AgentPlatform,
    MessageHandler,
    PlatformError,
    PlatformMessage,
    Subscription,
)

logger = logging.getLogger(__name__)

# Rough size of one token in characters, used to bound session transcripts.
CHARS_PER_TOKEN = 4


class _LocalSubscription(Subscription):
    def __init__(self, platform: "LocalPlatform", subject: str, handler: MessageHandler):
        self.subject = subject
        self.handler = handler
        self._platform = platform
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._platform._remove(self)


@dataclass
class _Session:
    profile: SessionProfile
    system_prompt: str
    transcript: list[Message] = field(default_factory=list)

    def remember(self, *messages: Message) -> None:
        self.transcript.extend(messages)
        budget = self.profile.max_tokens * CHARS_PER_TOKEN
        while self.transcript and sum(len(m.content) for m in self.transcript) > budget:
            self.transcript.pop(0)


class LocalPlatform(AgentPlatform):
    """
    In-process AgentPlatform.

    Handlers run synchronously inside publish(), on the publishing
    thread, so they must only schedule work.

    Attributes:
        agent_name: Name registered on connect.

    Example:
        platform = LocalPlatform(agent_name="triage")
        await platform.connect()
        await platform.subscribe("tickets", handler)
        await platform.publish("tickets", b"hello")
    """

    def __init__(self, llm_client: Any | None = None, agent_name: str = ""):
        """
        Initialize the platform.

        Args:
            llm_client: Object with ``async complete(CompletionRequest)``.
                Defaults to an AnthropicClient when an API key is set.
            agent_name: Name of the agent using this platform.
        """
        self.agent_name = agent_name
        self._llm = llm_client
        self._agent_id = ""
        self._subscriptions: dict[str, list[_LocalSubscription]] = {}
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def connected(self) -> bool:
        return bool(self._agent_id)

    async def connect(self) -> None:
        if self._llm is None:
            self._llm = create_llm_client()
        self._agent_id = f"local-{uuid.uuid4().hex[:8]}"
        logger.info(f"Local platform ready (agent_id={self._agent_id}, agent={self.agent_name})")

    async def close(self) -> None:
        with self._lock:
            subscriptions = [s for subs in self._subscriptions.values() for s in subs]
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.active = False
        close = getattr(self._llm, "close", None)
        if close is not None:
            await close()
        self._agent_id = ""

    # -- pub/sub ------------------------------------------------------------

    async def publish(self, subject: str, data: bytes, reply: str = "") -> None:
        self._require_connected()
        message = PlatformMessage(subject=subject, data=bytes(data), reply=reply)
        with self._lock:
            handlers = [s.handler for s in self._subscriptions.get(subject, ()) if s.active]
        for handler in handlers:
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Subscriber for {subject} failed: {e}")

    async def subscribe(self, subject: str, handler: MessageHandler) -> Subscription:
        self._require_connected()
        subscription = _LocalSubscription(self, subject, handler)
        with self._lock:
            self._subscriptions.setdefault(subject, []).append(subscription)
        logger.debug(f"Subscribed to {subject}")
        return subscription

    def subscriber_count(self, subject: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(subject, ()))

    def _remove(self, subscription: _LocalSubscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.subject, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscriptions.pop(subscription.subject, None)

    async def request(self, subject: str, data: bytes, timeout: float) -> bytes:
        self._require_connected()
        if self.subscriber_count(subject) == 0:
            raise PlatformError(f"no responders available for subject {subject}")

        loop = asyncio.get_running_loop()
        reply: asyncio.Future[bytes] = loop.create_future()

        def on_reply(message: PlatformMessage) -> None:
            if not reply.done():
                loop.call_soon_threadsafe(_set_result, reply, message.data)

        inbox = f"_INBOX.{uuid.uuid4().hex}"
        subscription = await self.subscribe(inbox, on_reply)
        try:
            await self.publish(subject, data, reply=inbox)
            return await asyncio.wait_for(reply, timeout)
        finally:
            subscription.unsubscribe()

    # -- completions and sessions -------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self._require_connected()
        if self._llm is None:
            raise PlatformError("no completion backend configured (set ANTHROPIC_API_KEY)")

        session = None
        if request.session_id and request.include_memory:
            session = self._sessions.get(request.session_id)
            if session is None:
                raise PlatformError(f"unknown session {request.session_id}")
            request = _with_memory(request, session.transcript)

        try:
            response = await self._llm.complete(request)
        except Exception as e:
            raise PlatformError(f"completion failed: {e}") from e

        if session is not None and not response.tool_calls:
            last_user = next((m for m in reversed(request.messages) if m.role == "user"), None)
            turn = [Message.assistant(response.content)]
            if last_user is not None:
                turn.insert(0, Message.user(last_user.content))
            session.remember(*turn)
        return response

    async def create_session(self, profile: SessionProfile, system_prompt: str) -> str:
        self._require_connected()
        session_id = f"sess-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._sessions[session_id] = _Session(profile=profile, system_prompt=system_prompt)
        logger.debug(f"Created session {session_id} (profile={profile.type})")
        return session_id

    def session_transcript(self, session_id: str) -> list[Message]:
        session = self._sessions.get(session_id)
        return list(session.transcript) if session else []

    def _require_connected(self) -> None:
        if not self.connected:
            raise PlatformError("platform is not connected")


def _set_result(future: asyncio.Future, value: bytes) -> None:
    if not future.done():
        future.set_result(value)


def _with_memory(request: CompletionRequest, transcript: list[Message]) -> CompletionRequest:
    if not transcript:
        return request
    system = [m for m in request.messages if m.role == "system"]
    rest = [m for m in request.messages if m.role != "system"]
    return CompletionRequest(
        model=request.model,
        messages=system + list(transcript) + rest,
        tools=request.tools,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
        tool_choice=request.tool_choice,
        session_id=request.session_id,
        include_memory=request.include_memory,
    )
