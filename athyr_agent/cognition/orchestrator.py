"""Message orchestration -- the completion/tool loop behind every event.

The :class:`MessageOrchestrator` takes one inbound event at a time (from a
platform subscription or a plugin source), turns it into a conversation,
drives the bounded LLM/tool loop, decides where the result goes, and
delivers it.

Pipeline for one event:

1. parse the payload (JSON ``{"content", "session"}`` or plain text)
2. resolve the session mapping when memory is enabled
3. build the conversation: instructions + routing block, then the user message
4. completion/tool loop, at most ``max_tool_iterations`` completions
5. read ``route_to`` from the final text; unknown routes fall back to defaults
6. deliver to each destination, plus the reply subject if there is one

Every log line for an event carries the same short ``trace_id``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from athyr_agent.cognition.destinations import Destination, DestinationResolver
from athyr_agent.cognition.messages import (
    CompletionResponse,
    ConversationContext,
    Message,
    OutboundResponse,
    Tool,
    ToolCall,
)
from athyr_agent.cognition.sessions import SessionError, SessionStore
from athyr_agent.config.agent_schema import AgentConfig
from athyr_agent.config.settings import settings
from athyr_agent.integrations.mcp_client import ToolBroker
from athyr_agent.observability.tracing import AgentTracer
from athyr_agent.observability.tracing import tracer as default_tracer
from athyr_agent.platform.base import AgentPlatform, PlatformMessage, Subscription
from athyr_agent.plugins.registry import PluginRegistry
from athyr_agent.runtime.events import (
    Direction,
    Event,
    EventBus,
    MessageEvent,
    ToolEvent,
    ToolStatus,
)

logger = logging.getLogger(__name__)

WatchCallback = Callable[[datetime, str], None]


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InboundMessage:
    """Parsed inbound payload."""

    content: str
    session_key: str = ""


@dataclass(frozen=True)
class RoutingDecision:
    """Immutable record of where a response goes.

    ``route_to`` is the model-chosen route when it was valid, else "".
    ``rejected_route`` holds a route the model proposed that is not configured.
    """

    destinations: tuple[str, ...]
    route_to: str = ""
    rejected_route: str = ""


@dataclass
class OrchestratorConfig:
    """Configuration for the :class:`MessageOrchestrator`.

    Parameters
    ----------
    max_tool_iterations:
        Upper bound on completion calls per event.
    event_timeout:
        Deadline in seconds for one event's whole pipeline.
    direct_chat_timeout / publish_timeout / request_timeout:
        Deadlines for the one-shot helper operations.
    """

    max_tool_iterations: int = field(default_factory=lambda: settings.ATHYR_MAX_TOOL_ITERATIONS)
    event_timeout: float = field(default_factory=lambda: settings.ATHYR_EVENT_TIMEOUT)
    direct_chat_timeout: float = 60.0
    publish_timeout: float = 10.0
    request_timeout: float = 30.0
    temperature: float = 0.7
    max_tokens: int = 2048


@dataclass
class HandleResult:
    """Outcome of :meth:`MessageOrchestrator.handle`."""

    trace_id: str
    topic: str
    response: CompletionResponse | None = None
    routing: RoutingDecision | None = None
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    session_id: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


@dataclass
class ChatResult:
    """Direct-chat result; failures are reported in ``error``, never raised."""

    content: str = ""
    model: str = ""
    tokens: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


# ---------------------------------------------------------------------------
# Payload and route parsing
# ---------------------------------------------------------------------------


def parse_message(data: bytes | str) -> InboundMessage:
    """Extract content and session key from an inbound payload.

    A JSON object with a non-empty string ``content`` yields that content
    and its ``session`` (or ``session_id``) key. Anything else, including
    malformed JSON, is taken as literal text.
    """
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return InboundMessage(content=text)

    if isinstance(parsed, dict):
        content = parsed.get("content")
        if isinstance(content, str) and content:
            session = parsed.get("session") or parsed.get("session_id") or ""
            return InboundMessage(
                content=content,
                session_key=session if isinstance(session, str) else str(session),
            )
    return InboundMessage(content=text)


def extract_json_from_markdown(content: str) -> str:
    """Unwrap a fenced code block (```json or ```) around *content*.

    Only unwraps when the trimmed text starts with the fence; otherwise
    the trimmed text is returned unchanged.
    """
    content = content.strip()
    for fence in ("```json", "```"):
        if content.startswith(fence):
            content = content[len(fence):]
            end = content.rfind("```")
            if end != -1:
                content = content[:end]
            return content.strip()
    return content


def extract_route(content: str) -> str:
    """Return the ``route_to`` value in *content*, or "" if there is none."""
    try:
        parsed = json.loads(extract_json_from_markdown(content))
    except (json.JSONDecodeError, ValueError):
        return ""
    if isinstance(parsed, dict):
        route = parsed.get("route_to")
        if isinstance(route, str):
            return route
    return ""


def tool_error_payload(message: str) -> str:
    return json.dumps({"error": message})


def new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class MessageOrchestrator:
    """Drive inbound events through the completion/tool loop and dispatch.

    Parameters
    ----------
    agent:
        Agent section of the agent file.
    platform:
        Platform used for completions, sessions and topic delivery.
    tools:
        Tool broker, or None when no MCP servers are configured.
    plugins:
        Plugin registry, or None when no plugins are configured.
    events:
        Optional event bus for observability events.
    config:
        Loop bounds and deadlines.
    """

    def __init__(
        self,
        agent: AgentConfig,
        platform: AgentPlatform,
        tools: ToolBroker | None = None,
        plugins: PluginRegistry | None = None,
        events: EventBus | None = None,
        config: OrchestratorConfig | None = None,
        tracer: AgentTracer | None = None,
    ) -> None:
        self.agent = agent
        self.platform = platform
        self.tools = tools
        self.plugins = plugins
        self.events = events
        self.config = config or OrchestratorConfig()
        self.sessions = SessionStore(platform, agent.memory, agent.instructions)
        self.destinations = DestinationResolver(platform, plugins)
        self._tracer = tracer or default_tracer
        self._watch: Subscription | None = None
        self._watch_topic = ""

    # -- events -------------------------------------------------------------

    def _emit(self, event: Event) -> None:
        if self.events is not None:
            self.events.send(event)

    # -- inbound events -----------------------------------------------------

    async def handle(self, topic: str, payload: bytes | str, reply: str = "") -> HandleResult:
        """Process one inbound event end to end.

        Never raises for pipeline failures: an LLM error or an exceeded
        deadline is logged and reported in :attr:`HandleResult.error`.
        """
        trace_id = new_trace_id()
        result = HandleResult(trace_id=trace_id, topic=topic)
        started = time.monotonic()
        size = len(payload)

        logger.info("Message received trace_id=%s topic=%s size_bytes=%d", trace_id, topic, size)

        with self._tracer.handle_span(topic, trace_id):
            try:
                await asyncio.wait_for(
                    self._process(topic, payload, reply, result),
                    timeout=self.config.event_timeout,
                )
            except asyncio.TimeoutError:
                result.error = f"event deadline of {self.config.event_timeout}s exceeded"
                logger.error("Event timed out trace_id=%s topic=%s", trace_id, topic)
            except Exception as exc:
                result.error = str(exc)
                logger.error("Event failed trace_id=%s topic=%s error=%s", trace_id, topic, exc)

        logger.debug(
            "Request completed trace_id=%s total_ms=%d",
            trace_id, (time.monotonic() - started) * 1000,
        )
        return result

    async def _process(
        self,
        topic: str,
        payload: bytes | str,
        reply: str,
        result: HandleResult,
    ) -> None:
        trace_id = result.trace_id
        inbound = parse_message(payload)
        self._emit(MessageEvent(direction=Direction.INCOMING, topic=topic, content=inbound.content))

        if self.agent.memory.enabled and inbound.session_key:
            try:
                result.session_id = await self.sessions.resolve(inbound.session_key)
                logger.info(
                    "Using session memory trace_id=%s session=%s session_id=%s",
                    trace_id, inbound.session_key, result.session_id,
                )
            except SessionError as exc:
                logger.error(
                    "Session unavailable, continuing without memory trace_id=%s error=%s",
                    trace_id, exc,
                )

        context = self._build_context(inbound.content, routing=True, session_id=result.session_id)
        try:
            response = await self._run_tool_loop(context, trace_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result.error = f"completion failed: {exc}"
            logger.error(
                "LLM failed trace_id=%s model=%s error=%s", trace_id, context.model, exc
            )
            return
        result.response = response

        decision = self.decide_route(response.content, trace_id)
        result.routing = decision
        outbound = OutboundResponse.from_completion(response, source_topic=topic)

        for destination in self.destinations.resolve_all(list(decision.destinations)):
            error = await self._deliver(destination, outbound, trace_id)
            if error:
                result.failed[destination.name] = error
            else:
                result.delivered.append(destination.name)

        if reply:
            error = await self._deliver(self.destinations.reply(reply), outbound, trace_id, is_reply=True)
            if error:
                result.failed[reply] = error

    def _build_context(self, content: str, routing: bool, session_id: str = "") -> ConversationContext:
        context = ConversationContext(
            model=self.agent.model,
            tools=self._available_tools(),
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            session_id=session_id,
        )
        system_prompt = self.agent.instructions
        if routing and self.agent.topics.has_routes:
            routing_prompt = self.agent.topics.build_routing_prompt()
            system_prompt = system_prompt + routing_prompt if system_prompt else routing_prompt.lstrip("\n")
        if system_prompt:
            context.append(Message.system(system_prompt))
        context.append(Message.user(content))
        return context

    def _available_tools(self) -> list[Tool]:
        if self.tools is None:
            return []
        return [
            Tool(name=t.name, description=t.description, parameters=t.input_schema)
            for t in self.tools.list_tools()
        ]

    # -- tool loop ----------------------------------------------------------

    async def _run_tool_loop(self, context: ConversationContext, trace_id: str) -> CompletionResponse:
        response: CompletionResponse | None = None
        for iteration in range(1, self.config.max_tool_iterations + 1):
            request = context.to_request()
            logger.debug(
                "LLM request trace_id=%s model=%s iteration=%d", trace_id, request.model, iteration
            )
            started = time.monotonic()
            with self._tracer.completion_span(request.model, iteration):
                response = await self.platform.complete(request)
            logger.info(
                "LLM completed trace_id=%s model=%s tokens_in=%d tokens_out=%d latency_ms=%d",
                trace_id, response.model, response.usage.prompt_tokens,
                response.usage.completion_tokens, (time.monotonic() - started) * 1000,
            )

            if not response.tool_calls:
                break

            logger.debug(
                "Executing tool calls trace_id=%s count=%d", trace_id, len(response.tool_calls)
            )
            context.append(Message.assistant(response.content, response.tool_calls))
            for call in response.tool_calls:
                output = await self._execute_tool(call, trace_id)
                context.append(Message.tool_result(call.id, output))
        else:
            logger.warning(
                "Tool loop hit the iteration limit trace_id=%s limit=%d",
                trace_id, self.config.max_tool_iterations,
            )

        if response is None:
            raise RuntimeError("no response after tool loop")
        return response

    async def _execute_tool(self, call: ToolCall, trace_id: str) -> str:
        self._emit(ToolEvent(status=ToolStatus.STARTED, name=call.name, args=call.arguments))
        started = time.monotonic()
        try:
            with self._tracer.tool_span(call.name):
                if self.tools is None:
                    raise RuntimeError("no tool servers configured")
                output = await self.tools.call(call.name, call.arguments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            duration = time.monotonic() - started
            logger.error(
                "Tool failed trace_id=%s tool=%s error=%s latency_ms=%d",
                trace_id, call.name, exc, duration * 1000,
            )
            self._emit(ToolEvent(
                status=ToolStatus.FAILED, name=call.name, args=call.arguments,
                error=str(exc), duration=duration,
            ))
            return tool_error_payload(str(exc))

        duration = time.monotonic() - started
        logger.info(
            "Tool executed trace_id=%s tool=%s server=%s latency_ms=%d",
            trace_id, call.name, self.tools.server_for(call.name), duration * 1000,
        )
        self._emit(ToolEvent(
            status=ToolStatus.COMPLETED, name=call.name, args=call.arguments,
            result=output, duration=duration,
        ))
        return output

    # -- routing and dispatch -----------------------------------------------

    def decide_route(self, content: str, trace_id: str = "") -> RoutingDecision:
        """Pick destinations from the model's ``route_to``, or the defaults."""
        defaults = tuple(self.agent.topics.publish)
        route = extract_route(content)
        if not route:
            return RoutingDecision(destinations=defaults)
        if self.agent.topics.is_valid_route(route):
            logger.debug("Routing response trace_id=%s route_to=%s", trace_id, route)
            return RoutingDecision(destinations=(route,), route_to=route)
        logger.warning(
            "Invalid route_to, using default publish trace_id=%s route_to=%s", trace_id, route
        )
        return RoutingDecision(destinations=defaults, rejected_route=route)

    async def _deliver(
        self,
        destination: Destination,
        outbound: OutboundResponse,
        trace_id: str,
        is_reply: bool = False,
    ) -> str:
        try:
            await destination.deliver(outbound)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "%s failed trace_id=%s destination=%s kind=%s error=%s",
                "Reply" if is_reply else "Message send", trace_id,
                destination.name, destination.kind, exc,
            )
            return str(exc) or exc.__class__.__name__

        logger.info(
            "%s trace_id=%s destination=%s kind=%s",
            "Reply sent" if is_reply else "Message sent", trace_id,
            destination.name, destination.kind,
        )
        if not is_reply:
            self._emit(MessageEvent(
                direction=Direction.OUTGOING,
                topic=destination.name,
                content=outbound.content,
                model=outbound.model,
                tokens=outbound.tokens,
            ))
        return ""

    # -- helper operations --------------------------------------------------

    async def direct_chat(self, content: str) -> ChatResult:
        """Send *content* straight through the tool loop (no routing, no dispatch)."""
        trace_id = new_trace_id()
        context = self._build_context(content, routing=False)
        try:
            response = await asyncio.wait_for(
                self._run_tool_loop(context, trace_id),
                timeout=self.config.direct_chat_timeout,
            )
        except asyncio.TimeoutError:
            return ChatResult(error=f"completion timed out after {self.config.direct_chat_timeout}s")
        except Exception as exc:
            logger.error("Direct chat failed trace_id=%s error=%s", trace_id, exc)
            return ChatResult(error=f"completion failed: {exc}")
        return ChatResult(
            content=response.content,
            model=response.model,
            tokens=response.usage.total_tokens,
        )

    async def publish_message(self, topic: str, data: bytes | str) -> None:
        """Fire-and-forget publish to a platform topic."""
        payload = data.encode("utf-8") if isinstance(data, str) else data
        logger.debug("Publishing message topic=%s size=%d", topic, len(payload))
        self._emit(MessageEvent(
            direction=Direction.OUTGOING, topic=topic,
            content=payload.decode("utf-8", errors="replace"),
        ))
        await asyncio.wait_for(
            self.platform.publish(topic, payload), timeout=self.config.publish_timeout
        )

    async def request_message(self, topic: str, data: bytes | str) -> bytes:
        """Request/reply on a platform topic; returns the reply payload."""
        payload = data.encode("utf-8") if isinstance(data, str) else data
        logger.debug("Sending request topic=%s size=%d", topic, len(payload))
        self._emit(MessageEvent(
            direction=Direction.OUTGOING, topic=topic,
            content=payload.decode("utf-8", errors="replace"),
        ))
        reply = await asyncio.wait_for(
            self.platform.request(topic, payload, self.config.request_timeout),
            timeout=self.config.request_timeout,
        )
        self._emit(MessageEvent(
            direction=Direction.INCOMING, topic=f"{topic}.reply",
            content=reply.decode("utf-8", errors="replace"),
        ))
        return reply

    async def watch_topic(self, topic: str, callback: WatchCallback) -> None:
        """Watch one topic; a new watch replaces the previous one."""
        self.stop_watching()

        def on_message(message: PlatformMessage) -> None:
            callback(message.received_at, message.data.decode("utf-8", errors="replace"))

        self._watch = await self.platform.subscribe(topic, on_message)
        self._watch_topic = topic
        logger.info("Watching topic %s", topic)

    def stop_watching(self) -> None:
        if self._watch is None:
            return
        logger.debug("Stopping watch on %s", self._watch_topic)
        watch, self._watch, self._watch_topic = self._watch, None, ""
        watch.unsubscribe()

    @property
    def watching_topic(self) -> str:
        return self._watch_topic
