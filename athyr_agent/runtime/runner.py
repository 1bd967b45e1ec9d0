"""Agent lifecycle: wire platform, tools, plugins and the orchestrator.

:class:`AgentRunner` owns every long-lived resource of a running agent and
tears them down on shutdown.

Startup:

1. connect the platform (StatusEvent)
2. connect MCP servers, if configured (ToolsAvailableEvent)
3. load plugins; a plugin that fails to load is skipped
4. build the orchestrator
5. for each subscribe name: start the plugin source, or subscribe on the platform

Every inbound event becomes its own asyncio task, so events from different
topics and sources are processed concurrently.

Shutdown:

1. unsubscribe from the platform; events arriving from now on are dropped
2. wait up to ``drain_timeout`` for in-flight events, then cancel the rest
3. close plugin sandboxes, which also stops plugin sources
4. close MCP servers and the platform (StatusEvent)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from athyr_agent.cognition.orchestrator import MessageOrchestrator, OrchestratorConfig
from athyr_agent.config.agent_schema import AgentConfig
from athyr_agent.integrations.mcp_client import ToolBroker
from athyr_agent.platform.base import AgentPlatform, PlatformMessage, Subscription
from athyr_agent.plugins.registry import PluginRegistry
from athyr_agent.runtime.events import (
    EventBus,
    StatusEvent,
    ToolInfo,
    ToolsAvailableEvent,
)

logger = logging.getLogger(__name__)


class AgentRunner:
    """Run one agent until shutdown.

    Parameters
    ----------
    agent:
        Agent section of a loaded agent file.
    platform:
        Connected-on-start platform implementation.
    events:
        Optional event bus shared with a presentation layer.
    config:
        Orchestrator bounds and deadlines.
    tools / plugins:
        Pre-built broker and registry (tests inject fakes). Built on
        demand from the agent file when omitted.
    drain_timeout:
        Seconds shutdown waits for in-flight events before cancelling them.
    """

    def __init__(
        self,
        agent: AgentConfig,
        platform: AgentPlatform,
        events: EventBus | None = None,
        config: OrchestratorConfig | None = None,
        tools: ToolBroker | None = None,
        plugins: PluginRegistry | None = None,
        drain_timeout: float = 5.0,
    ) -> None:
        self.agent = agent
        self.platform = platform
        self.events = events
        self.config = config or OrchestratorConfig()
        self.tools = tools
        self.plugins = plugins
        self.drain_timeout = drain_timeout
        self.orchestrator: MessageOrchestrator | None = None
        self.failed_plugins: set[str] = set()

        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False
        self._stopping = False

    @property
    def agent_id(self) -> str:
        return self.platform.agent_id

    @property
    def running(self) -> bool:
        return self._started and not self._stopping

    def _emit(self, event: Any) -> None:
        if self.events is not None:
            self.events.send(event)

    # -- lifecycle ----------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Start, block until *shutdown_event* is set, then stop."""
        await self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.stop()

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("runner already started")
        self._loop = asyncio.get_running_loop()
        options = self.agent.connection.options()
        logger.debug(
            "Connection options timeout=%.1fs max_retries=%d backoff=%.1fs..%.1fs",
            options.request_timeout, options.max_retries, options.base_backoff, options.max_backoff,
        )

        try:
            await self.platform.connect()
        except Exception as exc:
            self._emit(StatusEvent(connected=False, agent_name=self.agent.name, error=str(exc)))
            raise
        self._started = True
        logger.info("Connected agent_id=%s agent=%s", self.agent_id, self.agent.name)
        self._emit(StatusEvent(connected=True, agent_id=self.agent_id, agent_name=self.agent.name))

        try:
            await self._start_tools()
            self._start_plugins()
            self.orchestrator = MessageOrchestrator(
                agent=self.agent,
                platform=self.platform,
                tools=self.tools,
                plugins=self.plugins,
                events=self.events,
                config=self.config,
            )
            await self._start_subscriptions()
        except BaseException:
            await self.stop()
            raise

        logger.info(
            "Agent running name=%s subscriptions=%s", self.agent.name, self.agent.topics.subscribe
        )

    async def _start_tools(self) -> None:
        if self.tools is None and not self.agent.mcp.servers:
            return
        if self.tools is None:
            self.tools = ToolBroker()
        if self.agent.mcp.servers:
            await self.tools.connect(self.agent.mcp.servers)
        tools = self.tools.list_tools()
        logger.info("MCP tools available count=%d", len(tools))
        self._emit(ToolsAvailableEvent(tools=[
            ToolInfo(name=t.name, description=t.description, server=t.server) for t in tools
        ]))

    def _start_plugins(self) -> None:
        if self.plugins is None and not self.agent.plugins:
            return
        if self.plugins is None:
            self.plugins = PluginRegistry(publish_timeout=self.config.publish_timeout)
        failures = self.plugins.load_all(self.agent.plugins)
        self.failed_plugins = {f.plugin_name for f in failures}

    async def _start_subscriptions(self) -> None:
        for name in self.agent.topics.subscribe:
            if self.plugins is not None and self.plugins.is_plugin(name):
                logger.info("Starting plugin source plugin=%s", name)
                self.plugins.start_source(name, self._source_callback(name))
            elif name in self.failed_plugins:
                logger.warning("Skipping subscription %s: plugin failed to load", name)
            else:
                logger.info("Subscribing to topic %s", name)
                self._subscriptions.append(await self.platform.subscribe(name, self._on_message))

    async def stop(self) -> None:
        if not self._started or self._stopping:
            return
        self._stopping = True

        for subscription in self._subscriptions:
            try:
                subscription.unsubscribe()
            except Exception as exc:
                logger.error("Unsubscribe from %s failed: %s", subscription.subject, exc)
        self._subscriptions.clear()
        if self.orchestrator is not None:
            self.orchestrator.stop_watching()

        # events already in flight may still publish to plugin destinations
        await self._drain_tasks()

        if self.plugins is not None:
            await asyncio.to_thread(self.plugins.close_all)

        if self.tools is not None:
            await self.tools.close()

        agent_id = self.agent_id
        await self.platform.close()
        logger.info("Disconnected reason=shutdown agent=%s", self.agent.name)
        self._emit(StatusEvent(connected=False, agent_id=agent_id, agent_name=self.agent.name))
        self._started = False
        self._stopping = False

    async def _drain_tasks(self) -> None:
        await asyncio.sleep(0)
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self.drain_timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d in-flight event(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    # -- inbound events -----------------------------------------------------

    def _on_message(self, message: PlatformMessage) -> None:
        self._schedule(message.subject, message.data, message.reply)

    def _source_callback(self, name: str):
        def on_event(data: str) -> None:
            self._schedule(name, data.encode("utf-8"))
        return on_event

    def _schedule(self, topic: str, payload: bytes, reply: str = "") -> None:
        """Hop onto the event loop from any thread and start an event task."""
        loop = self._loop
        if loop is None or not self.running:
            logger.debug("Dropping event from %s: runner is not accepting events", topic)
            return
        try:
            loop.call_soon_threadsafe(self._spawn, topic, payload, reply)
        except RuntimeError:
            logger.debug("Dropping event from %s: event loop is closed", topic)

    def _spawn(self, topic: str, payload: bytes, reply: str) -> None:
        if self.orchestrator is None or self._stopping:
            return
        task = asyncio.create_task(
            self.orchestrator.handle(topic, payload, reply), name=f"event-{topic}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until every scheduled event has been processed."""
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        while True:
            await asyncio.sleep(0)
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                await asyncio.sleep(0)
                if not any(not t.done() for t in self._tasks):
                    return
                continue
            remaining = None if deadline is None else deadline - asyncio.get_running_loop().time()
            if remaining is not None and remaining <= 0:
                raise TimeoutError("events still in flight")
            await asyncio.wait(pending, timeout=remaining)
