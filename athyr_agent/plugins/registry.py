"""
Plugin registry for athyr-agent.

This module owns every loaded Lua plugin. Each registry entry pairs one
LuaSandbox with one CapabilityBridge, plus the static definition it was
built from. A plugin may act as a source (it defines ``subscribe``), a
destination (it defines ``publish``), or both.

Registry Features:
    - Load plugins from definitions; a failing plugin is skipped alone
    - Name lookup that tells plugins apart from platform topics
    - Source loops on dedicated daemon threads
    - Synchronous destination publish with a bounded wait
    - Shutdown that tolerates source loops which never return
    - Plugin event notifications

Example:
    from athyr_agent.plugins.registry import PluginRegistry

    registry = PluginRegistry()
    failures = registry.load_all(agent.plugins)

    if registry.is_plugin("file-watcher"):
        registry.start_source("file-watcher", on_event=print)

    registry.publish("json-catalog", '{"content": "hi"}')
    registry.close_all()
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable
import json
import logging
import threading

import httpx

from athyr_agent.config.agent_schema import PluginDefinition
from athyr_agent.plugins.bridge import CapabilityBridge
from athyr_agent.plugins.sandbox import (
    ENTRY_POINTS,
    LuaSandbox,
    PluginLoadError,
    SandboxBusyError,
    SandboxClosedError,
    SandboxError,
)

logger = logging.getLogger(__name__)


class PluginState(str, Enum):
    """State of a registered plugin."""
    LOADED = "loaded"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    CLOSED = "closed"


class UnknownPluginError(KeyError):
    """Raised when a plugin name is not registered."""

    def __init__(self, plugin_name: str):
        self.plugin_name = plugin_name
        super().__init__(plugin_name)

    def __str__(self) -> str:
        return f"plugin {self.plugin_name!r} not found"


class PluginExecutionError(Exception):
    """Raised when a plugin entry point cannot be run or fails.

    Attributes:
        plugin_name: Name of the plugin that failed.
        reason: Reason for the failure.
        original: Original exception if any.
    """

    def __init__(
        self,
        plugin_name: str,
        reason: str,
        original: Exception | None = None,
    ):
        self.plugin_name = plugin_name
        self.reason = reason
        self.original = original
        super().__init__(f"Plugin '{plugin_name}' failed: {reason}")


@dataclass
class RegisteredPlugin:
    """A plugin registered in the registry.

    Attributes:
        definition: Static definition from the agent file.
        sandbox: The plugin's exclusive sandbox.
        bridge: Capability bridge installed in the sandbox.
        state: Current lifecycle state.
        registered_at: When the plugin was loaded.
        call_count: Number of publish invocations.
        error_count: Number of failed invocations.
        emitted_count: Number of data items emitted by the source loop.
        source_thread: Thread running the source loop, if started.
    """

    definition: PluginDefinition
    sandbox: LuaSandbox
    bridge: CapabilityBridge
    state: PluginState = PluginState.LOADED
    registered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    call_count: int = 0
    error_count: int = 0
    emitted_count: int = 0
    source_thread: threading.Thread | None = None
    entry_points: frozenset[str] = frozenset()

    @property
    def name(self) -> str:
        """Get the plugin name."""
        return self.definition.name

    @property
    def is_source(self) -> bool:
        """Whether the script defines ``subscribe``."""
        return "subscribe" in self.entry_points

    @property
    def is_destination(self) -> bool:
        """Whether the script defines ``publish``."""
        return "publish" in self.entry_points

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Dictionary representation.
        """
        return {
            "name": self.name,
            "file": self.definition.file,
            "restrict": list(self.definition.restrict),
            "state": self.state.value,
            "registered_at": self.registered_at.isoformat(),
            "call_count": self.call_count,
            "error_count": self.error_count,
            "emitted_count": self.emitted_count,
        }


@dataclass
class PluginEvent:
    """An event from the plugin system.

    Attributes:
        event_type: Type of event.
        plugin_name: Name of the affected plugin.
        timestamp: When the event occurred.
        details: Additional event details.
    """

    event_type: str
    plugin_name: str
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = field(default_factory=dict)


# Type for event listeners
EventListener = Callable[[PluginEvent], None]

# Callback receiving one datum emitted by a source loop
SourceCallback = Callable[[str], None]


class PluginRegistry:
    """Central registry for loaded Lua plugins.

    Mutations of the name map happen under a lock; lookups read the map
    directly, so any number of threads may resolve names concurrently.
    Each sandbox is only ever entered by one thread at a time (see
    LuaSandbox), so a source loop and a publish to the same plugin never
    overlap: the publish waits up to ``publish_timeout`` seconds and then
    fails with PluginExecutionError.

    Attributes:
        publish_timeout: Seconds a publish waits for a busy sandbox.
        join_timeout: Seconds close_all() waits for each source thread.

    Example:
        registry = PluginRegistry(publish_timeout=10.0)
        registry.load(PluginDefinition(name="sink", file="sink.lua"))
        registry.publish("sink", "hello")
    """

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        publish_timeout: float = 10.0,
        join_timeout: float = 2.0,
    ):
        """Initialize the plugin registry.

        Args:
            http_client: Optional httpx client shared by every bridge.
            publish_timeout: Seconds a publish waits for a busy sandbox.
            join_timeout: Seconds close_all() waits per source thread.
        """
        self.publish_timeout = publish_timeout
        self.join_timeout = join_timeout
        self._http_client = http_client
        self._plugins: dict[str, RegisteredPlugin] = {}
        self._lock = threading.Lock()
        self._event_listeners: list[EventListener] = []

    # -- loading ------------------------------------------------------------

    def load(self, definition: PluginDefinition) -> RegisteredPlugin:
        """Build a sandbox and bridge for a plugin and run its script.

        Args:
            definition: Plugin definition from the agent file.

        Returns:
            The registered plugin.

        Raises:
            PluginLoadError: If the name is taken, the sandbox cannot be
                created, or the script fails to load.
        """
        name = definition.name
        if name in self._plugins:
            raise PluginLoadError(name, "a plugin with this name is already loaded")

        sandbox = LuaSandbox(restrictions=definition.restrict, name=name)
        bridge = CapabilityBridge(sandbox, http_client=self._http_client)
        try:
            bridge.install()
            sandbox.load(definition.file)
        except PluginLoadError:
            sandbox.close()
            bridge.close()
            raise
        except SandboxError as e:
            sandbox.close()
            bridge.close()
            raise PluginLoadError(name, str(e), e) from e

        registered = RegisteredPlugin(
            definition=definition,
            sandbox=sandbox,
            bridge=bridge,
            entry_points=frozenset(
                ep for ep in ENTRY_POINTS if sandbox.has_entry_point(ep)
            ),
        )
        with self._lock:
            if name in self._plugins:
                sandbox.close()
                bridge.close()
                raise PluginLoadError(name, "a plugin with this name is already loaded")
            self._plugins[name] = registered

        self._emit_event(PluginEvent(
            event_type="plugin_loaded",
            plugin_name=name,
            details={
                "source": registered.is_source,
                "destination": registered.is_destination,
            },
        ))

        logger.info(
            f"Loaded plugin: {name} (source={registered.is_source}, "
            f"destination={registered.is_destination}, restrict={list(definition.restrict)})"
        )
        return registered

    def load_all(self, definitions: Iterable[PluginDefinition]) -> list[PluginLoadError]:
        """Load several plugins, skipping any that fail.

        Args:
            definitions: Plugin definitions.

        Returns:
            The load errors of the skipped plugins.
        """
        failures: list[PluginLoadError] = []
        for definition in definitions:
            try:
                self.load(definition)
            except PluginLoadError as e:
                logger.error(f"Skipping plugin {definition.name}: {e.reason}")
                failures.append(e)
                self._emit_event(PluginEvent(
                    event_type="plugin_load_failed",
                    plugin_name=definition.name,
                    details={"reason": e.reason},
                ))
        return failures

    # -- lookup -------------------------------------------------------------

    def is_plugin(self, name: str) -> bool:
        """Check whether a destination/source name refers to a loaded plugin.

        Args:
            name: Configured destination or source name.

        Returns:
            True for a plugin, False for a platform topic.
        """
        return name in self._plugins

    def get_plugin(self, name: str) -> RegisteredPlugin | None:
        """Get a registered plugin by name.

        Args:
            name: Plugin name.

        Returns:
            RegisteredPlugin if found, None otherwise.
        """
        return self._plugins.get(name)

    def get_all_plugins(self) -> list[RegisteredPlugin]:
        """Get all registered plugins.

        Returns:
            List of registered plugins.
        """
        return list(self._plugins.values())

    def _require(self, name: str) -> RegisteredPlugin:
        registered = self._plugins.get(name)
        if registered is None:
            raise UnknownPluginError(name)
        return registered

    # -- invocation ---------------------------------------------------------

    def start_source(self, name: str, on_event: SourceCallback) -> threading.Thread:
        """Run a plugin's ``subscribe`` entry point on its own thread.

        The script receives its static config and an emit function. Every
        emit forwards one datum (as text; tables are JSON encoded) to
        ``on_event`` on the source thread. ``on_event`` must return
        quickly; errors it raises are logged and do not stop the loop.

        Args:
            name: Plugin name.
            on_event: Callback receiving each emitted datum.

        Returns:
            The started daemon thread.

        Raises:
            UnknownPluginError: If the plugin is not loaded.
            PluginExecutionError: If the plugin has no ``subscribe`` entry
                point or its source loop is already running.
        """
        registered = self._require(name)
        if not registered.is_source:
            raise PluginExecutionError(name, "plugin does not define a subscribe function")

        with self._lock:
            if registered.source_thread is not None and registered.source_thread.is_alive():
                raise PluginExecutionError(name, "source loop is already running")
            thread = threading.Thread(
                target=self._run_source,
                args=(registered, on_event),
                name=f"plugin-source-{name}",
                daemon=True,
            )
            registered.source_thread = thread
            registered.state = PluginState.RUNNING

        thread.start()
        self._emit_event(PluginEvent(event_type="source_started", plugin_name=name))
        logger.info(f"Started source loop for plugin: {name}")
        return thread

    def _run_source(self, registered: RegisteredPlugin, on_event: SourceCallback) -> None:
        name = registered.name

        def emit(datum: Any) -> None:
            text = _datum_text(registered.sandbox.codec.from_lua(datum))
            registered.emitted_count += 1
            try:
                on_event(text)
            except Exception as e:
                logger.error(f"Event callback for plugin {name} failed: {e}")

        try:
            registered.sandbox.call("subscribe", registered.definition.config, emit)
            logger.info(f"Source loop for plugin {name} returned")
            registered.state = PluginState.STOPPED
        except SandboxClosedError:
            logger.info(f"Source loop for plugin {name} stopped by shutdown")
            registered.state = PluginState.CLOSED
        except Exception as e:
            if registered.sandbox.closed:
                logger.info(f"Source loop for plugin {name} interrupted by shutdown: {e}")
                registered.state = PluginState.CLOSED
            else:
                registered.error_count += 1
                registered.state = PluginState.FAILED
                logger.error(f"Source loop for plugin {name} failed: {e}")
                self._emit_event(PluginEvent(
                    event_type="source_failed",
                    plugin_name=name,
                    details={"error": str(e)},
                ))

    def publish(self, name: str, data: Any) -> Any:
        """Invoke a plugin's ``publish`` entry point synchronously.

        Args:
            name: Plugin name.
            data: Datum handed to the script (usually response text).

        Returns:
            Whatever the script returned, converted to a host value.

        Raises:
            UnknownPluginError: If the plugin is not loaded.
            PluginExecutionError: If the plugin has no ``publish`` entry
                point, stays busy past the timeout, or the script fails.
        """
        registered = self._require(name)
        if not registered.is_destination:
            raise PluginExecutionError(name, "plugin does not define a publish function")

        registered.call_count += 1
        try:
            return registered.sandbox.call(
                "publish",
                registered.definition.config,
                data,
                timeout=self.publish_timeout,
            )
        except SandboxBusyError as e:
            registered.error_count += 1
            raise PluginExecutionError(
                name, f"sandbox busy for more than {self.publish_timeout}s", e
            ) from e
        except Exception as e:
            registered.error_count += 1
            raise PluginExecutionError(name, str(e), e) from e

    # -- shutdown -----------------------------------------------------------

    def close_all(self) -> None:
        """Close every sandbox and wait briefly for source threads.

        Source loops blocked in sleep() or a capability call unwind with
        SandboxClosedError; loops busy in pure Lua are stopped by the
        instruction hook. A thread still alive after ``join_timeout`` is
        left behind as a daemon and dies with the process.
        """
        with self._lock:
            plugins = list(self._plugins.values())
            self._plugins.clear()

        for registered in plugins:
            registered.sandbox.close()

        for registered in plugins:
            thread = registered.source_thread
            if thread is not None and thread.is_alive():
                thread.join(self.join_timeout)
                if thread.is_alive():
                    logger.warning(
                        f"Source thread for plugin {registered.name} did not stop "
                        f"within {self.join_timeout}s; abandoning it"
                    )
            registered.bridge.close()
            registered.state = PluginState.CLOSED
            self._emit_event(PluginEvent(event_type="plugin_closed", plugin_name=registered.name))

        if plugins:
            logger.info(f"Closed {len(plugins)} plugin(s)")

    # -- events -------------------------------------------------------------

    def add_event_listener(self, listener: EventListener) -> None:
        """Add a listener for plugin events.

        Args:
            listener: Callback function for events.
        """
        self._event_listeners.append(listener)

    def remove_event_listener(self, listener: EventListener) -> None:
        """Remove an event listener.

        Args:
            listener: The listener to remove.
        """
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def _emit_event(self, event: PluginEvent) -> None:
        for listener in self._event_listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, name: str) -> bool:
        return self.is_plugin(name)


def _datum_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, ensure_ascii=False)
