"""
Lua plugin system for athyr-agent.

Plugins are Lua scripts that act as message sources, destinations, or both:
- subscribe(emit): a long-running loop that calls emit(data) per event
- publish(data):   receives a response the agent routed to the plugin

Each plugin runs in its own LuaSandbox with the unsafe standard library
removed. Scripts reach the outside world only through the capability
bridge (fs, http, json modules plus the sleep and log globals), and every
bridge call is checked against the plugin's restrict list.

Example:
    from athyr_agent.plugins import PluginRegistry

    registry = PluginRegistry()
    registry.load(PluginDefinition(name="watcher", file="watcher.lua"))
    registry.start_source("watcher", lambda data: print(data))
    ...
    registry.close_all()
"""

from athyr_agent.plugins.sandbox import (
    ENTRY_POINTS,
    CapabilityDenied,
    LuaSandbox,
    PluginLoadError,
    SandboxBusyError,
    SandboxClosedError,
    SandboxError,
    ScriptError,
    is_restricted,
)
from athyr_agent.plugins.values import ScriptValue, ValueCodec
from athyr_agent.plugins.bridge import CapabilityBridge
from athyr_agent.plugins.registry import (
    PluginEvent,
    PluginExecutionError,
    PluginRegistry,
    PluginState,
    RegisteredPlugin,
    UnknownPluginError,
)

__all__ = [
    # Sandbox
    "ENTRY_POINTS",
    "CapabilityDenied",
    "LuaSandbox",
    "PluginLoadError",
    "SandboxBusyError",
    "SandboxClosedError",
    "SandboxError",
    "ScriptError",
    "is_restricted",
    # Values
    "ScriptValue",
    "ValueCodec",
    # Bridge
    "CapabilityBridge",
    # Registry
    "PluginEvent",
    "PluginExecutionError",
    "PluginRegistry",
    "PluginState",
    "RegisteredPlugin",
    "UnknownPluginError",
]
