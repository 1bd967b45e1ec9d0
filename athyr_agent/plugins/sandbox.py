"""
Lua script sandboxing for athyr-agent plugins.

This module provides the isolated execution environment that adapter
scripts run in. Every plugin gets its own Lua runtime (via lupa) with a
reduced standard library and a per-plugin restriction list that the
capability bridge consults on every call.

Security Measures:
    - Only base, table, string, math, coroutine and a trimmed os library
    - No io, debug, package table or loaders, dofile/loadfile/load or string.dump
    - require() serves only registered capability modules and safe libraries
    - No access to Python objects' attributes from Lua (attribute filter)
    - Capability restrictions by module ("fs") or function ("fs.write")
    - An owned cancellation token, checked at every capability call and
      by an instruction-count hook installed on every coroutine, so close()
      can unwind a running loop

Example:
    from athyr_agent.plugins.sandbox import LuaSandbox

    sandbox = LuaSandbox(restrictions=["http", "fs.write"], name="watcher")
    sandbox.load("plugins/file-watcher.lua")

    sandbox.is_restricted("fs.read")    # False
    sandbox.is_restricted("http.get")   # True

    sandbox.call("publish", {"path": "/tmp/out"}, "hello")
    sandbox.close()
"""

from pathlib import Path
from typing import Any, Iterable
import logging
import threading

import lupa
from lupa import LuaError, LuaRuntime, LuaSyntaxError

from athyr_agent.plugins.values import ValueCodec

logger = logging.getLogger(__name__)

ENTRY_POINTS = ("subscribe", "publish")

# Installed into every runtime before any script code runs. Returns the
# helpers the host needs after the debug library has been removed.
_PRELUDE = """
local sethook = debug.sethook
local setmetatable, getmetatable = setmetatable, getmetatable
local co_create, co_resume = coroutine.create, coroutine.resume
local pack = table.pack or function(...) return { n = select("#", ...), ... } end
local unpack = table.unpack or unpack
local array_mt = {}

local SAFE_MODULES = {
    _G = true, coroutine = true, math = true, string = true, table = true, utf8 = true,
}

return function(check_cancelled, hook_interval)
    local function hook() check_cancelled() end
    sethook(hook, "", hook_interval)

    -- hooks are per coroutine; new ones must get the cancellation hook too
    local function hooked(fn)
        local co = co_create(fn)
        sethook(co, hook, "", hook_interval)
        return co
    end
    coroutine.create = hooked
    coroutine.wrap = function(fn)
        local co = hooked(fn)
        return function(...)
            local results = pack(co_resume(co, ...))
            if not results[1] then
                error(results[2], 0)
            end
            return unpack(results, 2, results.n)
        end
    end

    io = nil
    debug = nil
    dofile = nil
    loadfile = nil
    load = nil
    loadstring = nil
    collectgarbage = nil
    python = nil
    string.dump = nil

    os = {
        time = os.time,
        date = os.date,
        clock = os.clock,
        difftime = os.difftime,
    }

    package.loadlib = nil
    package.path = ""
    package.cpath = ""
    if package.searchers then
        package.searchers = { package.searchers[1] }
    elseif package.loaders then
        package.loaders = { package.loaders[1] }
    end

    -- require() answers from package.loaded before any searcher runs
    local loaded = package.loaded
    for name in pairs(loaded) do
        if not SAFE_MODULES[name] then
            loaded[name] = nil
        end
    end
    loaded.os = os

    local preload = package.preload
    package = nil

    local helpers = {}
    function helpers.register_module(name, module)
        preload[name] = function() return module end
    end
    function helpers.set_global(name, value)
        _G[name] = value
    end
    function helpers.mark_array(t)
        return setmetatable(t, array_mt)
    end
    function helpers.is_array(t)
        return getmetatable(t) == array_mt
    end
    return helpers
end
"""


class SandboxError(Exception):
    """Base class for sandbox failures."""


class PluginLoadError(SandboxError):
    """Raised when a plugin script or its sandbox cannot be set up.

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
        super().__init__(f"Failed to load plugin '{plugin_name}': {reason}")


class CapabilityDenied(SandboxError, PermissionError):
    """Raised inside a script when it calls a restricted capability."""

    def __init__(self, capability: str, plugin_name: str = ""):
        self.capability = capability
        self.plugin_name = plugin_name
        super().__init__(f"{capability} is restricted for this plugin")


class SandboxClosedError(SandboxError):
    """Raised when a sandbox is used after (or while) being closed."""


class SandboxBusyError(SandboxError):
    """Raised when the sandbox is held by another thread past the deadline."""


class ScriptError(SandboxError):
    """Raised when script code fails with a Lua error."""


def _deny_attribute_access(obj: Any, attr_name: Any, is_setting: bool) -> Any:
    raise AttributeError("attribute access is not allowed from plugin scripts")


def is_restricted(restrictions: Iterable[str], capability: str) -> bool:
    """Check a capability path against a restriction list.

    A restriction matches when it equals the capability verbatim
    ("http.post" blocks "http.post") or when it is a bare module name
    that prefixes the capability ("fs" blocks "fs.read", "fs.write", ...).

    Args:
        restrictions: Restriction identifiers.
        capability: Capability path such as "fs.write".

    Returns:
        True if the capability is blocked.
    """
    for restriction in restrictions:
        if restriction == capability:
            return True
        if "." not in restriction and capability.startswith(f"{restriction}."):
            return True
    return False


class LuaSandbox:
    """Isolated Lua execution environment for one plugin.

    The sandbox owns a single lupa runtime. Lua state is never touched by
    two threads at once: every entry into the runtime goes through an
    internal lock, and a long-running source loop holds that lock for as
    long as it runs.

    Attributes:
        name: Plugin name, used in logs and error messages.
        restrictions: Capability identifiers blocked for this plugin.
        codec: Converts values across the host/script boundary.

    Example:
        sandbox = LuaSandbox(restrictions=["fs.write"], name="reader")
        sandbox.load(path)
        if sandbox.has_entry_point("publish"):
            sandbox.call("publish", config, data)
    """

    def __init__(
        self,
        restrictions: Iterable[str] = (),
        name: str = "",
        hook_interval: int = 1000,
    ):
        """Create a fresh sandboxed runtime.

        Args:
            restrictions: Capability identifiers to block ("fs", "http.post").
            name: Plugin name.
            hook_interval: Lua instructions between cancellation checks.

        Raises:
            PluginLoadError: If the Lua runtime cannot be created.
        """
        self.name = name
        self._restrictions = tuple(restrictions)
        self._cancelled = threading.Event()
        self._lock = threading.RLock()
        self._loaded_from: Path | None = None

        try:
            self._lua: LuaRuntime | None = LuaRuntime(
                unpack_returned_tuples=True,
                register_eval=False,
                register_builtins=False,
                attribute_filter=_deny_attribute_access,
            )
            install = self._lua.execute(_PRELUDE)
            self._helpers = install(self._check_cancelled, hook_interval)
        except LuaError as e:
            raise PluginLoadError(name, f"cannot open sandbox runtime: {e}", e) from e

        self.codec = ValueCodec(
            self._lua,
            mark_array=self._helpers.mark_array,
            is_array=self._helpers.is_array,
        )

    @property
    def restrictions(self) -> tuple[str, ...]:
        """Get the restriction list."""
        return self._restrictions

    @property
    def closed(self) -> bool:
        """Whether close() has been requested."""
        return self._cancelled.is_set()

    @property
    def cancel_token(self) -> threading.Event:
        """Event that is set once the sandbox is closing."""
        return self._cancelled

    def is_restricted(self, capability: str) -> bool:
        """Check whether a capability is blocked for this plugin.

        Evaluated on every call, never cached.

        Args:
            capability: Capability path such as "fs.write".

        Returns:
            True if blocked.
        """
        return is_restricted(self._restrictions, capability)

    def ensure_allowed(self, capability: str) -> None:
        """Raise if the sandbox is closing or the capability is blocked.

        Args:
            capability: Capability path such as "http.get".

        Raises:
            SandboxClosedError: If the sandbox is closing.
            CapabilityDenied: If the capability is restricted.
        """
        self._check_cancelled()
        if self.is_restricted(capability):
            logger.debug(f"Blocked {capability} for plugin {self.name}")
            raise CapabilityDenied(capability, self.name)

    def register_module(self, name: str, functions: dict[str, Any]) -> None:
        """Expose a table of host functions as a `require`-able module.

        Args:
            name: Module name scripts pass to require().
            functions: Mapping of function name to Python callable.
        """
        with self._lock:
            runtime = self._runtime()
            self._helpers.register_module(name, runtime.table_from(functions))

    def set_global(self, name: str, value: Any) -> None:
        """Expose a host callable or value as a Lua global.

        Args:
            name: Global name.
            value: Python callable or plain value.
        """
        with self._lock:
            self._runtime()
            self._helpers.set_global(name, value)

    def load(self, script_path: str | Path) -> None:
        """Execute a script once so it can define its entry points.

        Args:
            script_path: Path to the Lua script.

        Raises:
            PluginLoadError: If the file is unreadable, has a syntax or
                runtime error, or defines neither entry point.
        """
        path = Path(script_path)
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PluginLoadError(self.name, f"cannot read {path}: {e}", e) from e

        with self._lock:
            runtime = self._runtime()
            try:
                runtime.execute(source)
            except LuaSyntaxError as e:
                raise PluginLoadError(self.name, f"syntax error in {path}: {e}", e) from e
            except Exception as e:
                raise PluginLoadError(self.name, f"error running {path}: {e}", e) from e

            if not any(self._entry_point(ep) is not None for ep in ENTRY_POINTS):
                raise PluginLoadError(
                    self.name,
                    f"{path} defines neither a subscribe nor a publish function",
                )

        self._loaded_from = path
        logger.debug(f"Loaded script {path} into sandbox {self.name}")

    def has_entry_point(self, entry_point: str) -> bool:
        """Check whether the loaded script defines a global function.

        Args:
            entry_point: Function name ("subscribe" or "publish").

        Returns:
            True if defined.
        """
        with self._lock:
            if self._lua is None:
                return False
            return self._entry_point(entry_point) is not None

    def call(
        self,
        entry_point: str,
        *args: Any,
        timeout: float | None = None,
    ) -> Any:
        """Call a script entry point with host values.

        Arguments are marshalled into Lua values explicitly; the return
        value is marshalled back. Python callables are passed through
        unchanged so scripts can call them.

        Args:
            entry_point: Global function name.
            *args: Host values (None/bool/int/float/str/list/dict/callable).
            timeout: Seconds to wait for the sandbox if another thread
                holds it. None waits indefinitely.

        Returns:
            The script's first return value, converted to a host value.

        Raises:
            SandboxBusyError: If the sandbox stayed busy past the timeout.
            SandboxClosedError: If the sandbox is closed.
            SandboxError: If the entry point is missing.
            ScriptError: If the script raised a Lua error.
            CapabilityDenied: If a restricted capability call was not
                handled by the script.
        """
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise SandboxBusyError(
                f"sandbox {self.name} is busy (held by a running script)"
            )
        try:
            self._check_cancelled()
            fn = self._entry_point(entry_point)
            if fn is None:
                raise SandboxError(
                    f"plugin {self.name} does not define a {entry_point} function"
                )
            lua_args = [
                arg if callable(arg) else self.codec.to_lua(arg) for arg in args
            ]
            try:
                result = fn(*lua_args)
            except LuaError as e:
                if self.closed:
                    raise SandboxClosedError(
                        f"sandbox {self.name} closed during {entry_point}"
                    ) from e
                raise ScriptError(f"{self.name}.{entry_point}: {e}") from e
            # a script can swallow the cancellation error (pcall, coroutine.resume)
            self._check_cancelled()
            if isinstance(result, tuple):
                result = result[0] if result else None
            return self.codec.from_lua(result)
        finally:
            if self.closed:
                self._release_runtime()
            self._lock.release()

    def execute(self, source: str) -> Any:
        """Run a Lua chunk inside the sandbox and return its result.

        Used by tests and diagnostics; scripts loaded with load() should
        expose behavior through entry points instead.
        """
        with self._lock:
            runtime = self._runtime()
            try:
                result = runtime.execute(source)
            except LuaError as e:
                raise ScriptError(f"{self.name}: {e}") from e
            if isinstance(result, tuple):
                return tuple(self.codec.from_lua(r) for r in result)
            return self.codec.from_lua(result)

    def close(self) -> None:
        """Release the runtime.

        Safe to call while a source loop runs on another thread: the
        cancellation token is set immediately, in-flight capability calls
        and the instruction hook raise SandboxClosedError in that thread,
        and the runtime is released once the loop unwinds.
        """
        self._cancelled.set()
        if self._lock.acquire(blocking=False):
            try:
                self._release_runtime()
            finally:
                self._lock.release()
        else:
            logger.debug(f"Sandbox {self.name} busy; runtime released when its loop exits")

    # -- internals ----------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise SandboxClosedError(f"sandbox {self.name} is closed")

    def _runtime(self) -> LuaRuntime:
        if self._lua is None:
            raise SandboxClosedError(f"sandbox {self.name} is closed")
        return self._lua

    def _entry_point(self, entry_point: str) -> Any:
        fn = self._runtime().globals()[entry_point]
        if lupa.lua_type(fn) != "function":
            return None
        return fn

    def _release_runtime(self) -> None:
        self._lua = None
        self._helpers = None

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return (
            f"<LuaSandbox name={self.name!r} {state} "
            f"restrictions={list(self._restrictions)}>"
        )
