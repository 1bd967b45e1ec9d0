"""Tests for athyr_agent.plugins.sandbox and athyr_agent.plugins.values."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from athyr_agent.plugins.sandbox import (
    CapabilityDenied,
    LuaSandbox,
    PluginLoadError,
    SandboxBusyError,
    SandboxClosedError,
    SandboxError,
    ScriptError,
    is_restricted,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _script(tmp_path: Path, source: str, name: str = "plugin.lua") -> Path:
    path = tmp_path / name
    path.write_text(source, encoding="utf-8")
    return path


def _run_in_thread(fn, *args):
    """Run fn on a daemon thread; return (thread, outcome dict)."""
    outcome: dict = {}

    def target():
        try:
            outcome["result"] = fn(*args)
        except BaseException as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, outcome


SPIN = "function subscribe(config, emit) while true do end end"


# ---------------------------------------------------------------------------
# Restriction matching
# ---------------------------------------------------------------------------

class TestIsRestricted:
    def test_module_restriction_blocks_every_function(self):
        assert is_restricted(["fs"], "fs.read")
        assert is_restricted(["fs"], "fs.write")
        assert is_restricted(["fs"], "fs.list")

    def test_function_restriction_is_exact(self):
        assert is_restricted(["fs.write"], "fs.write")
        assert not is_restricted(["fs.write"], "fs.read")
        assert not is_restricted(["fs.write"], "fs.list")

    def test_module_name_must_match_whole_segment(self):
        assert not is_restricted(["f"], "fs.read")
        assert not is_restricted(["http"], "https.get")

    def test_empty_restrictions_allow_everything(self):
        assert not is_restricted([], "http.post")

    def test_global_capabilities(self):
        assert is_restricted(["sleep"], "sleep")
        assert not is_restricted(["sleep"], "log")

    def test_sandbox_evaluates_each_call(self):
        sandbox = LuaSandbox(restrictions=["http"], name="t")
        try:
            assert sandbox.is_restricted("http.get")
            assert not sandbox.is_restricted("json.encode")
            assert sandbox.restrictions == ("http",)
        finally:
            sandbox.close()

    def test_ensure_allowed_raises_permission_error(self):
        sandbox = LuaSandbox(restrictions=["fs.write"], name="writer")
        try:
            with pytest.raises(CapabilityDenied) as exc_info:
                sandbox.ensure_allowed("fs.write")
            assert isinstance(exc_info.value, PermissionError)
            assert exc_info.value.capability == "fs.write"
            assert "fs.write is restricted" in str(exc_info.value)
            sandbox.ensure_allowed("fs.read")
        finally:
            sandbox.close()


# ---------------------------------------------------------------------------
# Reduced standard library
# ---------------------------------------------------------------------------

class TestSandboxEnvironment:
    @pytest.fixture
    def sandbox(self):
        sb = LuaSandbox(name="env")
        yield sb
        sb.close()

    @pytest.mark.parametrize("name", ["io", "debug", "dofile", "loadfile", "load", "python"])
    def test_unsafe_globals_removed(self, sandbox, name):
        assert sandbox.execute(f"return type({name})") == "nil"

    def test_os_is_trimmed(self, sandbox):
        assert sandbox.execute("return type(os.execute)") == "nil"
        assert sandbox.execute("return type(os.remove)") == "nil"
        assert sandbox.execute("return type(os.getenv)") == "nil"
        assert sandbox.execute("return type(os.time)") == "function"

    def test_string_dump_removed(self, sandbox):
        assert sandbox.execute("return type(string.dump)") == "nil"
        assert sandbox.execute("return string.upper('ok')") == "OK"

    def test_safe_libraries_available(self, sandbox):
        assert sandbox.execute("return math.max(1, 5, 3)") == 5
        assert sandbox.execute("return table.concat({'a', 'b'}, ',')") == "a,b"
        assert sandbox.execute("return type(coroutine.create)") == "function"

    def test_require_only_sees_registered_modules(self, sandbox):
        sandbox.register_module("greet", {"hello": lambda who: f"hello {who}"})
        assert sandbox.execute('return require("greet").hello("lua")') == "hello lua"
        with pytest.raises(ScriptError):
            sandbox.execute('return require("socket")')

    @pytest.mark.parametrize("module", ["io", "debug", "package", "python", "lupa"])
    def test_require_cannot_reach_host_libraries(self, sandbox, module):
        with pytest.raises(ScriptError, match="not found"):
            sandbox.execute(f"return require('{module}')")

    def test_required_os_is_the_trimmed_table(self, sandbox):
        assert sandbox.execute("return require('os') == os")
        assert sandbox.execute("return type(require('os').execute)") == "nil"
        assert sandbox.execute("return type(require('os').getenv)") == "nil"
        assert sandbox.execute("return require('string') == string")

    def test_package_table_removed(self, sandbox):
        assert sandbox.execute("return type(package)") == "nil"

    def test_coroutine_wrap_still_works(self, sandbox):
        assert sandbox.execute(
            "local gen = coroutine.wrap(function(a) local b = coroutine.yield(a + 1) return b * 2 end)\n"
            "return gen(1), gen(5)"
        ) == (2, 10)
        with pytest.raises(ScriptError, match="inner failure"):
            sandbox.execute("coroutine.wrap(function() error('inner failure') end)()")

    def test_set_global(self, sandbox):
        sandbox.set_global("answer", 42)
        assert sandbox.execute("return answer") == 42

    def test_python_attributes_are_hidden(self, sandbox):
        class Thing:
            secret = "x"

        sandbox.set_global("thing", Thing())
        with pytest.raises((ScriptError, AttributeError)):
            sandbox.execute("return thing.secret")

    def test_multiple_returns_from_execute(self, sandbox):
        assert sandbox.execute("return 1, 'two'") == (1, "two")

    def test_lua_error_becomes_script_error(self, sandbox):
        with pytest.raises(ScriptError, match="boom"):
            sandbox.execute("error('boom')")


# ---------------------------------------------------------------------------
# Loading scripts
# ---------------------------------------------------------------------------

class TestSandboxLoad:
    def test_load_publish_only_script(self, tmp_path):
        sandbox = LuaSandbox(name="sink")
        try:
            sandbox.load(_script(tmp_path, "function publish(config, data) end"))
            assert sandbox.has_entry_point("publish")
            assert not sandbox.has_entry_point("subscribe")
        finally:
            sandbox.close()

    def test_missing_file(self, tmp_path):
        sandbox = LuaSandbox(name="gone")
        try:
            with pytest.raises(PluginLoadError) as exc_info:
                sandbox.load(tmp_path / "missing.lua")
            assert exc_info.value.plugin_name == "gone"
            assert "cannot read" in exc_info.value.reason
        finally:
            sandbox.close()

    def test_syntax_error(self, tmp_path):
        sandbox = LuaSandbox(name="broken")
        try:
            with pytest.raises(PluginLoadError, match="syntax error"):
                sandbox.load(_script(tmp_path, "function publish(config, data"))
        finally:
            sandbox.close()

    def test_runtime_error_at_load(self, tmp_path):
        sandbox = LuaSandbox(name="broken")
        try:
            with pytest.raises(PluginLoadError, match="error running"):
                sandbox.load(_script(tmp_path, "error('nope')\nfunction publish() end"))
        finally:
            sandbox.close()

    def test_no_entry_points(self, tmp_path):
        sandbox = LuaSandbox(name="idle")
        try:
            with pytest.raises(PluginLoadError, match="neither a subscribe nor a publish"):
                sandbox.load(_script(tmp_path, "local x = 1"))
        finally:
            sandbox.close()

    def test_entry_point_must_be_function(self, tmp_path):
        sandbox = LuaSandbox(name="odd")
        try:
            with pytest.raises(PluginLoadError):
                sandbox.load(_script(tmp_path, "publish = 'not a function'"))
        finally:
            sandbox.close()


# ---------------------------------------------------------------------------
# Calling entry points
# ---------------------------------------------------------------------------

class TestSandboxCall:
    def test_call_marshals_arguments_and_result(self, tmp_path):
        sandbox = LuaSandbox(name="echo")
        try:
            sandbox.load(_script(tmp_path, """
                function publish(config, data)
                    return {
                        prefixed = config.prefix .. data,
                        count = #config.items,
                        first = config.items[1],
                    }
                end
            """))
            result = sandbox.call("publish", {"prefix": "> ", "items": [7, 8]}, "hi")
            assert result == {"prefixed": "> hi", "count": 2, "first": 7}
        finally:
            sandbox.close()

    def test_only_first_return_value_is_kept(self, tmp_path):
        sandbox = LuaSandbox(name="multi")
        try:
            sandbox.load(_script(tmp_path, "function publish() return 'a', 'b' end"))
            assert sandbox.call("publish") == "a"
        finally:
            sandbox.close()

    def test_python_callable_passes_through(self, tmp_path):
        seen = []
        sandbox = LuaSandbox(name="src")
        try:
            sandbox.load(_script(tmp_path, """
                function subscribe(config, emit)
                    for i = 1, config.n do emit(i) end
                end
            """))
            sandbox.call("subscribe", {"n": 3}, seen.append)
            assert seen == [1, 2, 3]
        finally:
            sandbox.close()

    def test_missing_entry_point(self, tmp_path):
        sandbox = LuaSandbox(name="sink")
        try:
            sandbox.load(_script(tmp_path, "function publish() end"))
            with pytest.raises(SandboxError, match="does not define a subscribe"):
                sandbox.call("subscribe", {}, print)
        finally:
            sandbox.close()

    def test_script_error(self, tmp_path):
        sandbox = LuaSandbox(name="bad")
        try:
            sandbox.load(_script(tmp_path, "function publish() error('failed hard') end"))
            with pytest.raises(ScriptError, match="failed hard"):
                sandbox.call("publish")
        finally:
            sandbox.close()

    def test_unsupported_argument_type(self, tmp_path):
        sandbox = LuaSandbox(name="typed")
        try:
            sandbox.load(_script(tmp_path, "function publish(x) end"))
            with pytest.raises(TypeError):
                sandbox.call("publish", {1, 2})
        finally:
            sandbox.close()

    def test_busy_sandbox_times_out(self, tmp_path):
        sandbox = LuaSandbox(name="spin")
        sandbox.load(_script(tmp_path, SPIN + "\nfunction publish() return 1 end"))
        thread, outcome = _run_in_thread(sandbox.call, "subscribe", {}, print)
        try:
            time.sleep(0.1)
            with pytest.raises(SandboxBusyError):
                sandbox.call("publish", timeout=0.1)
        finally:
            sandbox.close()
            thread.join(5)
        assert not thread.is_alive()
        assert isinstance(outcome.get("error"), SandboxClosedError)


# ---------------------------------------------------------------------------
# Closing
# ---------------------------------------------------------------------------

class TestSandboxClose:
    def test_use_after_close(self, tmp_path):
        sandbox = LuaSandbox(name="done")
        sandbox.load(_script(tmp_path, "function publish() return 1 end"))
        sandbox.close()
        assert sandbox.closed
        with pytest.raises(SandboxClosedError):
            sandbox.call("publish")
        with pytest.raises(SandboxClosedError):
            sandbox.execute("return 1")
        assert not sandbox.has_entry_point("publish")

    def test_close_is_idempotent(self):
        sandbox = LuaSandbox(name="twice")
        sandbox.close()
        sandbox.close()
        assert sandbox.closed

    def test_close_interrupts_pure_lua_loop(self, tmp_path):
        sandbox = LuaSandbox(name="spin", hook_interval=100)
        sandbox.load(_script(tmp_path, SPIN))
        thread, outcome = _run_in_thread(sandbox.call, "subscribe", {}, print)
        time.sleep(0.1)
        assert thread.is_alive()

        sandbox.close()
        thread.join(5)

        assert not thread.is_alive()
        assert isinstance(outcome.get("error"), SandboxClosedError)

    @pytest.mark.parametrize("spin", [
        "function subscribe(c, emit) coroutine.wrap(function() while true do end end)() end",
        "function subscribe(c, emit)\n"
        "    local co = coroutine.create(function() while true do end end)\n"
        "    coroutine.resume(co)\n"
        "end",
    ])
    def test_close_interrupts_loop_inside_coroutine(self, tmp_path, spin):
        sandbox = LuaSandbox(name="co-spin", hook_interval=100)
        sandbox.load(_script(tmp_path, spin))
        thread, outcome = _run_in_thread(sandbox.call, "subscribe", {}, print)
        time.sleep(0.1)
        assert thread.is_alive()

        sandbox.close()
        thread.join(5)

        assert not thread.is_alive()
        assert isinstance(outcome.get("error"), SandboxClosedError)

    def test_cancel_token(self):
        sandbox = LuaSandbox(name="token")
        assert not sandbox.cancel_token.is_set()
        sandbox.close()
        assert sandbox.cancel_token.is_set()

    def test_repr(self):
        sandbox = LuaSandbox(restrictions=["http"], name="r")
        assert "open" in repr(sandbox)
        sandbox.close()
        assert "closed" in repr(sandbox)
        assert "'http'" in repr(sandbox)


# ---------------------------------------------------------------------------
# ValueCodec
# ---------------------------------------------------------------------------

class TestValueCodec:
    @pytest.fixture
    def codec(self):
        sb = LuaSandbox(name="codec")
        yield sb.codec
        sb.close()

    def test_scalars_pass_through(self, codec):
        for value in (None, True, False, 3, 2.5, "text"):
            assert codec.from_lua(codec.to_lua(value)) == value

    def test_empty_list_stays_a_list(self, codec):
        assert codec.from_lua(codec.to_lua([])) == []

    def test_empty_dict_stays_a_dict(self, codec):
        assert codec.from_lua(codec.to_lua({})) == {}

    def test_nested_structures(self, codec):
        value = {"items": [1, "two", {"three": 3.0}], "ok": True}
        assert codec.from_lua(codec.to_lua(value)) == value

    def test_dict_keys_become_strings(self, codec):
        assert codec.from_lua(codec.to_lua({1: "a"})) == {"1": "a"}

    def test_tuple_is_a_list(self, codec):
        assert codec.from_lua(codec.to_lua((1, 2))) == [1, 2]

    def test_huge_int_becomes_float(self, codec):
        assert codec.to_lua(2**70) == float(2**70)

    def test_bytes_become_text(self, codec):
        assert codec.to_lua(b"caf\xc3\xa9") == "café"

    def test_unsupported_value(self, codec):
        with pytest.raises(TypeError):
            codec.to_lua({1, 2})

    def test_lua_function_is_rejected(self):
        sandbox = LuaSandbox(name="fn")
        try:
            with pytest.raises(TypeError):
                sandbox.execute("return function() end")
        finally:
            sandbox.close()

    def test_lua_array_literal(self):
        sandbox = LuaSandbox(name="arr")
        try:
            assert sandbox.execute("return {'a', 'b', 'c'}") == ["a", "b", "c"]
            assert sandbox.execute("return {}") == {}
        finally:
            sandbox.close()

    def test_encode_json_is_canonical(self, codec):
        table = codec.to_lua({"b": 1, "a": [1, 2], "u": "é"})
        assert codec.encode_json(table) == '{"a":[1,2],"b":1,"u":"é"}'

    def test_decode_json(self, codec):
        table = codec.decode_json('{"n": 3, "list": [true, null]}')
        assert codec.from_lua(table) == {"n": 3, "list": [True]}
