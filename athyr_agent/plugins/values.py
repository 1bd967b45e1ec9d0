"""
Host <-> script value marshalling.

Every value that crosses the sandbox boundary goes through ValueCodec.
Nothing relies on lupa's implicit object wrapping: host containers are
rebuilt as Lua tables and Lua tables are rebuilt as plain Python
containers, so scripts never see a Python object they could poke at and
the host never keeps a live reference into the Lua state.

Value model (ScriptValue):
    None            <-> nil
    bool            <-> boolean
    int / float     <-> number (integers stay integers inside int64)
    str             <-> string
    list            <-> table with array marker, or a table where #t > 0
    dict[str, ...]  <-> any other table (keys become strings)

Example:
    codec = ValueCodec(runtime, mark_array=helpers.mark_array,
                       is_array=helpers.is_array)
    table = codec.to_lua({"items": [1, 2.5, True]})
    codec.from_lua(table)   # {"items": [1, 2.5, True]}
"""

from typing import Any, Callable, Union
import json

import lupa

ScriptValue = Union[None, bool, int, float, str, list, dict]

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class ValueCodec:
    """Converts values between Python and one Lua runtime.

    Attributes:
        runtime: The lupa LuaRuntime the tables belong to.
    """

    def __init__(
        self,
        runtime: Any,
        mark_array: Callable[[Any], Any],
        is_array: Callable[[Any], bool],
    ):
        """Initialize the codec.

        Args:
            runtime: lupa LuaRuntime.
            mark_array: Lua function tagging a table as an array.
            is_array: Lua function reporting whether a table carries the tag.
        """
        self.runtime = runtime
        self._mark_array = mark_array
        self._is_array = is_array

    def to_lua(self, value: Any) -> Any:
        """Convert a host value into a Lua value.

        Args:
            value: A ScriptValue. Tuples are treated as lists.

        Returns:
            A value lupa pushes as the matching Lua type.

        Raises:
            TypeError: For values outside the ScriptValue model.
        """
        if value is None or isinstance(value, (bool, str, float)):
            return value
        if isinstance(value, int):
            if _INT64_MIN <= value <= _INT64_MAX:
                return value
            return float(value)
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, (list, tuple)):
            items = [self.to_lua(item) for item in value]
            return self._mark_array(self.runtime.table_from(items))
        if isinstance(value, dict):
            table = self.runtime.table()
            for key, item in value.items():
                table[str(key)] = self.to_lua(item)
            return table
        raise TypeError(f"cannot pass {type(value).__name__} to a plugin script")

    def from_lua(self, value: Any) -> ScriptValue:
        """Convert a Lua value into a host value.

        Args:
            value: A value returned by lupa.

        Returns:
            A ScriptValue.

        Raises:
            TypeError: For functions, coroutines and userdata.
        """
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")

        kind = lupa.lua_type(value)
        if kind != "table":
            raise TypeError(f"cannot convert Lua {kind or type(value).__name__} value")

        length = len(value)
        if length > 0 or self._is_array(value):
            return [self.from_lua(value[i]) for i in range(1, length + 1)]
        return {
            self._key(key): self.from_lua(item)
            for key, item in value.items()
        }

    def encode_json(self, value: Any) -> str:
        """Encode a Lua value as compact JSON text with sorted keys."""
        return json.dumps(
            self.from_lua(value),
            sort_keys=True,
            separators=(",", ":"),
            allow_nan=False,
            ensure_ascii=False,
        )

    def decode_json(self, text: str) -> Any:
        """Decode JSON text into a Lua value."""
        return self.to_lua(json.loads(text))

    @staticmethod
    def _key(key: Any) -> str:
        if isinstance(key, bytes):
            return key.decode("utf-8", errors="replace")
        if isinstance(key, float) and key.is_integer():
            return str(int(key))
        return str(key)
