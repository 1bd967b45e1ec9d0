"""
Capability bridge for sandboxed plugin scripts.

The bridge is the only way a plugin script can reach the outside world.
It installs a fixed menu of host functions into one LuaSandbox:

    require("fs")    read(path), write(path, content), list(path)
    require("http")  get(url), post(url, body, headers?)  -> {body, status}
    require("json")  encode(value), decode(text)
    sleep(seconds)   cooperative delay on the script's own thread
    log(level, msg)  forwarded to logging (and from there to the event bus)

Each function checks the sandbox restriction list on every call, using
the capability path "<module>.<function>" ("sleep" and "log" for the two
globals). A blocked call raises CapabilityDenied inside the script, so
the script can catch it with pcall like any other error.

Example:
    sandbox = LuaSandbox(restrictions=["fs.write"], name="reader")
    bridge = CapabilityBridge(sandbox)
    bridge.install()
    sandbox.load("reader.lua")
"""

from pathlib import Path
from typing import Any
import logging

import httpx

from athyr_agent.config.settings import settings
from athyr_agent.plugins.sandbox import LuaSandbox, SandboxClosedError

logger = logging.getLogger(__name__)

SCRIPT_LOGGER_PREFIX = "athyr_agent.plugins.script"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _require_str(capability: str, name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{capability}: {name} must be a string")
    return value


class CapabilityBridge:
    """Host capability menu bound to one sandbox.

    Attributes:
        sandbox: The sandbox whose restriction list gates every call.
        script_logger: Logger receiving the script's log() calls.
    """

    def __init__(
        self,
        sandbox: LuaSandbox,
        http_client: httpx.Client | None = None,
        http_timeout: float | None = None,
    ):
        """Initialize the bridge.

        Args:
            sandbox: Sandbox to install into.
            http_client: Optional pre-built httpx client (tests pass one
                with a MockTransport). The bridge closes only clients it
                created itself.
            http_timeout: Request timeout in seconds for the default client.
        """
        self.sandbox = sandbox
        self.script_logger = logging.getLogger(
            f"{SCRIPT_LOGGER_PREFIX}.{sandbox.name or 'anonymous'}"
        )
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(
            timeout=http_timeout or settings.ATHYR_HTTP_TIMEOUT,
            follow_redirects=True,
        )

    def install(self) -> None:
        """Register every capability module and global in the sandbox."""
        self.sandbox.register_module("fs", {
            "read": self.fs_read,
            "write": self.fs_write,
            "list": self.fs_list,
        })
        self.sandbox.register_module("http", {
            "get": self.http_get,
            "post": self.http_post,
        })
        self.sandbox.register_module("json", {
            "encode": self.json_encode,
            "decode": self.json_decode,
        })
        self.sandbox.set_global("sleep", self.sleep)
        self.sandbox.set_global("log", self.log)

    def close(self) -> None:
        """Close the HTTP client if the bridge created it."""
        if self._owns_client:
            self._http.close()

    # -- fs -----------------------------------------------------------------

    def fs_read(self, path: Any) -> str:
        self.sandbox.ensure_allowed("fs.read")
        return Path(_require_str("fs.read", "path", path)).read_text(encoding="utf-8")

    def fs_write(self, path: Any, content: Any) -> None:
        self.sandbox.ensure_allowed("fs.write")
        Path(_require_str("fs.write", "path", path)).write_text(
            _require_str("fs.write", "content", content), encoding="utf-8"
        )

    def fs_list(self, path: Any) -> Any:
        self.sandbox.ensure_allowed("fs.list")
        names = sorted(p.name for p in Path(_require_str("fs.list", "path", path)).iterdir())
        return self.sandbox.codec.to_lua(names)

    # -- http ---------------------------------------------------------------

    def http_get(self, url: Any) -> Any:
        self.sandbox.ensure_allowed("http.get")
        response = self._http.get(_require_str("http.get", "url", url))
        return self._http_result(response)

    def http_post(self, url: Any, body: Any, headers: Any = None) -> Any:
        self.sandbox.ensure_allowed("http.post")
        request_headers = {}
        if headers is not None:
            converted = self.sandbox.codec.from_lua(headers)
            if isinstance(converted, dict):
                request_headers = {
                    k: v for k, v in converted.items() if isinstance(v, str)
                }
        response = self._http.post(
            _require_str("http.post", "url", url),
            content=_require_str("http.post", "body", body).encode("utf-8"),
            headers=request_headers,
        )
        return self._http_result(response)

    def _http_result(self, response: httpx.Response) -> Any:
        return self.sandbox.codec.to_lua({
            "body": response.text,
            "status": response.status_code,
        })

    # -- json ---------------------------------------------------------------

    def json_encode(self, value: Any) -> str:
        self.sandbox.ensure_allowed("json.encode")
        return self.sandbox.codec.encode_json(value)

    def json_decode(self, text: Any) -> Any:
        self.sandbox.ensure_allowed("json.decode")
        return self.sandbox.codec.decode_json(_require_str("json.decode", "text", text))

    # -- globals ------------------------------------------------------------

    def sleep(self, seconds: Any) -> None:
        self.sandbox.ensure_allowed("sleep")
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            raise TypeError("sleep: seconds must be a number")
        if self.sandbox.cancel_token.wait(max(float(seconds), 0.0)):
            raise SandboxClosedError(f"sandbox {self.sandbox.name} closed during sleep")

    def log(self, level: Any, message: Any) -> None:
        self.sandbox.ensure_allowed("log")
        lvl = LOG_LEVELS.get(str(level).lower(), logging.INFO)
        self.script_logger.log(lvl, "%s", message)
