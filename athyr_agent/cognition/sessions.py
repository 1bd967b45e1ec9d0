"""Session mapping: user-supplied session keys to platform session ids.

Mappings are created lazily the first time a key is seen and kept for the
life of the process. Any TTL in the memory profile is enforced by the
platform, not here.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from athyr_agent.config.agent_schema import MemoryConfig
from athyr_agent.platform.base import AgentPlatform

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised when the platform cannot create a session."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"failed to create session for {key!r}: {reason}")


@dataclass(frozen=True)
class SessionMapping:
    key: str
    session_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionStore:
    """Create-on-first-use session mappings.

    Parameters
    ----------
    platform:
        Platform that owns session storage.
    memory:
        Memory section of the agent file (prefix and profile).
    system_prompt:
        Instructions stored with each new session.
    """

    def __init__(
        self,
        platform: AgentPlatform,
        memory: MemoryConfig,
        system_prompt: str = "",
    ) -> None:
        self._platform = platform
        self._memory = memory
        self._system_prompt = system_prompt
        self._mappings: dict[str, SessionMapping] = {}
        self._creating: dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()

    def _namespaced(self, key: str) -> str:
        return f"{self._memory.session_prefix}{key}"

    def get(self, key: str) -> str | None:
        mapping = self._mappings.get(self._namespaced(key))
        return mapping.session_id if mapping else None

    async def resolve(self, key: str) -> str:
        """Return the platform session id for *key*, creating it if needed.

        Concurrent events with the same new key create exactly one session.

        Raises
        ------
        SessionError
            If the platform fails to create the session.
        """
        full_key = self._namespaced(key)
        existing = self._mappings.get(full_key)
        if existing is not None:
            return existing.session_id

        with self._lock:
            creating = self._creating.setdefault(full_key, asyncio.Lock())

        async with creating:
            existing = self._mappings.get(full_key)
            if existing is not None:
                return existing.session_id

            logger.info("Creating session for key=%s", full_key)
            try:
                session_id = await self._platform.create_session(
                    self._memory.profile, self._system_prompt
                )
            except Exception as exc:
                raise SessionError(full_key, str(exc)) from exc

            with self._lock:
                self._mappings[full_key] = SessionMapping(key=full_key, session_id=session_id)
                self._creating.pop(full_key, None)
            logger.info("Session created key=%s session_id=%s", full_key, session_id)
            return session_id

    def mappings(self) -> list[SessionMapping]:
        with self._lock:
            return list(self._mappings.values())

    def __len__(self) -> int:
        return len(self._mappings)
