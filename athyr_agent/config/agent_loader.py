"""Load and validate athyr-agent agent files (YAML).

Loading happens in three steps:

* parse the YAML document (PyYAML ``safe_load``)
* validate structure with the pydantic models in :mod:`agent_schema`
* collect semantic problems and raise one :class:`ConfigError` listing all of them

Plugin ``file`` entries are resolved relative to the agent file's directory
so an agent can be started from any working directory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .agent_schema import AgentFile

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when an agent file cannot be loaded or is invalid.

    Attributes:
        errors: Every problem found, one message each.
        path: The file the errors refer to, if any.
    """

    def __init__(self, errors: list[str], path: str | Path | None = None) -> None:
        self.errors = list(errors)
        self.path = Path(path) if path is not None else None
        where = f"{self.path}: " if self.path else ""
        super().__init__(where + "; ".join(self.errors))


# ---------------------------------------------------------------------------
# Core loaders
# ---------------------------------------------------------------------------

def parse_agent(data: str | bytes, *, validate: bool = True) -> AgentFile:
    """Parse agent-file YAML text.

    Raises:
        ConfigError: On a YAML error, a structural error, or (with
            *validate*) any semantic problem.
    """
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ConfigError([f"failed to parse YAML: {exc}"]) from exc
    return _build(raw, validate=validate)


def load_agent_file(path: str | Path, *, validate: bool = True) -> AgentFile:
    """Load an agent file and resolve plugin paths next to it.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the file is not a valid agent definition.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"agent file not found at {path}")
    try:
        agent_file = parse_agent(path.read_text(encoding="utf-8"), validate=validate)
    except ConfigError as exc:
        raise ConfigError(exc.errors, path) from exc
    logger.debug("Loaded agent %r from %s", agent_file.agent.name, path)
    return resolve_plugin_paths(agent_file, path.resolve().parent)


def resolve_plugin_paths(agent_file: AgentFile, base_dir: Path) -> AgentFile:
    """Return a copy whose relative plugin paths are anchored at *base_dir*."""
    plugins = []
    for plugin in agent_file.agent.plugins:
        if plugin.file and not Path(plugin.file).is_absolute():
            plugin = plugin.model_copy(update={"file": str(base_dir / plugin.file)})
        plugins.append(plugin)
    agent = agent_file.agent.model_copy(update={"plugins": plugins})
    return agent_file.model_copy(update={"agent": agent})


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _build(raw: Any, *, validate: bool) -> AgentFile:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(["agent file must be a mapping with an 'agent' key"])
    try:
        agent_file = AgentFile.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError([_format_error(err) for err in exc.errors()]) from exc
    if validate:
        errors = agent_file.validation_errors()
        if errors:
            raise ConfigError(errors)
    return agent_file


def _format_error(err: dict[str, Any]) -> str:
    location = ".".join(
        f"[{part}]" if isinstance(part, int) else str(part) for part in err.get("loc", ())
    ).replace(".[", "[")
    return f"{location}: {err.get('msg', 'invalid value')}"
