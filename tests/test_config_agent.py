"""Tests for athyr_agent.config agent-file schema and loader."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from athyr_agent.config import (
    AgentFile,
    ConfigError,
    ConnectionConfig,
    MCPServerConfig,
    SessionProfile,
    TopicsConfig,
    RouteDefinition,
    load_agent_file,
    parse_agent,
    parse_duration,
)


MINIMAL = """
agent:
  name: triage
  model: claude-test
  topics:
    subscribe: [in]
    publish: [out]
"""


def _write(tmp_path: Path, text: str, name: str = "agent.yaml") -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

class TestParseDuration:
    @pytest.mark.parametrize("text,seconds", [
        ("10s", 10.0),
        ("500ms", 0.5),
        ("1h30m", 5400.0),
        ("1.5s", 1.5),
        ("0", 0.0),
        ("-2s", -2.0),
        ("24h", 86400.0),
    ])
    def test_valid(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.parametrize("text", ["", "10", "ten seconds", "5d", "s"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


# ---------------------------------------------------------------------------
# Parsing and validation
# ---------------------------------------------------------------------------

class TestParseAgent:
    def test_minimal(self):
        agent = parse_agent(MINIMAL).agent
        assert agent.name == "triage"
        assert agent.topics.subscribe == ["in"]
        assert agent.plugins == []
        assert agent.memory.enabled is False
        assert agent.memory.profile.type == "rolling_window"

    def test_all_errors_reported_at_once(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_agent("agent:\n  description: nothing else\n")
        errors = exc_info.value.errors
        assert "agent.name is required" in errors
        assert "agent.model is required" in errors
        assert "agent.topics.subscribe must have at least one topic" in errors
        assert "agent.topics.publish must have at least one topic" in errors

    def test_route_fields_required(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_agent(MINIMAL + "    routes:\n      - topic: urgent\n")
        assert exc_info.value.errors == ["agent.topics.routes[0].description is required"]

    def test_duplicate_plugin_names(self):
        text = MINIMAL + textwrap.indent(textwrap.dedent("""
            plugins:
              - {name: p, file: a.lua}
              - {name: p, file: b.lua}
              - {name: q}
        """), "  ")
        with pytest.raises(ConfigError) as exc_info:
            parse_agent(text)
        errors = exc_info.value.errors
        assert any("duplicate plugin name 'p'" in e for e in errors)
        assert "agent.plugins[2].file is required" in errors

    def test_mcp_server_needs_exactly_one_transport(self):
        text = MINIMAL + textwrap.indent(textwrap.dedent("""
            mcp:
              servers:
                - name: both
                  command: run-me
                  url: http://x
                - name: neither
        """), "  ")
        with pytest.raises(ConfigError) as exc_info:
            parse_agent(text)
        assert exc_info.value.errors == [
            "agent.mcp.servers[0] must specify either command or url, not both",
            "agent.mcp.servers[1] must specify either command or url",
        ]

    def test_bad_connection_duration(self):
        text = MINIMAL + "  connection:\n    timeout: soon\n"
        with pytest.raises(ConfigError, match="invalid connection.timeout"):
            parse_agent(text)

    def test_negative_connection_duration(self):
        text = MINIMAL + "  connection:\n    max_backoff: -1s\n"
        with pytest.raises(ConfigError, match="cannot be negative"):
            parse_agent(text)

    def test_bad_memory_ttl(self):
        text = MINIMAL + "  memory:\n    enabled: true\n    ttl: forever\n"
        with pytest.raises(ConfigError, match="invalid agent.memory.ttl"):
            parse_agent(text)

    def test_structural_error(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_agent(MINIMAL + "  plugins: not-a-list\n")
        assert exc_info.value.errors[0].startswith("agent.plugins")

    def test_yaml_error(self):
        with pytest.raises(ConfigError, match="failed to parse YAML"):
            parse_agent("agent: [unclosed")

    def test_non_mapping_document(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_agent("- just\n- a list\n")

    def test_validate_false_skips_semantic_checks(self):
        agent_file = parse_agent("agent: {}\n", validate=False)
        assert isinstance(agent_file, AgentFile)
        assert agent_file.validation_errors()

    def test_nulls_fall_back_to_defaults(self):
        agent = parse_agent(MINIMAL + "  plugins:\n  memory:\n").agent
        assert agent.plugins == []
        assert agent.memory.enabled is False


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

class TestSections:
    def test_mcp_command_string_is_split(self):
        server = MCPServerConfig(name="fs", command='npx -y "@scope/server" /tmp')
        assert server.command == ["npx", "-y", "@scope/server", "/tmp"]

    def test_mcp_command_list_kept(self):
        assert MCPServerConfig(name="fs", command=["a", "b c"]).command == ["a", "b c"]

    def test_session_profile_zero_values_use_defaults(self):
        profile = SessionProfile(type="", max_tokens=0, summarization_threshold=0)
        assert profile.type == "rolling_window"
        assert profile.max_tokens == 4096
        assert profile.summarization_threshold == 3000

    def test_connection_defaults(self):
        options = ConnectionConfig().options()
        assert options.request_timeout == 60.0
        assert options.max_retries == 0
        assert options.base_backoff == 1.0
        assert options.max_backoff == 30.0

    def test_connection_values(self):
        options = ConnectionConfig(
            timeout="30s", max_retries=3, base_backoff="500ms", max_backoff="10s"
        ).options()
        assert options.request_timeout == 30.0
        assert options.max_retries == 3
        assert options.base_backoff == 0.5
        assert options.max_backoff == 10.0

    def test_memory_ttl_seconds(self):
        agent = parse_agent(MINIMAL + "  memory:\n    ttl: 24h\n").agent
        assert agent.memory.ttl_seconds == 86400.0
        assert parse_agent(MINIMAL).agent.memory.ttl_seconds is None

    def test_routing_prompt(self):
        topics = TopicsConfig(routes=[
            RouteDefinition(topic="urgent", description="Page someone"),
            RouteDefinition(topic="later", description="Backlog"),
        ])
        prompt = topics.build_routing_prompt()
        assert prompt.startswith("\n\n## Routing Instructions\n")
        assert "- `urgent`: Page someone\n" in prompt
        assert "- `later`: Backlog\n" in prompt
        assert '"route_to": "<topic>"' in prompt
        assert topics.is_valid_route("later")
        assert not topics.is_valid_route("out")

    def test_no_routes_no_prompt(self):
        assert TopicsConfig().build_routing_prompt() == ""
        assert not TopicsConfig().has_routes

    def test_agent_plugin_lookup(self):
        agent = parse_agent(MINIMAL + "  plugins:\n    - {name: p, file: p.lua}\n").agent
        assert agent.plugin("p").file == "p.lua"
        assert agent.plugin("missing") is None


# ---------------------------------------------------------------------------
# Loading files
# ---------------------------------------------------------------------------

class TestLoadAgentFile:
    def test_plugin_paths_resolve_next_to_file(self, tmp_path):
        sub = tmp_path / "agents"
        sub.mkdir()
        path = _write(sub, MINIMAL + textwrap.indent(textwrap.dedent("""
            plugins:
              - name: rel
                file: plugins/watch.lua
              - name: abs
                file: /opt/plugins/sink.lua
        """), "  "))
        agent = load_agent_file(path).agent
        assert agent.plugin("rel").file == str(sub.resolve() / "plugins" / "watch.lua")
        assert agent.plugin("abs").file == "/opt/plugins/sink.lua"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="agent file not found"):
            load_agent_file(tmp_path / "nope.yaml")

    def test_error_carries_path(self, tmp_path):
        path = _write(tmp_path, "agent:\n  name: x\n")
        with pytest.raises(ConfigError) as exc_info:
            load_agent_file(path)
        assert exc_info.value.path == path
        assert str(path) in str(exc_info.value)

    def test_example_agent_file_is_valid(self):
        example = Path(__file__).resolve().parent.parent / "examples" / "agent.yaml"
        agent = load_agent_file(example).agent
        assert agent.name == "triage"
        assert {p.name for p in agent.plugins} == {"inbox", "catalog", "webhook"}
        assert agent.mcp.servers[0].command[0] == "npx"
        assert Path(agent.plugin("inbox").file).exists()
