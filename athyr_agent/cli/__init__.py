"""
athyr-agent - Command Line Interface

Runs config-driven LLM agents: a YAML agent file names the model, the
topics to listen on and publish to, the Lua plugins to load and the MCP
tool servers to use. Built with Typer for commands and Rich for output.

Usage:
    $ athyr-agent run agent.yaml --events
    $ athyr-agent chat agent.yaml
    $ athyr-agent validate agent.yaml
    $ athyr-agent publish agent.yaml tickets '{"content": "hi"}'
    $ athyr-agent request agent.yaml tickets "what's new?"

For detailed help on any command:
    $ athyr-agent <command> --help
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Awaitable, Callable

import typer
from rich.console import Console
from rich.panel import Panel

from athyr_agent import __version__
from athyr_agent.config import AgentConfig, ConfigError, load_agent_file
from athyr_agent.config.settings import settings
from athyr_agent.observability.tracing import setup_tracing, tracer
from athyr_agent.platform.local import LocalPlatform
from athyr_agent.runtime.events import EventBus
from athyr_agent.runtime.log_handler import EventBusLogHandler
from athyr_agent.runtime.runner import AgentRunner

logger = logging.getLogger(__name__)

# Create main console for output
console = Console()
err_console = Console(stderr=True)

# Create main application
app = typer.Typer(
    name="athyr-agent",
    help="athyr-agent - run config-driven LLM agents with Lua plugins and MCP tools",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"athyr-agent version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """
    athyr-agent - config-driven LLM agent runtime

    Use --help on any subcommand for detailed information.
    """
    pass


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

FileArg = typer.Argument(..., help="Path to the agent YAML file.")

VerboseOpt = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")
QuietOpt = typer.Option(False, "--quiet", "-q", help="Only log errors.")
LogFormatOpt = typer.Option("text", "--log-format", help="Log output format: text or json.")


def _setup_logging(verbose: bool, quiet: bool, log_format: str) -> None:
    from athyr_agent.cli.output import configure_logging, print_error

    try:
        configure_logging(verbose=verbose, quiet=quiet, log_format=log_format)
    except ValueError as exc:
        print_error(str(exc))
        raise typer.Exit(2)


def _load_agent(path: Path) -> AgentConfig:
    from athyr_agent.cli.output import print_error

    try:
        return load_agent_file(path).agent
    except FileNotFoundError as exc:
        print_error(str(exc))
        raise typer.Exit(1)
    except ConfigError as exc:
        print_error(f"Invalid agent file {path}")
        for message in exc.errors:
            err_console.print(f"  [red]-[/red] {message}", markup=True, highlight=False)
        raise typer.Exit(1)


def _run(coro: Awaitable[None]) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        pass


async def _with_runner(
    agent: AgentConfig,
    body: Callable[[AgentRunner], Awaitable[None]],
    events: EventBus | None = None,
) -> None:
    """Start a runner on a LocalPlatform, run *body*, always stop."""
    runner = AgentRunner(
        agent,
        LocalPlatform(agent_name=agent.name),
        events=events,
    )
    await runner.start()
    try:
        await body(runner)
    finally:
        await runner.stop()


def _install_signal_handlers(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, RuntimeError):
            pass


async def _print_events(bus: EventBus, stop: asyncio.Event) -> None:
    from athyr_agent.cli.output import print_event

    while not stop.is_set() or len(bus):
        event = await asyncio.to_thread(bus.get, 0.25)
        if event is not None:
            print_event(event)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"athyr-agent version {__version__}")


@app.command()
def validate(path: Path = FileArg) -> None:
    """
    Validate an agent file.

    Prints a summary of the agent on success, or every problem found.
    """
    from athyr_agent.cli.output import print_success, print_table

    agent = _load_agent(path)
    rows = [
        ["Name", agent.name],
        ["Model", agent.model],
        ["Subscribe", ", ".join(agent.topics.subscribe)],
        ["Publish", ", ".join(agent.topics.publish)],
        ["Routes", ", ".join(r.topic for r in agent.topics.routes) or "-"],
        ["Plugins", ", ".join(p.name for p in agent.plugins) or "-"],
        ["MCP servers", ", ".join(s.name for s in agent.mcp.servers) or "-"],
        ["Memory", "enabled" if agent.memory.enabled else "disabled"],
    ]
    print_table(f"Agent {agent.name}", ["Field", "Value"], rows, styles=["cyan", None])
    print_success(f"{path} is valid")


@app.command()
def run(
    path: Path = FileArg,
    verbose: bool = VerboseOpt,
    quiet: bool = QuietOpt,
    log_format: str = LogFormatOpt,
    events: bool = typer.Option(False, "--events", help="Print the event stream."),
) -> None:
    """
    Run an agent until interrupted (Ctrl+C / SIGTERM).
    """
    _setup_logging(verbose, quiet, log_format)
    agent = _load_agent(path)
    setup_tracing()

    async def main_async() -> None:
        shutdown = asyncio.Event()
        _install_signal_handlers(shutdown)
        bus = EventBus(settings.ATHYR_EVENT_BUFFER) if events else None
        printer = None
        if bus is not None:
            logging.getLogger().addHandler(EventBusLogHandler(bus))
            printer = asyncio.create_task(_print_events(bus, shutdown))
        runner = AgentRunner(agent, LocalPlatform(agent_name=agent.name), events=bus)
        try:
            await runner.run(shutdown)
        finally:
            if bus is not None:
                bus.close()
            if printer is not None:
                shutdown.set()
                await printer
            tracer.shutdown()

    _run(main_async())


@app.command()
def chat(
    path: Path = FileArg,
    verbose: bool = VerboseOpt,
    quiet: bool = typer.Option(True, "--quiet/--no-quiet", "-q", help="Only log errors."),
) -> None:
    """
    Chat with an agent interactively (direct chat, no routing).
    """
    _setup_logging(verbose, quiet and not verbose, "text")
    agent = _load_agent(path)

    async def session(runner: AgentRunner) -> None:
        console.print(Panel.fit(
            f"Chatting with [cyan]{agent.name}[/cyan] ({agent.model})",
            subtitle="type exit to quit",
        ))
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold]you>[/bold] ")
            except EOFError:
                break
            if line.strip().lower() in ("exit", "quit"):
                break
            if not line.strip():
                continue
            result = await runner.orchestrator.direct_chat(line)
            if result.ok:
                console.print(f"[bold cyan]{agent.name}>[/bold cyan] {result.content}")
                console.print(f"[dim]{result.model}, {result.tokens} tokens[/dim]")
            else:
                err_console.print(f"[red]error:[/red] {result.error}")

    _run(_with_runner(agent, session))


@app.command()
def publish(
    path: Path = FileArg,
    topic: str = typer.Argument(..., help="Topic to publish to."),
    message: str = typer.Argument(..., help="Message payload."),
    verbose: bool = VerboseOpt,
) -> None:
    """
    Publish one message to a topic and exit.
    """
    from athyr_agent.cli.output import print_success

    _setup_logging(verbose, not verbose, "text")
    agent = _load_agent(path)

    async def send(runner: AgentRunner) -> None:
        await runner.orchestrator.publish_message(topic, message)
        await runner.wait_idle(timeout=settings.ATHYR_EVENT_TIMEOUT)

    _run(_with_runner(agent, send))
    print_success(f"Published {len(message.encode('utf-8'))} bytes to {topic}")


@app.command()
def request(
    path: Path = FileArg,
    topic: str = typer.Argument(..., help="Topic to send the request to."),
    message: str = typer.Argument(..., help="Request payload."),
    verbose: bool = VerboseOpt,
) -> None:
    """
    Send a request to a topic and print the reply.
    """
    from athyr_agent.cli.output import print_error

    _setup_logging(verbose, not verbose, "text")
    agent = _load_agent(path)
    failed: list[str] = []

    async def ask(runner: AgentRunner) -> None:
        try:
            reply = await runner.orchestrator.request_message(topic, message)
        except Exception as exc:
            failed.append(str(exc) or exc.__class__.__name__)
            return
        console.print(reply.decode("utf-8", errors="replace"), markup=False, highlight=False)

    _run(_with_runner(agent, ask))
    if failed:
        print_error(f"Request to {topic} failed", details=failed[0])
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
