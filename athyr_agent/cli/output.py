"""
athyr-agent CLI - Rich Output Helpers

Utility functions for consistent command-line output using Rich, plus the
logging setup shared by every command.

Functions:
    configure_logging - Install a Rich or structlog JSON log handler
    json_formatter    - structlog formatter for JSON log lines
    print_table       - Print a formatted table
    print_error       - Print error message
    print_success     - Print success message
    print_event       - Print one observability event as a line
    format_duration   - Human readable duration
    truncate_string   - Shorten long strings for display
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from structlog.types import EventDict

from athyr_agent.runtime.events import (
    Event,
    LogEvent,
    MessageEvent,
    StatusEvent,
    ToolEvent,
    ToolsAvailableEvent,
    ToolStatus,
)
from athyr_agent.runtime.log_handler import record_extras

# Create console instances
console = Console()
err_console = Console(stderr=True)

LOG_FORMATS = ("text", "json")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _add_record_extras(_logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
    """Copy ``extra=`` attributes of a stdlib record into the event."""
    record = event_dict.get("_record")
    if record is not None:
        event_dict.update(record_extras(record))
    return event_dict


def json_formatter() -> structlog.stdlib.ProcessorFormatter:
    """Render stdlib log records as one JSON object per line."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_record_extras,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


def configure_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_format: str = "text",
) -> logging.Handler:
    """
    Configure root logging for a CLI command.

    Args:
        verbose: DEBUG level.
        quiet: ERROR level.
        log_format: "text" (Rich) or "json".

    Returns:
        The installed handler.
    """
    if verbose and quiet:
        raise ValueError("--verbose and --quiet are mutually exclusive")
    if log_format not in LOG_FORMATS:
        raise ValueError(f"unknown log format {log_format!r} (expected text or json)")

    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.INFO

    if log_format == "json":
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(json_formatter())
    else:
        handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    return handler


# ---------------------------------------------------------------------------
# Printing
# ---------------------------------------------------------------------------

def print_table(
    title: str,
    columns: list[str],
    rows: list[list[str]],
    styles: Optional[list[str]] = None,
    show_header: bool = True,
) -> None:
    """
    Print a rich table.

    Args:
        title: Table title
        columns: Column headers
        rows: Table rows (list of lists)
        styles: Optional column styles
        show_header: Whether to show column headers
    """
    table = Table(title=title, show_header=show_header)
    for i, col in enumerate(columns):
        style = styles[i] if styles and i < len(styles) else None
        table.add_column(col, style=style)
    for row in rows:
        padded_row = list(row) + [""] * (len(columns) - len(row))
        table.add_row(*padded_row[:len(columns)])
    console.print(table)


def print_error(
    message: str,
    details: Optional[str] = None,
    hint: Optional[str] = None,
) -> None:
    """
    Print error message.

    Args:
        message: Error message
        details: Optional detailed error information
        hint: Optional hint for resolving the error
    """
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    if details:
        err_console.print(f"[dim]{escape(details)}[/dim]")
    if hint:
        err_console.print(f"[yellow]Hint:[/yellow] {escape(hint)}")


def print_success(message: str, details: Optional[str] = None) -> None:
    """Print success message."""
    console.print(f"[bold green]Success:[/bold green] {escape(message)}")
    if details:
        console.print(f"[dim]{escape(details)}[/dim]")


def format_event(event: Event) -> str:
    """Render an observability event as one line of Rich markup."""
    ts = event.timestamp.astimezone().strftime("%H:%M:%S")
    if isinstance(event, StatusEvent):
        if event.error:
            body = f"[red]connection failed[/red] {escape(event.error)}"
        elif event.connected:
            body = f"[green]connected[/green] {escape(event.agent_name)} ({escape(event.agent_id)})"
        else:
            body = f"[yellow]disconnected[/yellow] {escape(event.agent_name)}"
        return f"[dim]{ts}[/dim] status  {body}"
    if isinstance(event, MessageEvent):
        arrow = "[cyan]<-[/cyan]" if event.direction.value == "in" else "[magenta]->[/magenta]"
        extra = f" [dim]({event.model}, {event.tokens} tokens)[/dim]" if event.model else ""
        return (
            f"[dim]{ts}[/dim] message {arrow} [bold]{escape(event.topic)}[/bold] "
            f"{escape(truncate_string(event.content, 120))}{extra}"
        )
    if isinstance(event, ToolEvent):
        color = {
            ToolStatus.STARTED: "blue",
            ToolStatus.COMPLETED: "green",
            ToolStatus.FAILED: "red",
        }[event.status]
        detail = escape(event.error) if event.error else escape(truncate_string(event.args, 80))
        timing = f" [dim]{format_duration(event.duration)}[/dim]" if event.duration else ""
        return f"[dim]{ts}[/dim] tool    [{color}]{event.status.value}[/{color}] {escape(event.name)} {detail}{timing}"
    if isinstance(event, ToolsAvailableEvent):
        names = ", ".join(t.name for t in event.tools) or "none"
        return f"[dim]{ts}[/dim] tools   {len(event.tools)} available: {escape(names)}"
    if isinstance(event, LogEvent):
        return f"[dim]{ts}[/dim] log     {escape(f'[{event.level}]')} {escape(event.message)}"
    return f"[dim]{ts}[/dim] {escape(str(event))}"


def print_event(event: Event) -> None:
    """Print one observability event."""
    console.print(format_event(event), highlight=False)


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Args:
        seconds: Duration in seconds

    Returns:
        Human-readable duration string
    """
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate string to maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add when truncated

    Returns:
        Truncated string
    """
    s = s.replace("\n", " ")
    if len(s) <= max_length:
        return s
    return s[:max_length - len(suffix)] + suffix
