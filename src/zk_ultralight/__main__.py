"""Main entry point for the zk-ultralight CLI.

Operator tools for the node tree the lock engine works in. They share the
engine's Connection (so connect timeouts and session errors behave the same)
but do no locking themselves.

Commands:
    ephemerals: List every ephemeral node under the given roots
    non-ephemerals: List every non-ephemeral leaf under the given roots
    rm-znodes: Delete the nodes named in a JSON list read from stdin
    version: Show CLI version

Typical cleanup of lock debris:
    zk-ultralight non-ephemerals /critical > stale.json
    zk-ultralight rm-znodes < stale.json

Results are printed to stdout as JSON; logs go to stderr.
"""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, TypeVar

import structlog
import typer
from rich.console import Console

from zk_ultralight import __version__
from zk_ultralight.client import CoordinationClient
from zk_ultralight.config import UltralightConfig
from zk_ultralight.connection import Connection
from zk_ultralight.exceptions import (
    CoordinationServiceError,
    NotConnectedError,
    UltralightConnectionError,
)
from zk_ultralight.exit_codes import EX_CONNECT, EX_SERVICE, EX_UNKNOWN, EX_USAGE
from zk_ultralight.kazoo_client import kazoo_client_factory
from zk_ultralight.telemetry import add_otel_context, configure_telemetry, shutdown_telemetry
from zk_ultralight.tree import find_ephemerals, find_non_ephemerals, remove_nodes

T = TypeVar("T")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(config: UltralightConfig, verbose: bool = False) -> None:
    """Configure structlog for CLI use.

    Console rendering by default, JSON when log_format is "json". Events
    below the configured level are dropped; --verbose forces DEBUG.
    """
    min_level = logging.DEBUG if verbose else _LEVELS.get(config.log_level.upper(), logging.INFO)

    def filter_by_level_processor(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        """Filter log events by level."""
        event_level = _LEVELS.get(event_dict.get("level", "info").upper(), logging.INFO)
        if event_level < min_level:
            raise structlog.DropEvent
        return event_dict

    renderer = (
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_by_level_processor,  # type: ignore[list-item]
            add_otel_context,  # type: ignore[list-item]
            renderer,
        ],
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


app = typer.Typer(
    name="zk-ultralight",
    help="Inspect and clean up zk-ultralight lock nodes",
    add_completion=False,
    pretty_exceptions_enable=False,
)
console = Console(stderr=True)

HostsOption = Annotated[
    str | None,
    typer.Option("--hosts", "--urls", help="Comma-separated host:port list (default: config)"),
]


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Configure logging and tracing before any command runs."""
    config = UltralightConfig()
    configure_logging(config, verbose)
    configure_telemetry(config)


def _run_with_client(
    hosts: str | None, action: Callable[[CoordinationClient], Awaitable[T]]
) -> T:
    """Connect, run ``action`` with the live client, and always close.

    Raises:
        typer.Exit: EX_CONNECT when no session could be established,
            EX_SERVICE when a coordination-service call failed,
            EX_UNKNOWN for anything else
    """
    config = UltralightConfig()

    async def _main() -> T:
        connection = Connection(
            hosts or config.hosts,
            config.tool_session_timeout,
            connect_timeout=config.connect_timeout,
            client_factory=kazoo_client_factory,
        )
        try:
            await connection.wait_connected()
            client = connection.client
            if client is None:
                raise NotConnectedError(f"No live session to {connection.hosts}")
            return await action(client)
        finally:
            await connection.close()

    try:
        return asyncio.run(_main())
    except UltralightConnectionError as e:
        console.print(f"[red]Connection error:[/red] {e}")
        raise typer.Exit(EX_CONNECT) from e
    except CoordinationServiceError as e:
        console.print(f"[red]Coordination service error:[/red] {e}")
        raise typer.Exit(EX_SERVICE) from e
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {e}")
        raise typer.Exit(EX_UNKNOWN) from e
    finally:
        shutdown_telemetry()


def _print_json(paths: list[str]) -> None:
    typer.echo(json.dumps(paths, indent=2))


def _require_roots(roots: list[str] | None) -> list[str]:
    if not roots:
        console.print("[red]Error:[/red] must set a root to search!")
        raise typer.Exit(EX_USAGE)
    return roots


@app.command()
def version() -> None:
    """Show the version of zk-ultralight."""
    typer.echo(f"zk-ultralight version {__version__}")


@app.command()
def ephemerals(
    roots: Annotated[list[str] | None, typer.Argument(help="Paths to search under")] = None,
    hosts: HostsOption = None,
) -> None:
    """List every ephemeral node under ROOTS as JSON."""
    roots = _require_roots(roots)
    paths = _run_with_client(hosts, lambda client: find_ephemerals(client, roots))
    _print_json(paths)


@app.command(name="non-ephemerals")
def non_ephemerals(
    roots: Annotated[list[str] | None, typer.Argument(help="Paths to search under")] = None,
    hosts: HostsOption = None,
) -> None:
    """List every non-ephemeral leaf node under ROOTS as JSON."""
    roots = _require_roots(roots)
    paths = _run_with_client(hosts, lambda client: find_non_ephemerals(client, roots))
    _print_json(paths)


@app.command(name="rm-znodes")
def rm_znodes(hosts: HostsOption = None) -> None:
    """Delete the nodes listed in a JSON array read from stdin."""
    try:
        znodes = json.loads(sys.stdin.read())
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] stdin is not valid JSON: {e}")
        raise typer.Exit(EX_USAGE) from e
    if not isinstance(znodes, list) or not all(isinstance(z, str) for z in znodes):
        console.print("[red]Error:[/red] stdin must be a JSON array of paths")
        raise typer.Exit(EX_USAGE)

    _run_with_client(hosts, lambda client: remove_nodes(client, znodes))
    console.print(f"[green]Removed {len(znodes)} node(s)[/green]")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
