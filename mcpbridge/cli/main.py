"""
mcpbridge CLI - run the bridge against Slack or a terminal.

Exit codes: 0 on clean shutdown, 1 on a fatal startup error and 2 when the
configuration does not validate.
"""

import logging
import os
import sys
import threading
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from mcpbridge import __version__
from mcpbridge.core.errors import BridgeError, ConfigError
from mcpbridge.core.lifecycle import Application, Snapshot
from mcpbridge.frontends.base import UserFrontend
from mcpbridge.frontends.handler import ChatHandler
from mcpbridge.frontends.terminal import TerminalFrontend
from mcpbridge.validation.config import Config, load_config

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger("mcpbridge")

EXIT_OK = 0
EXIT_STARTUP = 1
EXIT_CONFIG = 2


def setup_logging(debug: bool = False, mcpdebug: bool = False) -> None:
    """Configure the root logger once. ``LOG_LEVEL`` wins over ``--debug``."""
    level_name = os.environ.get("LOG_LEVEL", "").upper()
    level = logging.getLevelName(level_name) if level_name else None
    if not isinstance(level, int):
        level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    if mcpdebug:
        logging.getLogger("mcpbridge.mcp").setLevel(logging.DEBUG)
    # Library chatter stays at WARNING unless explicitly debugging.
    if level > logging.DEBUG:
        for name in ("httpx", "httpcore", "slack_sdk", "openai", "anthropic"):
            logging.getLogger(name).setLevel(logging.WARNING)


def print_startup_report(snapshot: Snapshot) -> None:
    """Per-server status table."""
    table = Table(title="MCP servers", show_header=True, header_style="bold")
    table.add_column("Server", style="cyan")
    table.add_column("Transport")
    table.add_column("Status")
    table.add_column("Tools", justify="right")
    for report in snapshot.pool.reports.values():
        status = escape(report.summary)
        if report.status == "ready":
            status = f"[green]{status}[/green]"
        elif report.status == "failed":
            status = f"[red]{status}[/red]"
        else:
            status = f"[dim]{status}[/dim]"
        tools = str(len(report.tools))
        if report.conflicts:
            tools += f" (+{len(report.conflicts)} conflicting)"
        table.add_row(report.name, report.transport or "-", status, tools)
    err_console.print(table)
    err_console.print(
        f"[bold]{len(snapshot.registry)}[/bold] tools available via "
        f"{snapshot.provider.provider_name} ({snapshot.provider.model})"
    )


def build_frontend(snapshot: Snapshot, terminal: bool) -> UserFrontend:
    if terminal:
        return TerminalFrontend(thinking_message=snapshot.config.slack.thinking_message)
    from mcpbridge.frontends.slack import SlackFrontend
    return SlackFrontend(snapshot.config.slack)


def run(config_path: str, terminal: bool) -> int:
    """Start everything and serve until the front end disconnects."""
    app = Application(lambda: load_config(config_path, require_slack=not terminal))
    try:
        snapshot = app.start()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc.message)
        return EXIT_CONFIG
    except (BridgeError, ImportError, OSError) as exc:
        logger.error("Startup failed: %s", exc)
        return EXIT_STARTUP

    print_startup_report(snapshot)
    frontend = build_frontend(snapshot, terminal)
    handler = ChatHandler(frontend, lambda: app.snapshot, app.history)
    stop = threading.Event()

    try:
        frontend.run()
    except BridgeError as exc:
        logger.error("Could not start %s front end: %s", frontend.name, exc)
        app.shutdown()
        return EXIT_STARTUP

    app.install_signal_handlers()
    app.start_reloader()
    try:
        handler.serve(stop)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        stop.set()
    finally:
        handler.join(timeout=5)
        handler.close()
        frontend.close()
        app.shutdown()
    return EXIT_OK


@click.command()
@click.option("--config", "config_path", default="config.json", show_default=True,
              type=click.Path(dir_okay=False), help="Path to the configuration file")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--mcpdebug", is_flag=True, help="Log MCP wire traffic")
@click.option("--terminal", is_flag=True, help="Chat in this terminal instead of Slack")
@click.option("--config-validate", "validate_only", is_flag=True, help="Validate the configuration and exit")
@click.option("--migrate-config", "migrate", is_flag=True, help="Print the configuration in the current layout and exit")
@click.version_option(__version__, "--version", "-v", prog_name="mcpbridge")
def cli(
    config_path: str,
    debug: bool,
    mcpdebug: bool,
    terminal: bool,
    validate_only: bool,
    migrate: bool,
) -> None:
    """
    mcpbridge - answer chat messages with an LLM that can use MCP tools.

    \b
    Examples:
        mcpbridge --config config.json            # Slack Socket Mode
        mcpbridge --config config.json --terminal # local chat
        mcpbridge --config old.json --migrate-config > new.json
    """
    setup_logging(debug, mcpdebug)
    logger.info("mcpbridge v%s starting", __version__)

    if validate_only or migrate:
        sys.exit(check_config(config_path, terminal, migrate))
    sys.exit(run(config_path, terminal))


def check_config(config_path: str, terminal: bool, migrate: bool) -> int:
    try:
        config = Config.load(config_path)
        config.validate(require_slack=not terminal)
    except ConfigError as exc:
        err_console.print(f"[red]Invalid configuration:[/red] {exc.message}")
        return EXIT_CONFIG
    if migrate:
        console.print_json(data=config.get_file_config())
    else:
        err_console.print(f"[green]Configuration {config_path} is valid[/green]")
    return EXIT_OK


def main(argv: Optional[list] = None) -> None:
    """Entry point."""
    cli(args=argv)


if __name__ == "__main__":
    main()
