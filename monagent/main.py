"""Entry point for the monitoring agent — `monagent` console script."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone

import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from monagent.api.server import create_app
from monagent.config import settings
from monagent.monitors.registry import ConfigError, Registry, load_file

console = Console()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def load_or_exit(config_path: str) -> Registry:
    """Load the monitor file; print every problem and exit 2 when it is invalid."""
    try:
        return load_file(config_path)
    except ConfigError as e:
        console.print(f"[bold red]Invalid monitor configuration:[/bold red] {escape(config_path)}")
        for error in e.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(2)


def run_server(config_path: str, host: str, port: int) -> None:
    """Validate the monitors, then serve the status API with the scheduler running."""
    registry = load_or_exit(config_path)

    console.print(
        Panel.fit(
            f"[bold]Monitoring Agent[/bold]\n"
            f"Bind:     {host}:{port}\n"
            f"Monitors: {len(registry)} ({len(registry.enabled())} enabled)\n"
            f"Config:   {escape(config_path)}\n"
            f"Ceiling:  {settings.max_concurrency} concurrent checks",
            title="monagent",
            border_style="green",
        )
    )

    uvicorn.run(
        create_app(registry, config_path=config_path),
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


def run_validate(config_path: str) -> None:
    """Print the parsed monitors with their next fire time."""
    registry = load_or_exit(config_path)
    now = datetime.now(timezone.utc)

    table = Table(title=f"{len(registry)} monitors in {escape(config_path)}")
    table.add_column("id", style="bold")
    table.add_column("type")
    table.add_column("schedule")
    table.add_column("next fire (UTC)")
    table.add_column("timeout")
    table.add_column("retries")
    table.add_column("enabled")

    for m in registry:
        table.add_row(
            escape(m.id),
            m.type.value,
            escape(str(m.schedule)),
            m.schedule.next_after(now).strftime("%Y-%m-%d %H:%M:%S"),
            f"{m.timeout_ms}ms",
            str(m.retries),
            "yes" if m.enabled else "[dim]no[/dim]",
        )
    console.print(table)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Monitoring Agent")
    parser.add_argument(
        "--log-level", default=settings.log_level.upper(), choices=LOG_LEVELS, type=str.upper,
    )
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the scheduler and status API")
    serve_parser.add_argument("-c", "--config", default=settings.config_path, help="Monitor file")
    serve_parser.add_argument("--host", default=settings.api_host)
    serve_parser.add_argument("--port", type=int, default=settings.api_port)

    validate_parser = sub.add_parser("validate", help="Check a monitor file and exit")
    validate_parser.add_argument("-c", "--config", default=settings.config_path, help="Monitor file")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "serve":
        run_server(args.config, args.host, args.port)
    elif args.command == "validate":
        run_validate(args.config)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
