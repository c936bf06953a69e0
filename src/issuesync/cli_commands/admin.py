"""CLI commands for admin: init, serve."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from issuesync.cli_common import get_service
from issuesync.core import (
    DEFAULT_CONFIG,
    ISSUESYNC_DIR_NAME,
    IssueSync,
    read_config,
    write_config,
)


@click.command()
@click.option("--interval", default=None, type=float, help="Sync interval in seconds (default: 60)")
@click.option("--bulk-size", default=None, type=int, help="Records per bulk write (default: 500)")
def init(interval: float | None, bulk_size: int | None) -> None:
    """Initialize .issuesync/ in the current directory."""
    cwd = Path.cwd()
    issuesync_dir = cwd / ISSUESYNC_DIR_NAME

    if issuesync_dir.exists():
        click.echo(f"{ISSUESYNC_DIR_NAME}/ already exists in {cwd}")
        # Still ensure both databases are initialized
        IssueSync(issuesync_dir, read_config(issuesync_dir)).close()
        return

    config = dict(DEFAULT_CONFIG)
    if interval is not None:
        if interval <= 0:
            click.echo("Error: --interval must be positive", err=True)
            sys.exit(1)
        config["sync_interval_seconds"] = interval
    if bulk_size is not None:
        if bulk_size < 1:
            click.echo("Error: --bulk-size must be >= 1", err=True)
            sys.exit(1)
        config["bulk_size"] = bulk_size

    issuesync_dir.mkdir()
    write_config(issuesync_dir, config)
    IssueSync(issuesync_dir, read_config(issuesync_dir)).close()

    click.echo(f"Initialized {ISSUESYNC_DIR_NAME}/ in {cwd}")
    click.echo(f"  Records: {issuesync_dir / config['records_db']}")
    click.echo(f"  Index: {issuesync_dir / config['index_db']}")
    click.echo(f"  Sync interval: {config['sync_interval_seconds']}s")
    click.echo("\nNext: issuesync sync")


@click.command()
@click.option("--port", default=8378, type=int, help="Server port (default 8378)")
@click.option("--no-scheduler", is_flag=True, help="Don't run the background sync scheduler")
def serve(port: int, no_scheduler: bool) -> None:
    """Serve the operator HTTP API (requires issuesync[dashboard])."""
    try:
        from issuesync.dashboard import main as dashboard_main
    except ImportError:
        click.echo('The HTTP API requires extra dependencies. Install with: pip install "issuesync[dashboard]"', err=True)
        sys.exit(1)

    with get_service() as service:
        dashboard_main(service, port=port, scheduler=not no_scheduler)


def register(cli: click.Group) -> None:
    """Register admin commands with the CLI group."""
    cli.add_command(init)
    cli.add_command(serve)
