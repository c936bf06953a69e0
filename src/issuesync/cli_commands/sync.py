"""CLI commands for synchronization: sync, status."""

from __future__ import annotations

import json as json_mod
import sys

import click

from issuesync.cli_common import get_service


@click.command()
@click.option("--full", is_flag=True, help="Reindex every record (bootstrap) instead of catching up")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sync(full: bool, as_json: bool) -> None:
    """Sync changed records into the search index."""
    with get_service() as service:
        result = service.trigger_full_resync() if full else service.sync()

    if as_json:
        click.echo(json_mod.dumps(result.to_dict(), indent=2))
    elif result.outcome == "success":
        click.echo(f"Synced {result.indexed} issues ({result.mode}) in {result.duration_ms}ms")
        for skipped in result.skipped:
            click.echo(f"  skipped {skipped['key']}: {skipped['reason']}")
        click.echo(f"  Watermark: {result.watermark}")
    elif result.outcome == "skipped":
        click.echo("A sync run is already in progress; skipped")
    else:
        click.echo(f"Sync failed ({result.mode}): {result.error}", err=True)

    if result.outcome == "failed":
        sys.exit(1)


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool) -> None:
    """Show the sync watermark and the last run."""
    with get_service() as service:
        info = service.get_sync_status()
        indexed = service.issue_index.count_all()

    if as_json:
        click.echo(json_mod.dumps({**info, "indexed": indexed}, indent=2))
        return

    click.echo(f"Watermark: {info['last_watermark'] or 'never synced'}")
    click.echo(f"Indexed issues: {indexed}")
    if info["pending"] is not None:
        click.echo(f"Pending records: {info['pending']}")
    last = info["last_run"]
    if last is None:
        click.echo("Last run: none")
    else:
        click.echo(f"Last run: {last['mode']} {last['outcome']} at {last['finished_at']}")


def register(cli: click.Group) -> None:
    """Register sync commands with the CLI group."""
    cli.add_command(sync)
    cli.add_command(status)
