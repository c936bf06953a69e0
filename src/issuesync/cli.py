"""CLI for issuesync.

Convention-based: discovers .issuesync/ by walking up from cwd.

Usage:
    issuesync init                                   # Initialize .issuesync/ in cwd
    issuesync sync                                   # Incremental sync
    issuesync sync --full                            # Full resync (bootstrap)
    issuesync status                                 # Watermark and last run
    issuesync grant <project> --group=users          # Grant read on a project
    issuesync search --user=alice --group=users      # Permission-scoped search
    issuesync show <key>                             # Show one indexed issue
    issuesync serve                                  # Operator HTTP API + scheduler
"""

from __future__ import annotations

import click

from issuesync import __version__
from issuesync.cli_commands import admin, issues, sync


@click.group()
@click.version_option(version=__version__, prog_name="issuesync")
def cli() -> None:
    """issuesync: permission-aware issue search projection."""


admin.register(cli)
sync.register(cli)
issues.register(cli)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
