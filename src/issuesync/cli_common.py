"""Shared CLI helpers.

Provides ``get_service()`` so that ``cli.py`` and the ``cli_commands/*.py``
modules can open the discovered deployment without circular imports.
"""

from __future__ import annotations

import json
import sys
from typing import NoReturn

import click

from issuesync.core import CONFIG_FILENAME, ISSUESYNC_DIR_NAME, IssueSync, find_issuesync_root, read_config
from issuesync.logging import setup_logging


def get_service() -> IssueSync:
    """Discover .issuesync/ and return an initialized IssueSync with file logging."""
    try:
        issuesync_dir = find_issuesync_root()
    except FileNotFoundError:
        click.echo(f"No {ISSUESYNC_DIR_NAME}/ found. Run 'issuesync init' first.", err=True)
        sys.exit(1)
    config = read_config(issuesync_dir)
    try:
        setup_logging(issuesync_dir, level=config["log_level"])
    except ValueError as exc:
        fail(f"{exc} in {issuesync_dir / CONFIG_FILENAME}")
    return IssueSync(issuesync_dir, config)


def fail(message: str, *, as_json: bool = False, code: str = "error") -> NoReturn:
    """Report *message* (stderr, or a JSON error object on stdout) and exit 1."""
    if as_json:
        click.echo(json.dumps({"error": message, "code": code}))
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(1)
