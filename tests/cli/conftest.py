"""Fixtures for CLI interface tests."""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from issuesync.cli import cli
from issuesync.core import ISSUESYNC_DIR_NAME, IssueSync, read_config
from tests._factory import make_issue


@pytest.fixture
def cli_in_project(tmp_path: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
    """Initialize an issuesync deployment in tmp_path and return (runner, project_root)."""
    original_cwd = os.getcwd()
    os.chdir(str(tmp_path))
    result = cli_runner.invoke(cli, ["init"])
    assert result.exit_code == 0
    yield cli_runner, tmp_path
    os.chdir(original_cwd)


@pytest.fixture
def seeded_project(cli_in_project: tuple[CliRunner, Path]) -> tuple[CliRunner, Path]:
    """Deployment with ABC-1 in project P1 and ABC-2 in project P2, not yet synced."""
    runner, root = cli_in_project
    issuesync_dir = root / ISSUESYNC_DIR_NAME
    with IssueSync(issuesync_dir, read_config(issuesync_dir)) as service:
        make_issue(service.records, "ABC-1", project="P1", severity="MAJOR", assignee="alice")
        make_issue(service.records, "ABC-2", project="P2", severity="MINOR")
    return runner, root
