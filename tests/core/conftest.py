"""Fixtures for core store, index, and sync tests."""

from __future__ import annotations

import pytest

from issuesync.issue_index import IssueIndex
from issuesync.permission_index import PermissionIndex
from tests._factory import make_doc


@pytest.fixture
def three_projects(issue_index: IssueIndex, permission_index: PermissionIndex) -> IssueIndex:
    """P1 readable by group "user", P2 by "reviewer", P3 by both; one issue each."""
    with permission_index.bulk() as batch:
        batch.add_grant("P1", group="user")
        batch.add_grant("P2", group="reviewer")
        batch.add_grant("P3", group="user")
        batch.add_grant("P3", group="reviewer")
    issue_index.bulk_upsert([make_doc("ISSUE1", "P1"), make_doc("ISSUE2", "P2"), make_doc("ISSUE3", "P3")])
    return issue_index
