"""Shared pytest fixtures for issuesync tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from issuesync.core import ISSUESYNC_DIR_NAME, IssueSync, write_config
from issuesync.docstore import DocumentStore
from issuesync.issue_index import IssueIndex
from issuesync.permission_index import PermissionIndex
from issuesync.records import RecordStore
from issuesync.sync import SyncCoordinator


@pytest.fixture
def record_store(tmp_path: Path) -> Generator[RecordStore, None, None]:
    """Fresh canonical record store for each test."""
    store = RecordStore(tmp_path / "records.db")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def doc_store(tmp_path: Path) -> Generator[DocumentStore, None, None]:
    """Fresh document store (no collections defined)."""
    store = DocumentStore(tmp_path / "index.db")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def issue_index(doc_store: DocumentStore) -> IssueIndex:
    return IssueIndex(doc_store)


@pytest.fixture
def permission_index(doc_store: DocumentStore) -> PermissionIndex:
    return PermissionIndex(doc_store)


@pytest.fixture
def coordinator(record_store: RecordStore, issue_index: IssueIndex) -> SyncCoordinator:
    """Coordinator with a small batch size so paging is exercised."""
    return SyncCoordinator(record_store, issue_index, batch_size=2)


@pytest.fixture
def service(tmp_path: Path) -> Generator[IssueSync, None, None]:
    """An IssueSync deployment in tmp_path/.issuesync/."""
    issuesync_dir = tmp_path / ISSUESYNC_DIR_NAME
    issuesync_dir.mkdir()
    write_config(issuesync_dir, {"version": 1, "bulk_size": 2})
    svc = IssueSync(issuesync_dir, {"bulk_size": 2})
    yield svc
    svc.close()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
