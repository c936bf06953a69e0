"""Project discovery, configuration, and the IssueSync composition root.

Convention-based discovery: each deployment has an `.issuesync/` directory
containing `config.json`, the canonical `records.db`, and the search
projection `index.db`. CLI, HTTP API, and tests all go through ``IssueSync``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from issuesync.authorization import AuthorizationFilterBuilder
from issuesync.docstore import DocumentStore
from issuesync.filters import Filter, MatchAll
from issuesync.issue_index import IssueDocument, IssueIndex
from issuesync.permission_index import READ_PERMISSION, PermissionIndex
from issuesync.records import RecordStore
from issuesync.sync import SyncCoordinator, SyncResult, SyncScheduler
from issuesync.types import ProjectConfig, SyncStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

ISSUESYNC_DIR_NAME = ".issuesync"
CONFIG_FILENAME = "config.json"

DEFAULT_CONFIG = ProjectConfig(
    version=1,
    records_db="records.db",
    index_db="index.db",
    sync_interval_seconds=60.0,
    bulk_size=500,
    grant_flush_threshold=100,
    log_level="INFO",
)

DEFAULT_MAX_RESULTS = 100


def find_issuesync_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .issuesync/ directory.

    Returns the .issuesync/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / ISSUESYNC_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {ISSUESYNC_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(issuesync_dir: Path) -> ProjectConfig:
    """Read .issuesync/config.json merged over defaults. Defaults if missing or corrupt."""
    config = ProjectConfig(**DEFAULT_CONFIG)
    config_path = issuesync_dir / CONFIG_FILENAME
    if not config_path.exists():
        return config
    try:
        data = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return config
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return config
    config.update(data)  # type: ignore[typeddict-item]
    return config


def write_config(issuesync_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .issuesync/config.json."""
    config_path = issuesync_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")


# ---------------------------------------------------------------------------
# IssueSync: the composition root
# ---------------------------------------------------------------------------


class IssueSync:
    """Wires the record store, the indexes, and the sync coordinator together."""

    def __init__(self, issuesync_dir: str | Path, config: ProjectConfig | None = None) -> None:
        self.dir = Path(issuesync_dir)
        self.config = ProjectConfig(**DEFAULT_CONFIG)
        if config:
            self.config.update(config)
        self.records = RecordStore(self.dir / self.config["records_db"])
        self.store = DocumentStore(self.dir / self.config["index_db"])
        self.records.initialize()
        self.store.initialize()
        self.issue_index = IssueIndex(self.store)
        self.permission_index = PermissionIndex(self.store, flush_threshold=self.config["grant_flush_threshold"])
        self.authorization = AuthorizationFilterBuilder()
        self.coordinator = SyncCoordinator(self.records, self.issue_index, batch_size=self.config["bulk_size"])
        self._scheduler: SyncScheduler | None = None

    @classmethod
    def from_project(cls, project_path: Path | None = None) -> IssueSync:
        """Create an IssueSync by discovering .issuesync/ from project_path (or cwd)."""
        issuesync_dir = find_issuesync_root(project_path)
        return cls(issuesync_dir, read_config(issuesync_dir))

    def __enter__(self) -> IssueSync:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self.stop_scheduler()
        self.records.close()
        self.store.close()

    # -- Query serving -------------------------------------------------------

    def search(
        self,
        user: str | None,
        groups: Iterable[str] = (),
        base_filter: Filter | None = None,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
        permission: str = READ_PERMISSION,
    ) -> list[IssueDocument]:
        """Issues matching *base_filter* that *user* (with *groups*) may see."""
        auth_filter = self.authorization.build(user, groups, permission=permission)
        return self.issue_index.query(base_filter or MatchAll(), auth_filter, max_results)

    def get_issue(self, key: str) -> IssueDocument | None:
        return self.issue_index.get_by_key(key)

    def add_grant(self, project_key: str, user: str | None = None, group: str | None = None) -> str:
        return self.permission_index.add_grant(project_key, user=user, group=group)

    # -- Operator controls ---------------------------------------------------

    def sync(self) -> SyncResult:
        return self.coordinator.run_incremental()

    def trigger_full_resync(self) -> SyncResult:
        return self.coordinator.run_bootstrap()

    def get_sync_status(self) -> SyncStatus:
        return self.coordinator.status()

    def start_scheduler(self, interval: float | None = None) -> SyncScheduler:
        if self._scheduler is None:
            self._scheduler = SyncScheduler(self.coordinator, interval or self.config["sync_interval_seconds"])
        self._scheduler.start()
        return self._scheduler

    def stop_scheduler(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None
