"""Typed return-value contracts for the sync layer, config, and API.

IMPORT CONSTRAINT: this module must only import from typing and stdlib.
"""

from __future__ import annotations

from typing import Literal, TypedDict

SyncMode = Literal["bootstrap", "incremental"]
SyncOutcome = Literal["success", "failed", "skipped"]


class ProjectConfig(TypedDict, total=False):
    """Shape of .issuesync/config.json."""

    version: int
    records_db: str
    index_db: str
    sync_interval_seconds: float
    bulk_size: int
    grant_flush_threshold: int
    log_level: str


class SkippedRecordDict(TypedDict):
    key: str
    reason: str


class SyncRunDict(TypedDict):
    mode: SyncMode
    outcome: SyncOutcome
    started_at: str
    finished_at: str
    processed: int
    indexed: int
    skipped: list[SkippedRecordDict]
    watermark: str | None
    error: str | None
    duration_ms: float


class SyncStatus(TypedDict):
    last_watermark: str | None
    last_run_outcome: SyncOutcome | None
    running: bool
    mode: str
    pending: int | None
    last_run: SyncRunDict | None
