"""Synchronization of canonical records into the issue index.

Two run modes share one non-blocking run lock, so at most one run is active
and an overlapping request is skipped rather than queued:

* **bootstrap**: every record is mapped and upserted.
* **incremental**: records updated after the watermark are mapped and
  upserted, oldest first.

Both capture the start time *before* reading any record and, once every page
has committed, advance the watermark to that start time. A record written
while the run is reading carries an ``updated_at`` after that start time, so
the next run picks it up. Some records get reprocessed; upserts replace by
key, so that is harmless. Any backend failure aborts the run with the
watermark untouched.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from time import perf_counter

from issuesync.db_base import EPOCH_ISO, _now_iso
from issuesync.docstore import DocumentStore
from issuesync.errors import IssueSyncError
from issuesync.issue_index import IssueIndex
from issuesync.mapper import to_document
from issuesync.records import IssueRecord, RecordStore
from issuesync.types import SkippedRecordDict, SyncMode, SyncOutcome, SyncRunDict, SyncStatus

logger = logging.getLogger(__name__)

WATERMARK_NAME = "issue.watermark"
LAST_RUN_NAME = "issue.last_run"
DEFAULT_BATCH_SIZE = 500


@dataclass
class SyncResult:
    mode: SyncMode
    outcome: SyncOutcome
    started_at: str
    finished_at: str = ""
    processed: int = 0
    indexed: int = 0
    skipped: list[SkippedRecordDict] = field(default_factory=list)
    watermark: str | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> SyncRunDict:
        return {
            "mode": self.mode,
            "outcome": self.outcome,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "processed": self.processed,
            "indexed": self.indexed,
            "skipped": list(self.skipped),
            "watermark": self.watermark,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


class Watermark:
    """Persisted "last synced record update time". Never decreases."""

    def __init__(self, store: DocumentStore, name: str = WATERMARK_NAME) -> None:
        self.store = store
        self.name = name

    def get(self) -> str | None:
        return self.store.get_meta(self.name)

    def advance(self, timestamp: str) -> str:
        """Move the watermark to *timestamp* unless it is already later; return the stored value."""
        return self.store.set_meta(self.name, timestamp, keep_max=True)


class SyncCoordinator:
    def __init__(
        self,
        records: RecordStore,
        issue_index: IssueIndex,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], str] = _now_iso,
    ) -> None:
        if batch_size < 1:
            msg = f"batch_size must be >= 1, got {batch_size}"
            raise ValueError(msg)
        self.records = records
        self.issue_index = issue_index
        self.watermark = Watermark(issue_index.store)
        self.batch_size = batch_size
        self._clock = clock
        self._run_lock = threading.Lock()
        self._mode: str = "idle"
        self._last_result: SyncResult | None = None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    # -- Run modes -----------------------------------------------------------

    def run_bootstrap(self) -> SyncResult:
        return self._run("bootstrap", self._all_pages)

    def run_incremental(self) -> SyncResult:
        return self._run("incremental", self._updated_pages)

    def run_startup(self) -> SyncResult:
        """Bootstrap when the index is empty, otherwise catch up incrementally."""
        try:
            empty = self.issue_index.count_all() == 0
        except IssueSyncError as exc:
            logger.warning("Cannot inspect issue index at startup: %s", exc)
            empty = False
        if empty:
            logger.info("Issue index is empty; bootstrapping")
            return self.run_bootstrap()
        return self.run_incremental()

    # -- Paging --------------------------------------------------------------

    def _all_pages(self) -> Iterator[list[IssueRecord]]:
        after: str | None = None
        while True:
            page = self.records.find_all(after_key=after, limit=self.batch_size)
            if page:
                yield page
            if len(page) < self.batch_size:
                return
            after = page[-1].key

    def _updated_pages(self) -> Iterator[list[IssueRecord]]:
        bound = self.watermark.get() or EPOCH_ISO
        after: str | None = None
        while True:
            page = self.records.find_updated_after(bound, after_key=after, limit=self.batch_size)
            if page:
                yield page
            if len(page) < self.batch_size:
                return
            bound, after = page[-1].updated_at, page[-1].key

    # -- Run -----------------------------------------------------------------

    def _run(self, mode: SyncMode, pages: Callable[[], Iterator[list[IssueRecord]]]) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already running (%s); skipping %s run", self._mode, mode)
            return SyncResult(mode=mode, outcome="skipped", started_at=self._clock())
        try:
            self._mode = mode
            started = perf_counter()
            result = SyncResult(mode=mode, outcome="success", started_at=self._clock())
            try:
                for page in pages():
                    bulk = self.issue_index.bulk_upsert(to_document(r) for r in page)
                    result.processed += len(page)
                    result.indexed += len(bulk.committed)
                    result.skipped.extend({"key": f.key, "reason": f.reason} for f in bulk.failures)
                result.watermark = self.watermark.advance(result.started_at)
            except IssueSyncError as exc:
                result.outcome = "failed"
                result.error = str(exc)
                logger.warning("Sync %s run aborted; watermark unchanged: %s", mode, exc)
            except Exception as exc:
                result.outcome = "failed"
                result.error = str(exc)
                logger.exception("BUG: Unexpected error during %s sync", mode)
                raise
            finally:
                result.finished_at = self._clock()
                result.duration_ms = round((perf_counter() - started) * 1000, 1)
                self._last_result = result
                self._save_last_run(result)
                self._log_result(result)
            return result
        finally:
            self._mode = "idle"
            self._run_lock.release()

    def _save_last_run(self, result: SyncResult) -> None:
        try:
            self.issue_index.store.set_meta(LAST_RUN_NAME, json.dumps(result.to_dict()))
        except IssueSyncError as exc:
            logger.warning("Cannot persist sync run summary: %s", exc)

    def _load_last_run(self) -> SyncRunDict | None:
        if self._last_result is not None:
            return self._last_result.to_dict()
        raw = self.issue_index.store.get_meta(LAST_RUN_NAME)
        if raw is None:
            return None
        loaded: SyncRunDict = json.loads(raw)
        return loaded

    def _log_result(self, result: SyncResult) -> None:
        logger.info(
            "sync %s %s",
            result.mode,
            result.outcome,
            extra={
                "mode": result.mode,
                "count": result.indexed,
                "skipped": len(result.skipped),
                "watermark": result.watermark,
                "duration_ms": result.duration_ms,
                **({"error": result.error} if result.error else {}),
            },
        )

    # -- Operator surface ----------------------------------------------------

    def status(self) -> SyncStatus:
        """Watermark, backlog, and the most recent run (persisted across processes)."""
        last: SyncRunDict | None = self._last_result.to_dict() if self._last_result is not None else None
        try:
            last = self._load_last_run()
            watermark = self.watermark.get()
            pending: int | None = self.records.count_updated_after(watermark)
        except IssueSyncError as exc:
            logger.warning("Cannot compute sync backlog: %s", exc)
            watermark = last["watermark"] if last is not None else None
            pending = None
        return {
            "last_watermark": watermark,
            "last_run_outcome": last["outcome"] if last is not None else None,
            "running": self.running,
            "mode": self._mode,
            "pending": pending,
            "last_run": last,
        }


class SyncScheduler:
    """Runs the coordinator on a fixed interval in a daemon thread.

    The first tick is ``run_startup()``; later ticks are incremental. Ticks
    that find a run in progress are skipped by the coordinator's run lock.
    """

    def __init__(self, coordinator: SyncCoordinator, interval: float) -> None:
        if interval <= 0:
            msg = f"Sync interval must be positive, got {interval}"
            raise ValueError(msg)
        self.coordinator = coordinator
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="issuesync-sync", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started (every %ss)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def tick(self, *, startup: bool = False) -> SyncResult | None:
        try:
            if startup:
                return self.coordinator.run_startup()
            return self.coordinator.run_incremental()
        except Exception:
            # Already logged by the coordinator; keep the scheduler alive for the next tick.
            return None

    def _loop(self) -> None:
        self.tick(startup=True)
        while not self._stop.wait(self.interval):
            self.tick()
