"""Tests for the watermark sync coordinator and scheduler."""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from issuesync.errors import TransientBackendError
from issuesync.issue_index import IssueIndex
from issuesync.records import RecordStore
from issuesync.sync import LAST_RUN_NAME, SyncCoordinator, SyncScheduler
from tests._factory import make_issue


class TestBootstrap:
    def test_single_record(self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator) -> None:
        record = make_issue(record_store, "ABC-1", component="P1:src/Foo.java", severity="MAJOR")
        result = coordinator.run_bootstrap()
        assert result.outcome == "success"
        assert result.mode == "bootstrap"
        assert issue_index.count_all() == 1
        doc = issue_index.get_by_key("ABC-1")
        assert doc is not None
        assert doc.status == record.status
        assert doc.severity == record.severity
        assert doc.component_key == record.component_key
        assert doc.rule_key == "squid:AvoidCycle"

    def test_pages_through_everything(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        for i in range(5):
            make_issue(record_store, f"K-{i}")
        result = coordinator.run_bootstrap()
        assert result.processed == 5
        assert result.indexed == 5
        assert issue_index.count_all() == 5

    def test_sets_watermark_to_start_time(self, record_store: RecordStore, issue_index: IssueIndex) -> None:
        make_issue(record_store, "K-0")
        coord = SyncCoordinator(record_store, issue_index, clock=lambda: "2999-01-01T00:00:00.000000+00:00")
        result = coord.run_bootstrap()
        assert result.watermark == "2999-01-01T00:00:00.000000+00:00"
        assert coord.watermark.get() == result.watermark

    def test_empty_record_store(self, coordinator: SyncCoordinator) -> None:
        result = coordinator.run_bootstrap()
        assert result.outcome == "success"
        assert result.processed == 0
        assert coordinator.watermark.get() is not None


class TestIncremental:
    def test_only_changed_records(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        for i in range(3):
            make_issue(record_store, f"K-{i}")
        coordinator.run_bootstrap()
        record_store.update_issue("K-1", status="CLOSED", resolution="FIXED")
        result = coordinator.run_incremental()
        assert result.mode == "incremental"
        assert result.processed == 1
        doc = issue_index.get_by_key("K-1")
        assert doc is not None
        assert doc.status == "CLOSED"

    def test_first_incremental_covers_everything(self, record_store: RecordStore, coordinator: SyncCoordinator) -> None:
        for i in range(3):
            make_issue(record_store, f"K-{i}", updated_at=f"2026-01-0{i + 1}T00:00:00+00:00")
        assert coordinator.run_incremental().processed == 3

    def test_pages_over_equal_timestamps(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        for key in ("K-a", "K-b", "K-c", "K-d", "K-e"):
            make_issue(record_store, key, updated_at="2026-01-01T00:00:00+00:00")
        result = coordinator.run_incremental()
        assert result.processed == 5
        assert issue_index.count_all() == 5

    def test_rerun_is_idempotent(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        for i in range(4):
            make_issue(record_store, f"K-{i}")
        coordinator.run_bootstrap()
        before = [issue_index.get_by_key(f"K-{i}") for i in range(4)]
        result = coordinator.run_incremental()
        assert result.processed == 0
        assert issue_index.count_all() == 4
        assert [issue_index.get_by_key(f"K-{i}") for i in range(4)] == before

    def test_write_during_run_is_picked_up_next_time(self, record_store: RecordStore, issue_index: IssueIndex) -> None:
        make_issue(record_store, "K-0")
        coord = SyncCoordinator(record_store, issue_index)
        real_bulk = issue_index.bulk_upsert

        def bulk_then_write(docs):  # type: ignore[no-untyped-def]
            result = real_bulk(docs)
            if record_store.get_by_key("K-late") is None:
                make_issue(record_store, "K-late")
            return result

        with patch.object(issue_index, "bulk_upsert", side_effect=bulk_then_write):
            coord.run_incremental()
        assert issue_index.get_by_key("K-late") is None
        coord.run_incremental()
        assert issue_index.get_by_key("K-late") is not None


class TestWatermark:
    def test_monotonic_across_runs(self, record_store: RecordStore, issue_index: IssueIndex) -> None:
        times = iter(
            [
                "2026-01-03T00:00:00.000000+00:00",  # run 1 start
                "2026-01-03T00:00:01.000000+00:00",  # run 1 finish
                "2026-01-01T00:00:00.000000+00:00",  # run 2 start, clock went backwards
                "2026-01-01T00:00:01.000000+00:00",  # run 2 finish
            ]
        )
        coord = SyncCoordinator(record_store, issue_index, clock=lambda: next(times))
        first = coord.run_incremental()
        second = coord.run_incremental()
        assert first.watermark == "2026-01-03T00:00:00.000000+00:00"
        assert second.watermark == first.watermark

    def test_failure_leaves_watermark_unchanged(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        make_issue(record_store, "K-0")
        coordinator.run_bootstrap()
        watermark = coordinator.watermark.get()
        record_store.update_issue("K-0", status="CLOSED")

        with patch.object(issue_index, "bulk_upsert", side_effect=TransientBackendError("index unavailable")):
            failed = coordinator.run_incremental()
        assert failed.outcome == "failed"
        assert failed.error == "index unavailable"
        assert failed.watermark is None
        assert coordinator.watermark.get() == watermark

        retried = coordinator.run_incremental()
        assert retried.outcome == "success"
        assert retried.processed == 1
        doc = issue_index.get_by_key("K-0")
        assert doc is not None
        assert doc.status == "CLOSED"

    def test_unexpected_error_propagates(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        make_issue(record_store, "K-0")
        with patch.object(issue_index, "bulk_upsert", side_effect=RuntimeError("bug")):
            with pytest.raises(RuntimeError):
                coordinator.run_bootstrap()
        assert coordinator.watermark.get() is None
        assert coordinator.last_result is not None
        assert coordinator.last_result.outcome == "failed"
        assert not coordinator.running


class TestSkippedRecords:
    def test_invalid_record_is_reported_not_fatal(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        make_issue(record_store, "K-0")
        make_issue(record_store, "K-1", line=3)
        # A corrupt line number does not fit the integer field of the issue document.
        with record_store._transaction() as conn:
            conn.execute("UPDATE issues SET line = 'three' WHERE kee = 'K-1'")
        result = coordinator.run_bootstrap()
        assert result.outcome == "success"
        assert result.indexed == 1
        assert [s["key"] for s in result.skipped] == ["K-1"]
        assert coordinator.watermark.get() is not None

    @pytest.mark.parametrize("raw", ["[1, 2]", "{broken", "\"text\""])
    def test_malformed_attributes_skip_only_that_record(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator, raw: str
    ) -> None:
        make_issue(record_store, "K-0")
        make_issue(record_store, "K-1")
        with record_store._transaction() as conn:
            conn.execute("UPDATE issues SET attributes = ? WHERE kee = 'K-1'", (raw,))
        result = coordinator.run_bootstrap()
        assert result.outcome == "success"
        assert issue_index.get_by_key("K-0") is not None
        assert issue_index.get_by_key("K-1") is None
        assert [s["key"] for s in result.skipped] == ["K-1"]
        assert "attributes" in result.skipped[0]["reason"]
        assert coordinator.watermark.get() is not None
        # Later runs are not stuck on the same row.
        assert coordinator.run_incremental().outcome == "success"


class TestStartup:
    def test_bootstraps_when_index_empty(self, record_store: RecordStore, coordinator: SyncCoordinator) -> None:
        make_issue(record_store, "K-0")
        assert coordinator.run_startup().mode == "bootstrap"

    def test_incremental_when_index_populated(self, record_store: RecordStore, coordinator: SyncCoordinator) -> None:
        make_issue(record_store, "K-0")
        coordinator.run_bootstrap()
        assert coordinator.run_startup().mode == "incremental"


class TestConcurrency:
    def test_overlapping_run_is_skipped(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        make_issue(record_store, "K-0")
        entered = threading.Event()
        release = threading.Event()
        real_bulk = issue_index.bulk_upsert

        def slow_bulk(docs):  # type: ignore[no-untyped-def]
            entered.set()
            release.wait(5)
            return real_bulk(docs)

        results = []
        with patch.object(issue_index, "bulk_upsert", side_effect=slow_bulk):
            worker = threading.Thread(target=lambda: results.append(coordinator.run_bootstrap()))
            worker.start()
            assert entered.wait(5)
            assert coordinator.running
            assert coordinator.status()["mode"] == "bootstrap"
            skipped = coordinator.run_incremental()
            release.set()
            worker.join(5)
        assert skipped.outcome == "skipped"
        assert results[0].outcome == "success"
        assert not coordinator.running


class TestStatus:
    def test_before_any_run(self, record_store: RecordStore, coordinator: SyncCoordinator) -> None:
        make_issue(record_store, "K-0")
        status = coordinator.status()
        assert status["last_watermark"] is None
        assert status["last_run_outcome"] is None
        assert status["running"] is False
        assert status["pending"] == 1

    def test_after_run(self, record_store: RecordStore, coordinator: SyncCoordinator) -> None:
        make_issue(record_store, "K-0")
        result = coordinator.run_bootstrap()
        status = coordinator.status()
        assert status["last_watermark"] == result.watermark
        assert status["last_run_outcome"] == "success"
        assert status["pending"] == 0
        assert status["last_run"] == result.to_dict()

    def test_last_run_survives_new_coordinator(
        self, record_store: RecordStore, issue_index: IssueIndex, coordinator: SyncCoordinator
    ) -> None:
        make_issue(record_store, "K-0")
        coordinator.run_bootstrap()
        assert issue_index.store.get_meta(LAST_RUN_NAME) is not None
        fresh = SyncCoordinator(record_store, issue_index)
        status = fresh.status()
        assert status["last_run_outcome"] == "success"
        assert status["last_run"] is not None
        assert status["last_run"]["mode"] == "bootstrap"


class TestScheduler:
    def test_rejects_bad_interval(self, coordinator: SyncCoordinator) -> None:
        with pytest.raises(ValueError, match="positive"):
            SyncScheduler(coordinator, 0)

    def test_tick_swallows_errors(self, coordinator: SyncCoordinator) -> None:
        scheduler = SyncScheduler(coordinator, 60)
        with patch.object(coordinator, "run_incremental", side_effect=RuntimeError("bug")):
            assert scheduler.tick() is None

    def test_first_tick_is_startup(self, record_store: RecordStore, coordinator: SyncCoordinator) -> None:
        make_issue(record_store, "K-0")
        scheduler = SyncScheduler(coordinator, 60)
        scheduler.start()
        try:
            for _ in range(100):
                if coordinator.last_result is not None:
                    break
                time.sleep(0.05)
        finally:
            scheduler.stop(timeout=5)
        assert coordinator.last_result is not None
        assert coordinator.last_result.mode == "bootstrap"
        assert not scheduler.is_running
