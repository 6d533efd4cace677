"""
Unit tests for the extraction scheduler.

Scheduler passes run against a real SQLite status store; the idle sleep
is patched so that the loop never actually waits.
"""

import sqlite3
import threading
from unittest.mock import Mock, patch

import pytest

from extract.core.exceptions import ExtractConfigError, RetryableError, StoreError
from extract.core.extractor import ExtractorRegistry
from extract.core.models import ExtractionStatus, NetworkState
from extract.runner.scheduler import (
    ExtractionScheduler,
    SchedulerConfig,
    SchedulerMetrics,
    SchedulerState,
)
from extract.state.sqlite_store import SqliteStatusStore


FAR_TIP = NetworkState(latest_block_on_start=1_000_000)


def make_scheduler(store, extractors, network_state=FAR_TIP, **config):
    config.setdefault("batch_size", 10)
    config.setdefault("max_workers", 4)
    return ExtractionScheduler(
        store=store,
        extractors=extractors,
        network_state=network_state,
        config=SchedulerConfig(**config),
    )


class TestSchedulerConfig:
    """Tests for SchedulerConfig dataclass."""

    def test_default_values(self):
        config = SchedulerConfig()

        assert config.batch_size == 100
        assert config.idle_delay_ms == 1000
        assert config.reorg_margin == 1000
        assert config.max_workers == 4

    @pytest.mark.parametrize("field,value", [
        ("batch_size", 0),
        ("idle_delay_ms", -1),
        ("reorg_margin", -5),
        ("max_workers", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ExtractConfigError, match=field):
            SchedulerConfig(**{field: value})


class TestSchedulerMetrics:
    """Tests for SchedulerMetrics dataclass."""

    def test_initialization(self):
        metrics = SchedulerMetrics(started_at=Mock())

        assert metrics.passes == 0
        assert metrics.idle_passes == 0
        assert metrics.blocks_done == 0
        assert metrics.blocks_retried == 0
        assert metrics.blocks_errored == 0
        assert metrics.per_extractor == {}


class TestExtractBlocks:
    """Tests for one extractor's fetch / group / apply cycle."""

    def test_consecutive_runs_far_from_tip(self, store, add_blocks, make_extractor):
        add_blocks([50, 51, 52, 54, 55], ["c"])
        extractor = make_extractor("c")
        scheduler = make_scheduler(store, [extractor])

        try:
            assert scheduler.extract_blocks(extractor) == 5
        finally:
            scheduler.close()

        assert sorted(extractor.calls) == [[50, 51, 52], [54, 55]]
        assert store.get_stats() == {"c": {"done": 5}}

    def test_singletons_near_tip(self, store, add_blocks, make_extractor):
        heights = list(range(1_000_000, 1_000_006))
        add_blocks(heights, ["a"])
        extractor = make_extractor("a")
        scheduler = make_scheduler(store, [extractor], NetworkState(1_000_500))

        try:
            scheduler.extract_blocks(extractor)
        finally:
            scheduler.close()

        assert sorted(extractor.calls) == [[h] for h in heights]
        assert scheduler.metrics.sub_batches == 6

    def test_disable_perf_boost(self, store, add_blocks, make_extractor):
        add_blocks([1, 2, 3], ["a"])
        extractor = make_extractor("a", disable_perf_boost=True)
        scheduler = make_scheduler(store, [extractor])

        try:
            scheduler.extract_blocks(extractor)
        finally:
            scheduler.close()

        assert sorted(extractor.calls) == [[1], [2], [3]]

    def test_no_work(self, store, make_extractor):
        extractor = make_extractor("a")
        scheduler = make_scheduler(store, [extractor])

        assert scheduler.extract_blocks(extractor) == 0
        assert extractor.calls == []

    def test_respects_batch_size(self, store, add_blocks, make_extractor):
        add_blocks(range(1, 26), ["a"])
        extractor = make_extractor("a")
        scheduler = make_scheduler(store, [extractor], batch_size=10)

        try:
            assert scheduler.extract_blocks(extractor) == 10
        finally:
            scheduler.close()

        assert extractor.processed == list(range(1, 11))

    def test_recoverable_failure_is_retried_next_pass(self, store, add_blocks, make_extractor):
        add_blocks(range(70, 80), ["b"])
        extractor = make_extractor("b", failures={77: RetryableError("not yet")})
        scheduler = make_scheduler(store, [extractor], batch_size=100)

        try:
            scheduler.extract_blocks(extractor)
            assert store.get_status(77, "b") == ExtractionStatus.NEW

            extractor.failures.clear()
            assert scheduler.extract_blocks(extractor) > 0
        finally:
            scheduler.close()

        assert store.get_status(77, "b") == ExtractionStatus.DONE
        assert store.get_stats() == {"b": {"done": 10}}

    def test_singleton_retry_leaves_neighbours_done(self, store, add_blocks, make_extractor):
        add_blocks(range(1_000_000, 1_000_004), ["b"])
        extractor = make_extractor("b", failures={1_000_002: RetryableError("not yet")})
        scheduler = make_scheduler(store, [extractor], NetworkState(1_000_500))

        try:
            scheduler.extract_blocks(extractor)
        finally:
            scheduler.close()

        assert store.get_stats() == {"b": {"done": 3, "new": 1}}
        assert scheduler.metrics.blocks_retried == 1
        assert scheduler.metrics.blocks_done == 3

    def test_fatal_error_raised_after_all_sub_batches(self, tmp_path, make_extractor):
        status_store = FatalOnErrorStore(tmp_path / "fatal.db")
        try:
            with status_store.transaction() as tx:
                tx.execute("CREATE TABLE derived (block_id INTEGER, extractor_name TEXT)")
                tx.executemany(
                    "INSERT INTO block (id, number) VALUES (?, ?)",
                    [(n, n) for n in (1, 2, 3)],
                )
                tx.executemany(
                    "INSERT INTO extracted_block (block_id, extractor_name) VALUES (?, 'a')",
                    [(n,) for n in (1, 2, 3)],
                )

            extractor = make_extractor(
                "a", disable_perf_boost=True, failures={2: ValueError("boom")}
            )
            scheduler = make_scheduler(status_store, [extractor])

            try:
                with pytest.raises(StoreError, match="cannot mark error"):
                    scheduler.extract_blocks(extractor)
            finally:
                scheduler.close()

            assert status_store.get_status(1, "a") == ExtractionStatus.DONE
            assert status_store.get_status(3, "a") == ExtractionStatus.DONE
            assert status_store.get_status(2, "a") == ExtractionStatus.NEW
        finally:
            status_store.close()

    def test_retry_only_sub_batches_are_not_progress(self, store, add_blocks, make_extractor):
        add_blocks([5], ["a"])
        extractor = make_extractor("a", failures={5: RetryableError("not yet")})
        scheduler = make_scheduler(store, [extractor])

        try:
            assert scheduler.extract_blocks(extractor) == 0
        finally:
            scheduler.close()

        assert extractor.calls == [[5]]
        assert scheduler.metrics.blocks_retried == 1
        assert store.get_status(5, "a") == ExtractionStatus.NEW

    def test_store_failure_propagates_unmarked(self, tmp_path, make_extractor):
        status_store = BeginFailingStore(tmp_path / "locked.db")
        try:
            with status_store.transaction() as tx:
                tx.execute("CREATE TABLE derived (block_id INTEGER, extractor_name TEXT)")
                tx.execute("INSERT INTO block (id, number) VALUES (1, 1)")
                tx.execute("INSERT INTO extracted_block (block_id, extractor_name) VALUES (1, 'a')")

            extractor = make_extractor("a")
            scheduler = make_scheduler(status_store, [extractor])
            status_store.locked = True

            try:
                with pytest.raises(StoreError, match="database is locked"):
                    scheduler.extract_blocks(extractor)
            finally:
                scheduler.close()

            status_store.locked = False
            assert extractor.calls == []
            assert status_store.get_status(1, "a") == ExtractionStatus.NEW
            assert scheduler.metrics.blocks_errored == 0
        finally:
            status_store.close()


class FatalOnErrorStore(SqliteStatusStore):
    """Store that cannot record the 'error' status."""

    def mark_blocks(self, conn, blocks, extractor_name, status):
        if status == ExtractionStatus.ERROR:
            raise StoreError("cannot mark error")
        return super().mark_blocks(conn, blocks, extractor_name, status)


class BeginFailingStore(SqliteStatusStore):
    """Store that cannot open write transactions while locked."""

    locked = False

    def _begin(self, conn):
        if self.locked:
            raise sqlite3.OperationalError("database is locked")
        super()._begin(conn)


class TestRunPass:
    """Tests for one full pass over all extractors."""

    def test_dependency_order_within_one_pass(self, store, add_blocks, make_extractor):
        add_blocks(range(1_000_000, 1_000_006), ["A", "B"])
        a = make_extractor("A")
        b = make_extractor("B", dependencies=["A"])
        scheduler = make_scheduler(store, [a, b], NetworkState(1_000_500))

        try:
            assert scheduler.run_pass() is True
        finally:
            scheduler.close()

        assert sorted(a.calls) == [[h] for h in range(1_000_000, 1_000_006)]
        assert b.processed == list(range(1_000_000, 1_000_006))
        assert store.get_stats() == {"A": {"done": 6}, "B": {"done": 6}}

    def test_dependent_waits_for_dependency(self, store, add_blocks, make_extractor):
        add_blocks([1, 2], ["A", "B"])
        a = make_extractor("A", failures={2: RetryableError("later")}, disable_perf_boost=True)
        b = make_extractor("B", dependencies=["A"])
        scheduler = make_scheduler(store, [a, b])

        try:
            scheduler.run_pass()
        finally:
            scheduler.close()

        assert b.processed == [1]
        assert store.get_status(2, "B") == ExtractionStatus.NEW

    def test_dependency_in_error_never_unblocks(self, store, add_blocks, make_extractor):
        add_blocks([1], ["A", "B"])
        a = make_extractor("A", failures={1: ValueError("bad block")})
        b = make_extractor("B", dependencies=["A"])
        scheduler = make_scheduler(store, [a, b])

        try:
            scheduler.run_pass()
            assert scheduler.run_pass() is False
        finally:
            scheduler.close()

        assert b.calls == []
        assert store.get_status(1, "A") == ExtractionStatus.ERROR

    def test_state_and_metrics(self, store, add_blocks, make_extractor):
        add_blocks([1, 2, 3], ["a"])
        extractor = make_extractor("a")
        scheduler = make_scheduler(store, [extractor])

        try:
            assert scheduler.run_pass() is True
            assert scheduler.state == SchedulerState.DRAINING
            assert scheduler.run_pass() is False
            assert scheduler.state == SchedulerState.IDLE
        finally:
            scheduler.close()

        assert scheduler.metrics.passes == 2
        assert scheduler.metrics.idle_passes == 1
        assert scheduler.metrics.blocks_done == 3
        assert scheduler.metrics.per_extractor == {"a": {"done": 3, "retry": 0, "error": 0}}

    def test_get_status(self, store, add_blocks, make_extractor):
        add_blocks([1, 2], ["a", "b"])
        a = make_extractor("a")
        b = make_extractor("b", dependencies=["a"])
        scheduler = make_scheduler(store, [a, b])

        try:
            scheduler.extract_blocks(a)
        finally:
            scheduler.close()

        status = scheduler.get_status()

        assert status["state"] == "idle"
        assert status["extractors"] == ["a", "b"]
        assert status["tip_on_start"] == 1_000_000
        assert status["metrics"]["blocks_done"] == 2
        assert status["queue"] == {"a": {"done": 2}, "b": {"new": 2}}


class TestRun:
    """Tests for the run loop."""

    def test_no_extractors_returns_immediately(self, store):
        scheduler = make_scheduler(store, [])

        metrics = scheduler.run()

        assert metrics.passes == 0

    def test_sleeps_only_after_idle_pass(self, store, add_blocks, make_extractor):
        add_blocks([1, 2], ["a"])
        extractor = make_extractor("a")
        scheduler = make_scheduler(store, [extractor], idle_delay_ms=250)

        with patch.object(scheduler, "_sleep", side_effect=lambda s: scheduler.shutdown()) as sleep:
            metrics = scheduler.run()

        sleep.assert_called_once_with(0.25)
        assert metrics.passes == 2
        assert metrics.idle_passes == 1
        assert store.get_stats() == {"a": {"done": 2}}

    def test_sleeps_after_pass_that_only_retried(self, store, add_blocks, make_extractor):
        add_blocks([5], ["a"])
        extractor = make_extractor("a", failures={5: RetryableError("not yet")})
        scheduler = make_scheduler(store, [extractor], idle_delay_ms=100)
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 3:
                scheduler.shutdown()

        with patch.object(scheduler, "_sleep", side_effect=sleep):
            metrics = scheduler.run()

        assert sleeps == [0.1, 0.1, 0.1]
        assert metrics.passes == 3
        assert metrics.idle_passes == 3
        assert metrics.blocks_retried == 3
        assert extractor.calls == [[5], [5], [5]]
        assert store.get_status(5, "a") == ExtractionStatus.NEW

    def test_shutdown_stops_after_current_pass(self, store, add_blocks, make_extractor):
        add_blocks(range(1, 31), ["a"])
        extractor = make_extractor("a")
        scheduler = make_scheduler(store, [extractor], batch_size=10)

        original = scheduler.run_pass

        def run_pass_then_stop():
            result = original()
            scheduler.shutdown()
            return result

        with patch.object(scheduler, "run_pass", side_effect=run_pass_then_stop):
            metrics = scheduler.run()

        assert metrics.passes == 1
        assert store.get_stats() == {"a": {"done": 10, "new": 20}}

    def test_fatal_error_propagates_from_run(self, tmp_path, make_extractor):
        status_store = FatalOnErrorStore(tmp_path / "fatal.db")
        try:
            with status_store.transaction() as tx:
                tx.execute("CREATE TABLE derived (block_id INTEGER, extractor_name TEXT)")
                tx.execute("INSERT INTO block (id, number) VALUES (1, 1)")
                tx.execute("INSERT INTO extracted_block (block_id, extractor_name) VALUES (1, 'a')")

            extractor = make_extractor("a", failures={1: ValueError("boom")})
            scheduler = make_scheduler(status_store, [extractor])

            with pytest.raises(StoreError):
                scheduler.run()

            assert scheduler._executor is None
        finally:
            status_store.close()

    def test_signal_handlers_restored(self, store, make_extractor):
        import signal

        before = signal.getsignal(signal.SIGTERM)
        scheduler = make_scheduler(store, [make_extractor("a")])

        with patch.object(scheduler, "_sleep", side_effect=lambda s: scheduler.shutdown()):
            scheduler.run()

        assert signal.getsignal(signal.SIGTERM) is before

    def test_run_from_worker_thread_skips_signal_handlers(self, store, make_extractor):
        scheduler = make_scheduler(store, [make_extractor("a")])
        errors = []

        def target():
            try:
                with patch.object(scheduler, "_sleep", side_effect=lambda s: scheduler.shutdown()):
                    scheduler.run()
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=target)
        thread.start()
        thread.join(timeout=10)

        assert errors == []
        assert scheduler.metrics.passes == 1

    def test_more_workers_than_connections_rejected(self, tmp_path, make_extractor):
        status_store = SqliteStatusStore(tmp_path / "small.db", pool_size=2)
        try:
            with pytest.raises(ExtractConfigError, match="max_workers"):
                make_scheduler(status_store, [make_extractor("a")], max_workers=4)

            scheduler = make_scheduler(status_store, [make_extractor("a")], max_workers=2)
            scheduler.close()
        finally:
            status_store.close()

    def test_unbounded_store_accepts_any_worker_count(self, make_extractor):
        mock_store = Mock(pool_size=None)
        scheduler = make_scheduler(mock_store, [make_extractor("a")], max_workers=32)
        assert scheduler.config.max_workers == 32

    def test_accepts_registry(self, store, make_extractor):
        registry = ExtractorRegistry([make_extractor("a")])
        scheduler = make_scheduler(store, registry)
        assert scheduler.registry is registry
