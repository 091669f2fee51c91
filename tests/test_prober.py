"""Unit tests for the probe executor and the probe coordinator."""

import logging
import threading

import pytest

from conftest import FakeInterface, TableMetricSource
from mtu_tuner.exceptions import OptimizationCancelled, OptimizationFailure, ValidationError
from mtu_tuner.locking import InterfaceLock
from mtu_tuner.models import ProbeResult
from mtu_tuner.prober import (
    ProbeCoordinator,
    ProbeExecutor,
    candidate_mtus,
    lock_name,
    rank,
    score_candidate,
)


def coordinator_for(config, control, source, store=None):
    return ProbeCoordinator(config, control, source, store)


class TestScoring:
    """Candidate scoring and ranking."""

    def test_score(self):
        assert score_candidate(20.0, 400.0) == pytest.approx(0.6)

    def test_rank_prefers_higher_score(self):
        results = [ProbeResult(1400, score=0.5), ProbeResult(1300, score=0.7)]
        assert [r.mtu for r in rank(results)] == [1300, 1400]

    def test_rank_tie_prefers_larger_mtu(self):
        results = [ProbeResult(1400, score=0.6), ProbeResult(1460, score=0.6),
                   ProbeResult(1420, score=0.6)]
        assert [r.mtu for r in rank(results)] == [1460, 1420, 1400]

    def test_rank_excludes_failures(self):
        results = [ProbeResult(1400, score=0.9, error="failed to set MTU"), ProbeResult(1300)]
        assert rank(results) == []

    def test_candidates(self):
        assert candidate_mtus(1280, 1500, 20)[0] == 1280
        assert candidate_mtus(1280, 1500, 20)[-1] == 1500
        assert len(candidate_mtus(1280, 1500, 20)) == 12
        assert candidate_mtus(1400, 1450, 20) == [1400, 1420, 1440]


class TestProbeExecutor:
    """Single-candidate retry protocol."""

    def test_successful_probe(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, {1420: (20.0, 400.0, 0.0)})
        result = ProbeExecutor(config, control, source).probe("wg0", 1420)
        assert result.ok
        assert result.score == pytest.approx(0.6)
        assert result.attempts == 1
        assert control.set_calls == [1420]

    def test_failed_measurement_is_retried(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, {1420: (20.0, None, 0.0)})
        result = ProbeExecutor(config.with_overrides(retry_count=3), control, source).probe("wg0", 1420)
        assert not result.ok
        assert result.attempts == 3
        assert control.set_calls == [1420, 1420, 1420]
        assert "Throughput unavailable" in result.error

    def test_set_failure_aborts_candidate(self, config):
        control = FakeInterface(mtu=1500, fail_on={1420})
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0))
        result = ProbeExecutor(config.with_overrides(retry_count=3), control, source).probe("wg0", 1420)
        assert not result.ok
        assert control.set_calls == [1420]
        assert source.ping_calls == 0

    def test_unreachable_server_is_a_failed_attempt(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0), reachable=False)
        result = ProbeExecutor(config, control, source).probe("wg0", 1420)
        assert not result.ok
        assert result.attempts == config.retry_count

    def test_lock_timeout_marks_candidate_failed(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0))
        busy = config.with_overrides(lock_attempts=2)
        with InterfaceLock(lock_name("wg0"), config.lock_dir):
            result = ProbeExecutor(busy, control, source).probe("wg0", 1420)
        assert not result.ok
        assert control.set_calls == []

    def test_lock_released_after_probe(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0))
        ProbeExecutor(config, control, source).probe("wg0", 1420)
        with InterfaceLock(lock_name("wg0"), config.lock_dir, attempts=1):
            pass


class TestProbeCoordinator:
    """Full optimization runs."""

    def test_selects_only_good_candidate(self, config, store):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(
            control, {1420: (20.0, 400.0, 0.0)}, default=(20.0, 0.0, 100.0)
        )
        best, report = coordinator_for(config, control, source, store).run_optimization(
            "wg0", 1280, 1500, 20
        )
        assert best == 1420
        assert report.best_mtu == 1420
        assert control.mtu == 1420
        assert report.applied
        assert len(report.results) == 12

    def test_measurements_are_not_interleaved(self, config):
        # Each MTU has a distinct latency; a probe measuring while another probe
        # changed the MTU would record another candidate's latency.
        control = FakeInterface(mtu=1500)
        table = {mtu: (float(mtu - 1270), 100.0, 0.0) for mtu in range(1280, 1501, 20)}
        source = TableMetricSource(control, table)
        _, report = coordinator_for(config.with_overrides(jobs=8), control, source).run_optimization(
            "wg0", 1280, 1500, 20
        )
        for result in report.results:
            assert result.latency_ms == float(result.mtu - 1270)

    def test_successful_results_are_recorded(self, config, store):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, {1400: (20.0, 400.0, 0.0)}, default=(20.0, None, 0.0))
        coordinator_for(config, control, source, store).run_optimization("wg0", 1380, 1420, 20)
        records = store.records("wg0")
        assert [r.mtu for r in records] == [1400]
        assert records[0].performance_score == pytest.approx(0.6)

    def test_no_apply_restores_original(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0))
        best, report = coordinator_for(config, control, source).run_optimization(
            "wg0", 1400, 1440, 20, apply_best=False
        )
        assert best == 1440
        assert control.mtu == 1500
        assert not report.applied

    def test_all_candidates_failing_restores_original(self, config):
        control = FakeInterface(mtu=1460)
        source = TableMetricSource(control, default=(None, None, 100.0))
        with pytest.raises(OptimizationFailure) as exc_info:
            coordinator_for(config, control, source).run_optimization("wg0", 1280, 1400, 40)
        assert exc_info.value.interface == "wg0"
        assert control.mtu == 1460
        assert control.set_calls[-1] == 1460

    def test_unreachable_server_fails_before_mutation(self, config):
        control = FakeInterface(mtu=1460)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0), reachable=False)
        with pytest.raises(OptimizationFailure):
            coordinator_for(config, control, source).run_optimization("wg0")
        assert control.set_calls == []

    @pytest.mark.parametrize("kwargs", [
        dict(min_mtu=1500, max_mtu=1400),
        dict(min_mtu=1400, max_mtu=1400),
        dict(min_mtu=1200, max_mtu=1400),
        dict(min_mtu=1280, max_mtu=1600),
        dict(min_mtu=1280, max_mtu=1500, step=0),
        dict(min_mtu=1280, max_mtu=1500, jobs=-1),
    ])
    def test_invalid_range_rejected_without_side_effects(self, config, kwargs):
        control = FakeInterface(mtu=1460)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0))
        with pytest.raises(ValidationError):
            coordinator_for(config, control, source).run_optimization("wg0", **kwargs)
        assert control.set_calls == []

    def test_cancellation_restores_original(self, config):
        control = FakeInterface(mtu=1460)
        coordinator = None

        class CancellingSource(TableMetricSource):
            def throughput(self, target, duration=5, timeout=15.0):
                coordinator.cancel()
                return super().throughput(target, duration, timeout)

        source = CancellingSource(control, default=(20.0, 400.0, 0.0))
        coordinator = coordinator_for(config.with_overrides(jobs=1), control, source)
        with pytest.raises(OptimizationCancelled):
            coordinator.run_optimization("wg0", 1280, 1500, 20)
        assert control.mtu == 1460
        # The in-flight probe finished; the rest were skipped
        assert source.ping_calls == 1

    def test_concurrent_runs_serialize_on_interface_lock(self, config):
        control = FakeInterface(mtu=1500)
        source = TableMetricSource(control, default=(20.0, 400.0, 0.0))
        errors = []

        def run():
            try:
                coordinator_for(config, control, source).run_optimization(
                    "wg0", 1400, 1440, 20, apply_best=False
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

    def test_restore_falls_back_when_lock_stays_busy(self, config, caplog):
        control = FakeInterface(mtu=1400)
        coordinator = coordinator_for(
            config.with_overrides(lock_attempts=1), control, TableMetricSource(control)
        )
        with InterfaceLock(lock_name("wg0"), config.lock_dir):
            with caplog.at_level(logging.WARNING, logger="mtu_tuner.prober"):
                coordinator._restore("wg0", 1460)
        assert control.mtu == 1460
        assert control.set_calls == [1460]
        records = [r for r in caplog.records if r.name == "mtu_tuner.prober"]
        warnings = [r for r in records if r.levelno == logging.WARNING]
        errors = [r for r in records if r.levelno == logging.ERROR]
        assert len(warnings) == 2
        assert len(errors) == 1
        assert "Unserialized restore of MTU 1460 on wg0" in errors[0].getMessage()

    def test_restore_takes_lock_when_available(self, config, caplog):
        control = FakeInterface(mtu=1400)
        coordinator = coordinator_for(config, control, TableMetricSource(control))
        with caplog.at_level(logging.WARNING, logger="mtu_tuner.prober"):
            coordinator._restore("wg0", 1460)
        assert control.mtu == 1460
        assert [r for r in caplog.records if r.name == "mtu_tuner.prober"] == []
        assert InterfaceLock(lock_name("wg0"), config.lock_dir).owner() is None
