"""
Probe Executor and Probe Coordinator

The executor measures one candidate MTU on the live interface under the
interface lock, with bounded retries. The coordinator fans candidates out
over a bounded worker pool, ranks the results, applies the winner and
restores the original MTU on every failing or cancelled exit path.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Tuple

from prometheus_client import Counter, Gauge

from .config import TunerConfig
from .exceptions import (
    LockTimeoutError,
    MeasurementFailure,
    OptimizationCancelled,
    OptimizationFailure,
    ValidationError,
)
from .interface import InterfaceControl
from .locking import InterfaceLock
from .models import MTU_CEILING, MTU_FLOOR, MeasurementRecord, ProbeResult, performance_score, utcnow
from .monitoring import MetricSource
from .report import OptimizationReport
from .store import PerformanceStore

# Configure logging
logger = logging.getLogger(__name__)

# Prometheus metrics
PROBE_SCORE = Gauge('wg_mtu_probe_score', 'Performance score of a probed MTU', ['interface', 'mtu'])
PROBE_FAILURES = Counter('wg_mtu_probe_failures_total', 'Candidate MTUs that failed every attempt', ['interface'])
BEST_MTU = Gauge('wg_mtu_best_mtu', 'Best MTU found by the last optimization run', ['interface'])


def score_candidate(latency_ms: float, throughput_mbps: float) -> float:
    """Score a candidate in [0, 1] from its latency and throughput."""
    return performance_score(latency_ms, throughput_mbps)


def rank(results: List[ProbeResult]) -> List[ProbeResult]:
    """
    Order successful results best first.

    Equal scores prefer the larger MTU.
    """
    successful = [r for r in results if r.ok]
    return sorted(successful, key=lambda r: (-r.score, -r.mtu))


def candidate_mtus(min_mtu: int, max_mtu: int, step: int) -> List[int]:
    return list(range(min_mtu, max_mtu + 1, step))


def lock_name(interface: str) -> str:
    return f"mtu-{interface}"


class ProbeExecutor:
    """Measures one candidate MTU with bounded retries."""

    def __init__(self, config: TunerConfig, control: InterfaceControl, source: MetricSource,
                 cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.control = control
        self.source = source
        self.cancel_event = cancel_event or threading.Event()

    def probe(self, interface: str, mtu: int, retries: Optional[int] = None) -> ProbeResult:
        """
        Probe a single MTU.

        The interface lock is held for the whole set/measure sequence and
        released on every exit path. A lock timeout marks the candidate failed.

        Args:
            interface: Interface to probe
            mtu: Candidate MTU
            retries: Attempt cap (defaults to config.retry_count)

        Returns:
            ProbeResult; `ok` is False when the candidate failed
        """
        lock = InterfaceLock(
            lock_name(interface), self.config.lock_dir,
            attempts=self.config.lock_attempts, backoff=self.config.lock_backoff,
            interface=interface,
        )
        try:
            lock.acquire()
        except LockTimeoutError as e:
            logger.error(f"MTU {mtu}: {e}")
            return ProbeResult(mtu=mtu, error=str(e))

        try:
            return self._attempt_loop(interface, mtu, retries or self.config.retry_count)
        finally:
            lock.release()

    def _attempt_loop(self, interface: str, mtu: int, retries: int) -> ProbeResult:
        last_error: Optional[MeasurementFailure] = None
        for attempt in range(1, retries + 1):
            if self.cancel_event.is_set():
                return ProbeResult(mtu=mtu, attempts=attempt - 1, error="cancelled")

            if not self.control.set_mtu(interface, mtu):
                logger.error(f"Failed to set MTU {mtu} on {interface}, skipping candidate")
                return ProbeResult(mtu=mtu, attempts=attempt, error="failed to set MTU")

            # Let the interface settle; returns early on cancellation
            self.cancel_event.wait(self.config.settle_delay)

            try:
                result = self.measure(interface, mtu)
            except MeasurementFailure as e:
                last_error = e
                logger.debug(f"MTU {mtu} attempt {attempt}/{retries} failed: {e}")
                continue

            result.attempts = attempt
            logger.info(
                f"MTU {mtu}: latency={result.latency_ms:.2f}ms "
                f"throughput={result.throughput_mbps:.2f}Mbps score={result.score:.4f}"
            )
            return result

        logger.warning(f"MTU {mtu} failed after {retries} attempts")
        return ProbeResult(mtu=mtu, attempts=retries, error=str(last_error))

    def measure(self, interface: str, mtu: int) -> ProbeResult:
        """
        One measurement attempt at the MTU currently set on the interface.

        Raises:
            MeasurementFailure: if the server is unreachable or a metric is unavailable
        """
        server = self.config.server
        if not self.source.is_reachable(server, self.config.reachability_timeout):
            raise MeasurementFailure("Server unreachable", interface=interface, value=mtu)

        stats = self.source.ping(server, self.config.ping_count, self.config.ping_timeout)
        if stats is None or stats.avg_ms is None:
            raise MeasurementFailure("Latency unavailable", interface=interface, value=mtu)

        throughput = self.source.throughput(
            server, self.config.throughput_duration, self.config.throughput_timeout
        )
        if throughput is None:
            raise MeasurementFailure("Throughput unavailable", interface=interface, value=mtu)

        return ProbeResult(
            mtu=mtu,
            latency_ms=stats.avg_ms,
            throughput_mbps=throughput,
            packet_loss_pct=stats.loss_pct if stats.loss_pct is not None else 0.0,
            jitter_ms=stats.jitter_ms,
            score=score_candidate(stats.avg_ms, throughput),
        )


class ProbeCoordinator:
    """Runs a full optimization over a candidate MTU range."""

    def __init__(self, config: TunerConfig, control: InterfaceControl, source: MetricSource,
                 store: Optional[PerformanceStore] = None):
        """
        Initialize the coordinator.

        Args:
            config: Tuner configuration
            control: Interface MTU control
            source: Metric source for reachability, latency and throughput
            store: Where successful results are recorded (optional)
        """
        self.config = config
        self.control = control
        self.source = source
        self.store = store
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Ask a running optimization to stop; in-flight probes finish first."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @staticmethod
    def validate_range(min_mtu: int, max_mtu: int, step: int, retries: int, jobs: int) -> None:
        """Raise ValidationError for an invalid probing range or pool size."""
        for name, value in (("min_mtu", min_mtu), ("max_mtu", max_mtu)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer", value=value)
            if not MTU_FLOOR <= value <= MTU_CEILING:
                raise ValidationError(
                    f"{name} must be within [{MTU_FLOOR}, {MTU_CEILING}]", value=value
                )
        if min_mtu >= max_mtu:
            raise ValidationError("min_mtu must be less than max_mtu", value=(min_mtu, max_mtu))
        for name, value in (("step", step), ("retries", retries), ("jobs", jobs)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValidationError(f"{name} must be a positive integer", value=value)

    def run_optimization(self, interface: str, min_mtu: Optional[int] = None,
                         max_mtu: Optional[int] = None, step: Optional[int] = None,
                         retries: Optional[int] = None, jobs: Optional[int] = None,
                         apply_best: bool = True,
                         settle_delay: Optional[float] = None) -> Tuple[int, OptimizationReport]:
        """
        Probe every candidate in [min_mtu, max_mtu] and pick the best.

        Args:
            interface: Interface to tune
            min_mtu, max_mtu, step, retries, jobs: Override the configured values
            apply_best: Leave the best MTU on the interface (otherwise restore the original)
            settle_delay: Override the configured settle delay for this run

        Returns:
            Tuple of (best MTU, report)

        Raises:
            ValidationError: invalid range, before any interface change
            OptimizationFailure: unreachable server or no successful candidate
            OptimizationCancelled: cancel() was called during the run
        """
        cfg = self.config.with_overrides(settle_delay=settle_delay)
        min_mtu = cfg.min_mtu if min_mtu is None else min_mtu
        max_mtu = cfg.max_mtu if max_mtu is None else max_mtu
        step = cfg.step if step is None else step
        retries = cfg.retry_count if retries is None else retries
        jobs = cfg.jobs if jobs is None else jobs
        self.validate_range(min_mtu, max_mtu, step, retries, jobs)

        self._cancel.clear()
        original_mtu = self.control.get_mtu(interface)
        logger.info(f"Original MTU of {interface}: {original_mtu}")

        if not self.source.is_reachable(cfg.server, cfg.reachability_timeout):
            raise OptimizationFailure(
                "Reference server is unreachable", interface=interface, value=cfg.server
            )

        candidates = candidate_mtus(min_mtu, max_mtu, step)
        logger.info(
            f"Testing {len(candidates)} MTUs from {min_mtu} to {max_mtu} "
            f"(step {step}, {jobs} workers, {retries} retries)"
        )

        started_at = utcnow()
        start = time.monotonic()
        executor = ProbeExecutor(cfg, self.control, self.source, self._cancel)
        results: List[ProbeResult] = []
        keep_interface_mtu = False
        try:
            with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="mtu-probe") as pool:
                futures = [pool.submit(executor.probe, interface, mtu, retries) for mtu in candidates]
                try:
                    for future in as_completed(futures):
                        result = future.result()
                        results.append(result)
                        self._publish(interface, result)
                except BaseException:
                    self._cancel.set()
                    for future in futures:
                        future.cancel()
                    raise

            if self._cancel.is_set():
                raise OptimizationCancelled(
                    "Optimization cancelled", interface=interface, value=original_mtu
                )

            ranked = rank(results)
            if not ranked:
                raise OptimizationFailure(
                    "All candidate MTUs failed", interface=interface, value=(min_mtu, max_mtu)
                )
            best = ranked[0]

            applied = False
            if apply_best:
                if not self._set_locked(interface, best.mtu):
                    raise OptimizationFailure(
                        "Failed to apply best MTU", interface=interface, value=best.mtu
                    )
                applied = keep_interface_mtu = True
                logger.info(f"Applied best MTU {best.mtu} to {interface}")

            BEST_MTU.labels(interface=interface).set(best.mtu)
            report = OptimizationReport(
                interface=interface,
                started_at=started_at,
                duration_s=time.monotonic() - start,
                original_mtu=original_mtu,
                best_mtu=best.mtu,
                best_score=best.score,
                results=sorted(results, key=lambda r: r.mtu),
                applied=applied,
            )
            logger.info(f"Best MTU for {interface}: {best.mtu} (score {best.score:.4f})")
            return best.mtu, report
        finally:
            if not keep_interface_mtu:
                self._restore(interface, original_mtu)

    def _publish(self, interface: str, result: ProbeResult) -> None:
        if not result.ok:
            PROBE_FAILURES.labels(interface=interface).inc()
            return
        PROBE_SCORE.labels(interface=interface, mtu=str(result.mtu)).set(result.score)
        if self.store is not None:
            self.store.append(MeasurementRecord(
                timestamp=utcnow(),
                interface=interface,
                latency_ms=result.latency_ms,
                throughput_mbps=result.throughput_mbps,
                packet_loss_pct=result.packet_loss_pct,
                jitter_ms=result.jitter_ms or 0.0,
                mtu=result.mtu,
                performance_score=result.score,
            ))

    def _set_locked(self, interface: str, mtu: int) -> bool:
        lock = InterfaceLock(
            lock_name(interface), self.config.lock_dir,
            attempts=self.config.lock_attempts, backoff=self.config.lock_backoff,
            interface=interface,
        )
        with lock:
            return self.control.set_mtu(interface, mtu)

    def _restore(self, interface: str, original_mtu: int) -> None:
        logger.info(f"Restoring original MTU {original_mtu} on {interface}")
        restored = None
        for attempt in (1, 2):
            try:
                restored = self._set_locked(interface, original_mtu)
                break
            except LockTimeoutError as e:
                logger.warning(
                    f"Lock unavailable while restoring {interface} (attempt {attempt} of 2): {e}"
                )
        if restored is None:
            # The interface must not be left at a candidate MTU
            logger.error(
                f"Unserialized restore of MTU {original_mtu} on {interface}: lock unavailable"
            )
            restored = self.control.set_mtu(interface, original_mtu)
        if not restored:
            logger.error(f"Failed to restore original MTU {original_mtu} on {interface}")
