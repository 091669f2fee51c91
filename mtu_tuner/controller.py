#!/usr/bin/env python3
"""
MTU Tuner Controller

This module provides the main controller for the MTU tuner. It wires the
probing harness, the performance store and the learning components together
and runs the continuous evaluation loop that feeds measurements back into
the decision model.
"""

import logging
import threading
from typing import Any, Mapping, Optional, Tuple, Union

from prometheus_client import Counter, start_http_server

from .adaptation import AdaptationEngine
from .analyzer import PatternAnalyzer
from .conditions import detect_network_conditions, tune_probe_parameters
from .config import TunerConfig
from .exceptions import MtuTunerError, NoDataError, ValidationError
from .interface import InterfaceControl, IPRouteInterface, detect_wireguard_interface
from .locking import InterfaceLock
from .ml_engine import ConfidenceScorer, Predictor
from .models import MeasurementRecord, NetworkConditionModel, Prediction, validate_live_mtu
from .monitoring import MetricSource, NetworkMetricSource
from .prober import ProbeCoordinator, lock_name
from .report import OptimizationReport
from .store import JsonFileStore, PerformanceStore

# Configure logging
logger = logging.getLogger(__name__)

# Prometheus metrics
EVALUATION_CYCLES = Counter('wg_mtu_evaluation_cycles_total', 'Continuous evaluation cycles run', ['interface'])
MTU_CHANGES = Counter('wg_mtu_changes_total', 'MTU changes applied by the evaluation loop', ['interface'])


def start_metrics_server(port: int) -> None:
    """Expose the Prometheus metrics over HTTP."""
    start_http_server(port)
    logger.info(f"Started Prometheus metrics server on port {port}")


class MtuTuner:
    """
    Main controller for the MTU tuner.

    Owns the configuration, the performance store, the interface control and
    the metric source, and exposes the optimization and learning operations.
    """

    def __init__(self, config: Optional[TunerConfig] = None,
                 store: Optional[PerformanceStore] = None,
                 control: Optional[InterfaceControl] = None,
                 source: Optional[MetricSource] = None):
        """
        Initialize the controller.

        Args:
            config: Tuner configuration. If None, use the defaults.
            store: Performance store (defaults to a JSON store in config.state_dir)
            control: Interface control (defaults to pyroute2)
            source: Metric source (defaults to ping/iperf3)
        """
        self.config = (config or TunerConfig()).validate()
        self.store = store or JsonFileStore(
            self.config.state_dir, lock_attempts=self.config.lock_attempts
        )
        self.control = control or IPRouteInterface()
        self.source = source or NetworkMetricSource()

        self.analyzer = PatternAnalyzer(self.store, self.config.analysis_window)
        self.predictor = Predictor(self.store, ConfidenceScorer(), self.config.range_delta)
        self.engine = AdaptationEngine(self.predictor, self.config.confidence_threshold)
        self.coordinator = ProbeCoordinator(self.config, self.control, self.source, self.store)

    def resolve_interface(self, interface: Optional[str] = None) -> str:
        """Return the given or configured interface, auto-detecting WireGuard otherwise."""
        name = interface or self.config.interface
        if name:
            return name
        ipr = self.control.ip if isinstance(self.control, IPRouteInterface) else None
        return detect_wireguard_interface(ipr)

    def run_optimization(self, interface: Optional[str] = None, min_mtu: Optional[int] = None,
                         max_mtu: Optional[int] = None, step: Optional[int] = None,
                         retries: Optional[int] = None, jobs: Optional[int] = None,
                         apply_best: bool = True,
                         auto_tune: bool = False) -> Tuple[int, OptimizationReport]:
        """
        Probe the MTU range and return the best MTU and the run report.

        With `auto_tune`, step, retries, workers and settle delay are derived
        from the detected network conditions unless given explicitly.
        """
        interface = self.resolve_interface(interface)
        settle_delay = None
        if auto_tune:
            conditions = detect_network_conditions(self.source, self.config.server)
            params = tune_probe_parameters(
                conditions.quality, conditions.stability_index, conditions.loss_pct
            )
            step = step or params.step
            retries = retries or params.retry_count
            jobs = jobs or params.jobs
            settle_delay = params.settle_delay

        return self.coordinator.run_optimization(
            interface, min_mtu, max_mtu, step, retries, jobs,
            apply_best=apply_best, settle_delay=settle_delay,
        )

    def cancel_optimization(self) -> None:
        self.coordinator.cancel()

    def record(self, interface: str,
               measurement: Union[MeasurementRecord, Mapping[str, Any]]) -> MeasurementRecord:
        """
        Append a measurement to the interface's history.

        A mapping without an `mtu` is recorded at the interface's current MTU.

        Raises:
            ValidationError: out-of-range MTU or metric; nothing is appended
        """
        if isinstance(measurement, MeasurementRecord):
            if measurement.interface != interface:
                raise ValidationError(
                    "Record belongs to another interface",
                    interface=interface, value=measurement.interface,
                )
            record = measurement.validate()
        else:
            if measurement.get("mtu") is None:
                measurement = dict(measurement, mtu=self.control.get_mtu(interface))
            record = MeasurementRecord.from_measurement(interface, measurement)
        self.store.append(record)
        return record

    def analyze(self, interface: str) -> NetworkConditionModel:
        return self.analyzer.analyze(interface)

    def predict(self, interface: str, current_mtu: int) -> Prediction:
        return self.predictor.predict(interface, current_mtu)

    def adapt(self, interface: str, current_mtu: int) -> int:
        return self.engine.adapt(interface, current_mtu)

    def apply_mtu(self, interface: str, mtu: int) -> bool:
        """Set a validated MTU on the live interface under the interface lock."""
        mtu = validate_live_mtu(mtu, interface)
        lock = InterfaceLock(
            lock_name(interface), self.config.lock_dir,
            attempts=self.config.lock_attempts, backoff=self.config.lock_backoff,
            interface=interface,
        )
        with lock:
            return self.control.set_mtu(interface, mtu)

    def evaluate_continuously(self, interface: Optional[str] = None,
                              interval: Optional[float] = None,
                              threshold: Optional[int] = None,
                              max_cycles: Optional[int] = None) -> "EvaluationHandle":
        """
        Start the continuous evaluation loop in a background thread.

        Args:
            interface: Interface to evaluate (configured or auto-detected if None)
            interval: Seconds between cycles (defaults to config.evaluation_interval)
            threshold: Cycles between adaptations (defaults to config.adaptation_threshold)
            max_cycles: Stop after this many cycles (None = until cancelled)

        Returns:
            Handle to cancel and join the loop
        """
        interval = self.config.evaluation_interval if interval is None else interval
        threshold = self.config.adaptation_threshold if threshold is None else threshold
        if interval < 0:
            raise ValidationError("interval must not be negative", value=interval)
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ValidationError("threshold must be a positive integer", value=threshold)

        evaluator = ContinuousEvaluator(
            self, self.resolve_interface(interface), interval, threshold, max_cycles
        )
        return evaluator.start()

    def close(self) -> None:
        if isinstance(self.control, IPRouteInterface):
            self.control.close()


class ContinuousEvaluator:
    """collect -> record -> analyze -> (every N cycles) adapt -> apply."""

    def __init__(self, tuner: MtuTuner, interface: str, interval: float, threshold: int,
                 max_cycles: Optional[int] = None):
        self.tuner = tuner
        self.interface = interface
        self.interval = interval
        self.threshold = threshold
        self.max_cycles = max_cycles

        self.cycles = 0
        self.evaluation_count = 0
        self.last_error: Optional[BaseException] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "EvaluationHandle":
        logger.info(
            f"Starting continuous evaluation of {self.interface} "
            f"(interval {self.interval}s, adaptation every {self.threshold} cycles)"
        )
        self._thread = threading.Thread(
            target=self._control_loop, name=f"mtu-eval-{self.interface}"
        )
        self._thread.daemon = True
        self._thread.start()
        return EvaluationHandle(self)

    def _control_loop(self) -> None:
        """Main evaluation loop; exits after the in-flight cycle once stopped."""
        while not self._stop.is_set():
            try:
                self.run_cycle()
                self.last_error = None
            except MtuTunerError as e:
                self.last_error = e
                logger.error(f"Evaluation cycle failed for {self.interface}: {e}")
            except Exception as e:
                self.last_error = e
                logger.exception(f"Error in evaluation loop: {e}")

            self.cycles += 1
            EVALUATION_CYCLES.labels(interface=self.interface).inc()
            if self.max_cycles is not None and self.cycles >= self.max_cycles:
                break

            # Sleep until next cycle
            self._stop.wait(self.interval)

        logger.info(f"Continuous evaluation of {self.interface} stopped after {self.cycles} cycles")

    def run_cycle(self) -> None:
        tuner = self.tuner
        interface = self.interface
        current_mtu = tuner.control.get_mtu(interface)

        metrics = tuner.source.measure(
            interface, tuner.config.server, tuner.config.throughput_duration
        )
        missing = [k for k in ("latency_ms", "throughput_mbps", "packet_loss_pct")
                   if metrics.get(k) is None]
        if missing:
            logger.warning(f"Incomplete measurement for {interface} (missing {missing}), not recorded")
        else:
            measurement = {k: v for k, v in metrics.items() if v is not None}
            tuner.record(interface, dict(measurement, mtu=current_mtu))

        try:
            tuner.analyze(interface)
        except NoDataError:
            logger.warning(f"No history yet for {interface}, skipping analysis")
            return

        self.evaluation_count += 1
        if self.evaluation_count < self.threshold:
            return

        new_mtu = tuner.adapt(interface, current_mtu)
        if new_mtu == current_mtu:
            return

        logger.info(f"Auto-adapting MTU of {interface}: {current_mtu} -> {new_mtu}")
        if tuner.apply_mtu(interface, new_mtu):
            MTU_CHANGES.labels(interface=interface).inc()
            logger.info(f"MTU of {interface} updated to {new_mtu}")
            self.evaluation_count = 0
        else:
            logger.error(f"Failed to apply MTU {new_mtu} to {interface}")

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return True

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class EvaluationHandle:
    """Cancellable handle to a running evaluation loop."""

    def __init__(self, evaluator: ContinuousEvaluator):
        self._evaluator = evaluator

    @property
    def interface(self) -> str:
        return self._evaluator.interface

    @property
    def running(self) -> bool:
        return self._evaluator.running

    @property
    def cycles(self) -> int:
        return self._evaluator.cycles

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._evaluator.last_error

    def cancel(self) -> None:
        """Stop after the in-flight cycle; a store write in progress completes first."""
        logger.info(f"Cancelling continuous evaluation of {self.interface}")
        self._evaluator.stop()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to exit. Returns True if it has stopped."""
        return self._evaluator.join(timeout)
