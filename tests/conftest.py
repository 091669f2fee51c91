"""Shared fixtures and fakes for the MTU tuner test suite."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import pytest

from mtu_tuner.config import TunerConfig
from mtu_tuner.models import (
    Anomalies,
    Correlations,
    MeasurementRecord,
    NetworkConditionModel,
    OptimalConditions,
    TimeBucket,
    Trend,
)
from mtu_tuner.monitoring import PingStats
from mtu_tuner.store import InMemoryStore

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


class FakeInterface:
    """In-memory interface control that records every MTU change."""

    def __init__(self, mtu: int = 1420, fail_on=()):
        self.mtu = mtu
        self.fail_on = set(fail_on)
        self.set_calls = []
        self._lock = threading.Lock()

    def get_mtu(self, interface: str) -> int:
        return self.mtu

    def set_mtu(self, interface: str, value: int) -> bool:
        with self._lock:
            self.set_calls.append(value)
            if value in self.fail_on:
                return False
            self.mtu = value
            return True


class TableMetricSource:
    """
    Metric source driven by a per-MTU table of (latency, throughput, loss).

    Looks up the MTU currently set on the fake interface, so a probe that
    measured while another probe changed the MTU would read the wrong row.
    A row with latency None makes ping fail; throughput None makes iperf3 fail.
    """

    def __init__(self, control: FakeInterface,
                 table: Optional[Dict[int, Tuple[Optional[float], Optional[float], float]]] = None,
                 default: Optional[Tuple[Optional[float], Optional[float], float]] = None,
                 reachable: bool = True):
        self.control = control
        self.table = table or {}
        self.default = default
        self.reachable = reachable
        self.ping_calls = 0
        self._lock = threading.Lock()

    def _row(self):
        return self.table.get(self.control.mtu, self.default)

    def is_reachable(self, target, timeout=5.0):
        return self.reachable

    def ping(self, target, count=4, timeout=10.0):
        with self._lock:
            self.ping_calls += 1
        row = self._row()
        if row is None or row[0] is None:
            return None
        latency, _, loss = row
        return PingStats(avg_ms=latency, loss_pct=loss, jitter_ms=1.0,
                         min_ms=latency, max_ms=latency, samples=[latency] * count)

    def throughput(self, target, duration=5, timeout=15.0):
        row = self._row()
        return None if row is None else row[1]

    def measure(self, interface, target, duration=10):
        row = self._row()
        if row is None:
            return {"latency_ms": None, "throughput_mbps": None,
                    "packet_loss_pct": None, "jitter_ms": None}
        return {"latency_ms": row[0], "throughput_mbps": row[1],
                "packet_loss_pct": row[2], "jitter_ms": 0.0}


def make_record(minutes: int = 0, interface: str = "wg0", latency: float = 10.0,
                throughput: float = 100.0, loss: float = 0.0, jitter: float = 0.0,
                mtu: int = 1420, score: Optional[float] = None) -> MeasurementRecord:
    return MeasurementRecord(
        timestamp=T0 + timedelta(minutes=minutes),
        interface=interface,
        latency_ms=latency,
        throughput_mbps=throughput,
        packet_loss_pct=loss,
        jitter_ms=jitter,
        mtu=mtu,
        performance_score=score,
    )


def make_model(interface: str = "wg0", stability: float = 1.0, anomalies: int = 0,
               correlation: float = 1.0, buckets: int = 10,
               optimal_mtu: float = 1420.0) -> NetworkConditionModel:
    """Model with `anomalies` events in each of the three categories."""
    ranges = [TimeBucket(bucket=f"08:{i:02d}", count=1) for i in range(min(buckets, 3))]
    return NetworkConditionModel(
        interface=interface,
        sample_count=max(buckets, 1),
        latency_trend=Trend(avg=10.0, trend=0.0),
        throughput_trend=Trend(avg=100.0, trend=0.0),
        packet_loss_trend=Trend(avg=0.0, trend=0.0),
        stability_score=stability,
        optimal_conditions=OptimalConditions(
            mtu=optimal_mtu, time_ranges=ranges, bucket_count=buckets
        ),
        anomalies=Anomalies(anomalies, anomalies, anomalies),
        correlations=Correlations(mtu_vs_performance=correlation),
    )


@pytest.fixture
def config(tmp_path):
    return TunerConfig(
        interface="wg0",
        server="10.66.66.1",
        step=20,
        retry_count=2,
        jobs=4,
        settle_delay=0.0,
        lock_dir=str(tmp_path / "locks"),
        lock_attempts=50,
        lock_backoff=0.01,
        state_dir=str(tmp_path / "state"),
        evaluation_interval=0.0,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def control():
    return FakeInterface(mtu=1420)
