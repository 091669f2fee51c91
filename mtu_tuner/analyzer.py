"""
Pattern Analyzer

Rebuilds an interface's NetworkConditionModel from its measurement history.
The model is a cache: it is recomputed from scratch on every call and can
always be re-derived from the raw history.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from prometheus_client import Gauge

from .exceptions import NoDataError
from .models import (
    HIGH_PERFORMANCE_SCORE,
    Anomalies,
    Correlations,
    MeasurementRecord,
    NetworkConditionModel,
    OptimalConditions,
    TimeBucket,
    Trend,
)
from .store import PerformanceStore

# Configure logging
logger = logging.getLogger(__name__)

# Prometheus metrics
STABILITY_SCORE = Gauge('wg_mtu_stability_score', 'Stability score of the last analysis', ['interface'])
ANOMALY_COUNT = Gauge('wg_mtu_anomaly_count', 'Anomalies found by the last analysis', ['interface'])

TOP_TIME_BUCKETS = 3


def coarse_trend(values: Sequence[float]) -> float:
    """(last - first) / n over time-ordered values; 0 with fewer than two."""
    n = len(values)
    if n < 2:
        return 0.0
    return float((values[-1] - values[0]) / n)


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Pearson correlation coefficient.

    Returns 0 with fewer than two points or when either variance is zero.
    """
    if len(x) < 2 or len(x) != len(y):
        return 0.0
    xa = np.asarray(x, dtype=float)
    ya = np.asarray(y, dtype=float)
    dx = xa - xa.mean()
    dy = ya - ya.mean()
    denom = np.sqrt(np.sum(dx * dx) * np.sum(dy * dy))
    if denom == 0 or not np.isfinite(denom):
        return 0.0
    return float(np.clip(np.sum(dx * dy) / denom, -1.0, 1.0))


def stability_from_jitter(avg_jitter_ms: float) -> float:
    return float(min(max(1.0 - avg_jitter_ms / 100.0, 0.0), 1.0))


def history_frame(records: List[MeasurementRecord], window: Optional[int] = None) -> pd.DataFrame:
    """
    Tabulate records sorted by timestamp.

    The sort is stable so records with equal timestamps keep arrival order.
    `window` keeps only the most recent N records.
    """
    df = pd.DataFrame({
        "ts": pd.to_datetime([r.timestamp for r in records], utc=True),
        "bucket": [r.timestamp.strftime("%H:%M") for r in records],
        "latency": [float(r.latency_ms) for r in records],
        "throughput": [float(r.throughput_mbps) for r in records],
        "packet_loss": [float(r.packet_loss_pct) for r in records],
        "jitter": [float(r.jitter_ms) for r in records],
        "mtu": [int(r.mtu) for r in records],
        "score": [float(r.score) for r in records],
    })
    df = df.sort_values("ts", kind="mergesort").reset_index(drop=True)
    if window is not None:
        df = df.tail(window).reset_index(drop=True)
    return df


def _optimal_conditions(df: pd.DataFrame) -> OptimalConditions:
    high = df[df["score"] >= HIGH_PERFORMANCE_SCORE]
    if len(high):
        mtu = float(high["mtu"].mean())
    else:
        best = df.sort_values(["score", "mtu"], ascending=[False, False], kind="mergesort")
        mtu = float(best["mtu"].iloc[0])

    counts = high["bucket"].value_counts()
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    buckets = [TimeBucket(bucket=str(k), count=int(v)) for k, v in ordered[:TOP_TIME_BUCKETS]]
    return OptimalConditions(mtu=mtu, time_ranges=buckets, bucket_count=len(ordered))


def build_model(interface: str, records: List[MeasurementRecord],
                window: Optional[int] = None) -> NetworkConditionModel:
    """
    Compute the condition model for a non-empty list of records.

    Raises:
        NoDataError: if `records` is empty
    """
    if not records:
        raise NoDataError("No performance history", interface=interface)

    df = history_frame(records, window)
    latency = df["latency"].to_numpy()
    throughput = df["throughput"].to_numpy()
    loss = df["packet_loss"].to_numpy()

    latency_mean = float(latency.mean())
    throughput_mean = float(throughput.mean())

    model = NetworkConditionModel(
        interface=interface,
        sample_count=len(df),
        latency_trend=Trend(avg=latency_mean, trend=coarse_trend(latency)),
        throughput_trend=Trend(avg=throughput_mean, trend=coarse_trend(throughput)),
        packet_loss_trend=Trend(avg=float(loss.mean()), trend=coarse_trend(loss)),
        stability_score=stability_from_jitter(float(df["jitter"].mean())),
        optimal_conditions=_optimal_conditions(df),
        anomalies=Anomalies(
            latency_spike_count=int((latency > 2 * latency_mean).sum()),
            packet_loss_event_count=int((loss > 1.0).sum()),
            throughput_drop_count=int((throughput < 0.5 * throughput_mean).sum()),
        ),
        correlations=Correlations(
            mtu_vs_performance=pearson(df["mtu"].to_numpy(), df["score"].to_numpy()),
            latency_vs_throughput=pearson(latency, throughput),
        ),
    )
    return model.validate()


def recommendations(model: NetworkConditionModel) -> List[str]:
    """Human-readable suggestions derived from a model's trends."""
    advice = []
    if model.latency_trend.trend > 0:
        advice.append("Latency is trending up: consider reducing the MTU")
    elif model.latency_trend.trend < 0:
        advice.append("Latency is trending down: current optimizations are effective")
    if model.anomalies.packet_loss_event_count > 0:
        advice.append(
            f"{model.anomalies.packet_loss_event_count} packet loss events: "
            "investigate link stability"
        )
    if model.stability_score < 0.9:
        advice.append(f"Jitter is high (stability {model.stability_score:.2f})")
    if not advice:
        advice.append("Network conditions are stable")
    return advice


class PatternAnalyzer:
    """Recomputes and persists per-interface condition models."""

    def __init__(self, store: PerformanceStore, window: Optional[int] = None):
        """
        Initialize the analyzer.

        Args:
            store: Source of history and destination of models
            window: Only analyze the most recent N records (None = whole history)
        """
        self.store = store
        self.window = window

    def analyze(self, interface: str) -> NetworkConditionModel:
        """
        Rebuild the model for `interface` from its full history and persist it.

        Raises:
            NoDataError: if the interface has no history (nothing is written)
        """
        records = self.store.records(interface)
        if not records:
            logger.warning(f"No performance history for {interface}")
            raise NoDataError("No performance history", interface=interface)

        model = build_model(interface, records, self.window)
        self.store.save_model(model)

        STABILITY_SCORE.labels(interface=interface).set(model.stability_score)
        ANOMALY_COUNT.labels(interface=interface).set(model.anomalies.total)
        logger.info(
            f"Analyzed {model.sample_count} records for {interface}: "
            f"latency={model.latency_trend.avg:.2f}ms (trend {model.latency_trend.trend:+.3f}), "
            f"stability={model.stability_score:.3f}, optimal MTU={model.optimal_conditions.mtu:.0f}"
        )
        return model
