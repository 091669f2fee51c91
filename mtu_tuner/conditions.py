"""
Network condition detection

Classifies the path to the reference endpoint from a short ping sample and
derives probing parameters suited to it (more retries and coarser steps on
poor links, more parallelism and finer steps on good ones).
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .monitoring import MetricSource

logger = logging.getLogger(__name__)


class NetworkQuality(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


# (max latency ms, max jitter ms, max loss %) per quality tier
_THRESHOLDS = (
    (NetworkQuality.EXCELLENT, 30.0, 5.0, 0.1),
    (NetworkQuality.GOOD, 80.0, 15.0, 1.0),
    (NetworkQuality.FAIR, 150.0, 30.0, 5.0),
)


@dataclass(frozen=True)
class ProbeParameters:
    retry_count: int
    step: int
    jobs: int
    settle_delay: float


@dataclass(frozen=True)
class NetworkConditions:
    quality: NetworkQuality
    avg_latency_ms: float
    jitter_ms: float
    loss_pct: float
    congested: bool
    stability_index: float


def classify_network_quality(avg_latency: float, jitter: float, loss: float,
                             congested: bool = False) -> NetworkQuality:
    """
    Map latency, jitter and loss onto a quality tier.

    A congested path (average latency above twice the minimum) is never
    rated EXCELLENT.
    """
    for quality, max_latency, max_jitter, max_loss in _THRESHOLDS:
        if congested and quality == NetworkQuality.EXCELLENT:
            continue
        if avg_latency < max_latency and jitter < max_jitter and loss < max_loss:
            return quality
    return NetworkQuality.POOR


def tune_probe_parameters(quality: NetworkQuality, stability_index: float = 1.0,
                          loss: float = 0.0, cpu_count: Optional[int] = None) -> ProbeParameters:
    """
    Choose retry count, step, worker count and settle delay for a quality tier.

    Args:
        quality: Classified network quality
        stability_index: 1 - jitter/avg latency, clamped to [0, 1]
        loss: Observed packet loss percentage
        cpu_count: Available cores (defaults to os.cpu_count())

    Returns:
        ProbeParameters
    """
    cpus = cpu_count or os.cpu_count() or 1

    if quality == NetworkQuality.EXCELLENT:
        retries, step, jobs = 2, 5, cpus * 2
    elif quality == NetworkQuality.GOOD:
        retries, step, jobs = 3, 10, cpus
    elif quality == NetworkQuality.FAIR:
        retries, step, jobs = 4, 15, cpus // 2
    else:
        retries, step, jobs = 6, 25, 2

    if stability_index < 0.95:
        retries += 2
        jobs //= 2

    settle_delay = 5.0 if loss > 2.0 else 2.0
    params = ProbeParameters(
        retry_count=retries, step=step, jobs=max(1, jobs), settle_delay=settle_delay
    )
    logger.info(f"Probe parameters for {quality.value} network: {params}")
    return params


def detect_network_conditions(source: MetricSource, target: str, count: int = 10,
                              timeout: float = 20.0) -> NetworkConditions:
    """
    Sample the path to `target` and classify it.

    An unreachable or unparseable sample is rated POOR.
    """
    stats = source.ping(target, count, timeout)
    if stats is None or stats.avg_ms is None:
        logger.warning(f"Could not sample network conditions towards {target}")
        return NetworkConditions(NetworkQuality.POOR, 0.0, 0.0, 100.0, False, 0.0)

    loss = stats.loss_pct or 0.0
    avg = stats.avg_ms
    congested = stats.min_ms is not None and stats.min_ms > 0 and avg > 2 * stats.min_ms
    stability = 1.0 - stats.jitter_ms / avg if avg > 0 else 1.0
    stability = min(max(stability, 0.0), 1.0)

    quality = classify_network_quality(avg, stats.jitter_ms, loss, congested)
    logger.info(
        f"Network quality {quality.value}: latency={avg:.2f}ms jitter={stats.jitter_ms:.2f}ms "
        f"loss={loss:.1f}% congested={congested} stability={stability:.3f}"
    )
    return NetworkConditions(quality, avg, stats.jitter_ms, loss, congested, stability)
