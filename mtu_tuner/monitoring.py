"""
Network Monitoring for the MTU tuner

This module implements the metric source used by both the probing harness and
the continuous evaluation loop: reachability, latency/jitter/loss via ping and
throughput via iperf3, each bounded by an explicit timeout.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import numpy as np
from prometheus_client import Gauge

# Configure logging
logger = logging.getLogger(__name__)

# Prometheus metrics
PACKET_LOSS = Gauge('wg_mtu_network_packet_loss', 'Network packet loss percentage', ['interface'])
LATENCY = Gauge('wg_mtu_network_latency_ms', 'Network latency in milliseconds', ['interface'])
THROUGHPUT = Gauge('wg_mtu_network_throughput_mbps', 'Network throughput in Mbps', ['interface'])
JITTER = Gauge('wg_mtu_network_jitter_ms', 'Network jitter in milliseconds', ['interface'])

_SAMPLE_RE = re.compile(r"time\s*[=<]\s*(\d+(?:\.\d+)?)\s*ms", re.IGNORECASE)
_LOSS_RE = re.compile(r"(\d+(?:\.\d+)?)%\s+packet loss")
_SUMMARY_RE = re.compile(
    r"(?:rtt|round-trip) min/avg/max/(?:mdev|stddev) = "
    r"([\d.]+)/([\d.]+)/([\d.]+)/([\d.]+)"
)


@dataclass
class PingStats:
    """Parsed result of one ping run."""

    avg_ms: Optional[float]
    loss_pct: Optional[float]
    jitter_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    samples: List[float] = field(default_factory=list)


def jitter_from_samples(samples: List[float]) -> float:
    """Mean absolute difference between successive RTT samples (0 with fewer than 2)."""
    if len(samples) < 2:
        return 0.0
    return float(np.mean(np.abs(np.diff(np.asarray(samples, dtype=float)))))


def parse_ping_output(output: str) -> Optional[PingStats]:
    """
    Parse Linux/macOS ping output.

    Args:
        output: Raw stdout of a ping run

    Returns:
        PingStats, or None when the output holds neither replies nor a loss summary
    """
    if not output:
        return None

    samples = [float(s) for s in _SAMPLE_RE.findall(output)]
    loss_match = _LOSS_RE.search(output)
    loss = float(loss_match.group(1)) if loss_match else None

    summary = _SUMMARY_RE.search(output)
    if summary:
        min_ms, avg_ms, max_ms = (float(summary.group(i)) for i in (1, 2, 3))
    elif samples:
        min_ms, avg_ms, max_ms = min(samples), float(np.mean(samples)), max(samples)
    else:
        min_ms = avg_ms = max_ms = None

    if avg_ms is None and loss is None:
        return None

    return PingStats(
        avg_ms=avg_ms,
        loss_pct=loss,
        jitter_ms=jitter_from_samples(samples),
        min_ms=min_ms,
        max_ms=max_ms,
        samples=samples,
    )


def parse_iperf3_json(output: str) -> Optional[float]:
    """
    Extract receiver throughput in Mbps from `iperf3 -J` output.

    Returns:
        Throughput in Mbps, or None if the report is missing or an error
    """
    try:
        report = json.loads(output)
    except (TypeError, ValueError):
        return None
    if not isinstance(report, dict) or report.get("error"):
        return None
    end = report.get("end") or {}
    for key in ("sum_received", "sum"):
        section = end.get(key)
        if isinstance(section, dict) and section.get("bits_per_second") is not None:
            return float(section["bits_per_second"]) / 1e6
    return None


class MetricSource(Protocol):
    """Collaborator that measures the path to a reference endpoint."""

    def is_reachable(self, target: str, timeout: float) -> bool:
        ...

    def ping(self, target: str, count: int, timeout: float) -> Optional[PingStats]:
        ...

    def throughput(self, target: str, duration: int, timeout: float) -> Optional[float]:
        ...

    def measure(self, interface: str, target: str, duration: int) -> Dict[str, Optional[float]]:
        ...


class NetworkMetricSource:
    """MetricSource backed by the system ping and iperf3 binaries."""

    def __init__(self, ping_binary: str = "ping", iperf_binary: str = "iperf3"):
        self.ping_binary = ping_binary
        self.iperf_binary = iperf_binary

    def _run(self, cmd: List[str], timeout: float) -> Optional[subprocess.CompletedProcess]:
        try:
            return subprocess.run(
                cmd, capture_output=True, text=True, timeout=timeout, shell=False
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        except OSError as e:
            logger.error(f"Failed to run {cmd[0]}: {e}")
        return None

    def is_reachable(self, target: str, timeout: float = 5.0) -> bool:
        """Send a single echo request and report whether it was answered."""
        result = self._run([self.ping_binary, "-c", "1", "-W", "2", target], timeout)
        return result is not None and result.returncode == 0

    def ping(self, target: str, count: int = 4, timeout: float = 10.0) -> Optional[PingStats]:
        """
        Measure latency, jitter and loss.

        Returns:
            PingStats, or None if ping could not run or timed out
        """
        result = self._run(
            [self.ping_binary, "-c", str(count), "-i", "0.2", "-W", "1", target], timeout
        )
        if result is None:
            return None
        stats = parse_ping_output(result.stdout)
        if stats is None:
            logger.debug(f"Unparseable ping output for {target}: {result.stdout[:100]!r}")
        return stats

    def throughput(self, target: str, duration: int = 5, timeout: float = 15.0) -> Optional[float]:
        """
        Measure throughput against an iperf3 server.

        Returns:
            Throughput in Mbps, or None if unavailable
        """
        result = self._run(
            [self.iperf_binary, "-c", target, "-J", "-t", str(duration)], timeout
        )
        if result is None:
            return None
        return parse_iperf3_json(result.stdout)

    def measure(self, interface: str, target: str, duration: int = 10) -> Dict[str, Optional[float]]:
        """
        Collect the current metrics for an interface.

        Args:
            interface: Interface the traffic leaves through (used for labelling)
            target: Reference endpoint running an iperf3 server
            duration: Seconds of pinging and of the iperf3 run

        Returns:
            Dictionary of latency_ms, throughput_mbps, packet_loss_pct and
            jitter_ms; a value is None when it could not be measured
        """
        stats = self._run_ping_window(target, duration)
        throughput = self.throughput(target, duration, timeout=duration + 10)

        metrics: Dict[str, Optional[float]] = {
            "latency_ms": stats.avg_ms if stats else None,
            "throughput_mbps": throughput,
            "packet_loss_pct": stats.loss_pct if stats else None,
            "jitter_ms": stats.jitter_ms if stats else None,
        }
        self._update_prometheus_metrics(interface, metrics)
        logger.debug(f"Collected metrics for {interface}: {metrics}")
        return metrics

    def _run_ping_window(self, target: str, duration: int) -> Optional[PingStats]:
        result = self._run(
            [self.ping_binary, "-c", str(duration), "-i", "1", "-W", "1", target],
            timeout=duration + 5,
        )
        return parse_ping_output(result.stdout) if result is not None else None

    @staticmethod
    def _update_prometheus_metrics(interface: str, metrics: Dict[str, Optional[float]]) -> None:
        """Update Prometheus metrics."""
        for gauge, key in ((LATENCY, "latency_ms"), (THROUGHPUT, "throughput_mbps"),
                           (PACKET_LOSS, "packet_loss_pct"), (JITTER, "jitter_ms")):
            if metrics.get(key) is not None:
                gauge.labels(interface=interface).set(metrics[key])
