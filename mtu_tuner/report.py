"""
Optimization report

Summary statistics over the successful candidates of one optimization run,
a plain-text rendering of the result table and an optional score-vs-MTU plot.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np

from .models import ProbeResult

logger = logging.getLogger(__name__)


@dataclass
class MetricStats:
    mean: float
    min: float
    max: float
    std: float


def summarize(values: List[float]) -> Optional[MetricStats]:
    """Mean, min, max and population standard deviation, or None for no values."""
    if not values:
        return None
    arr = np.asarray(values, dtype=float)
    return MetricStats(
        mean=float(arr.mean()), min=float(arr.min()), max=float(arr.max()), std=float(arr.std())
    )


@dataclass
class OptimizationReport:
    """Outcome of one optimization run."""

    interface: str
    started_at: datetime
    duration_s: float
    original_mtu: int
    best_mtu: int
    best_score: float
    results: List[ProbeResult] = field(default_factory=list)
    applied: bool = False

    @property
    def successful(self) -> List[ProbeResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[ProbeResult]:
        return [r for r in self.results if not r.ok]

    def statistics(self) -> Dict[str, Optional[MetricStats]]:
        ok = self.successful
        return {
            "latency_ms": summarize([r.latency_ms for r in ok]),
            "throughput_mbps": summarize([r.throughput_mbps for r in ok]),
            "score": summarize([r.score for r in ok]),
        }

    def render(self) -> str:
        """Render the report as plain text."""
        lines = [
            "WireGuard MTU Optimization Report",
            "================================",
            f"Interface: {self.interface}",
            f"Date: {self.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Test Duration: {self.duration_s:.0f} seconds",
            f"Original MTU: {self.original_mtu}",
            "",
            "Optimal Configuration",
            "---------------------",
            f"Best MTU: {self.best_mtu}",
            f"Score: {self.best_score:.4f}",
            f"Applied: {'yes' if self.applied else 'no'}",
            "",
            "Statistics",
            "----------",
            f"{'Metric':<18}{'Mean':>10}{'Min':>10}{'Max':>10}{'StdDev':>10}",
        ]
        labels = {"latency_ms": "Latency (ms)", "throughput_mbps": "Throughput (Mbps)",
                  "score": "Score"}
        for key, stats in self.statistics().items():
            if stats is None:
                continue
            lines.append(
                f"{labels[key]:<18}{stats.mean:>10.3f}{stats.min:>10.3f}"
                f"{stats.max:>10.3f}{stats.std:>10.3f}"
            )

        lines += [
            "",
            "Detailed Results",
            "----------------",
            f"{'MTU':>6}{'Latency':>10}{'Throughput':>12}{'Loss%':>8}{'Score':>8}{'Tries':>7}",
        ]
        for r in self.successful:
            lines.append(
                f"{r.mtu:>6}{r.latency_ms:>10.2f}{r.throughput_mbps:>12.2f}"
                f"{(r.packet_loss_pct or 0.0):>8.1f}{r.score:>8.4f}{r.attempts:>7}"
            )

        if self.failed:
            lines += ["", "Failed Candidates", "-----------------"]
            for r in self.failed:
                lines.append(f"{r.mtu:>6}  {r.error}")

        return "\n".join(lines) + "\n"

    def write(self, path: str) -> str:
        """Write the rendered report to `path` and return the path."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            f.write(self.render())
        logger.info(f"Report generated: {path}")
        return path

    def plot_scores(self, path: str) -> Optional[str]:
        """
        Plot score against MTU for the successful candidates.

        Returns:
            The path written, or None when there is nothing to plot
        """
        ok = sorted(self.successful, key=lambda r: r.mtu)
        if not ok:
            logger.debug("No successful candidates, skipping graph generation")
            return None

        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        plt.figure(figsize=(8, 6))
        plt.plot([r.mtu for r in ok], [r.score for r in ok], 'b-o', linewidth=2,
                 label='Performance Score')
        plt.axvline(x=self.best_mtu, color='green', linestyle='--', alpha=0.7,
                    label=f'Best MTU ({self.best_mtu})')
        plt.title(f'MTU Performance Analysis ({self.interface})')
        plt.xlabel('MTU Size')
        plt.ylabel('Score')
        plt.ylim(0, 1)
        plt.grid(True, alpha=0.3)
        plt.legend()
        plt.tight_layout()
        plt.savefig(path)
        plt.close()
        logger.info(f"Performance graph generated: {path}")
        return path


def write_report(report: OptimizationReport, path: str) -> str:
    return report.write(path)
