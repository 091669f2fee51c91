"""
Data models for the MTU tuner.

Measurement records are immutable history entries; network condition models
and predictions are derived caches that can always be rebuilt from history.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import InvalidModelError, ValidationError

# Live adaptation bounds (IPv6 minimum .. standard Ethernet)
MTU_FLOOR = 1280
MTU_CEILING = 1500

# Static configuration bound (jumbo frames)
STATIC_MTU_CEILING = 9000

# Probe score normalisation caps
LATENCY_CAP_MS = 100.0
THROUGHPUT_CAP_MBPS = 1000.0

# Records at or above this score count as high-performance samples
HIGH_PERFORMANCE_SCORE = 0.9


class Direction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    MAINTAIN = "maintain"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    # Reserved for manual override policies; never assigned by the predictor
    HIGH = "high"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp (or pass a datetime through).

    Naive values are assumed to be UTC so that records from different
    writers always compare.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError("Invalid timestamp", value=value, cause=e)
    else:
        raise ValidationError("Invalid timestamp", value=value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def validate_live_mtu(mtu: Any, interface: Optional[str] = None) -> int:
    """
    Validate an MTU destined for a live interface.

    Args:
        mtu: Candidate MTU value
        interface: Interface name, used for error context

    Returns:
        The MTU as an int
    """
    if (isinstance(mtu, bool) or not isinstance(mtu, (int, float))
            or not math.isfinite(mtu) or mtu != int(mtu)):
        raise ValidationError("MTU must be an integer", interface=interface, value=mtu)
    mtu = int(mtu)
    if not MTU_FLOOR <= mtu <= MTU_CEILING:
        raise ValidationError(
            f"MTU must be within [{MTU_FLOOR}, {MTU_CEILING}]",
            interface=interface, value=mtu,
        )
    return mtu


def validate_static_mtu(mtu: Any) -> int:
    """Validate an MTU destined for a static tunnel configuration file."""
    if isinstance(mtu, bool) or not isinstance(mtu, int):
        raise ValidationError("MTU must be an integer", value=mtu)
    if not MTU_FLOOR <= mtu <= STATIC_MTU_CEILING:
        raise ValidationError(
            f"MTU must be within [{MTU_FLOOR}, {STATIC_MTU_CEILING}]", value=mtu
        )
    return mtu


def clamp_mtu(mtu: float) -> int:
    return int(min(max(int(round(mtu)), MTU_FLOOR), MTU_CEILING))


def normalize_latency(latency_ms: float) -> float:
    return (LATENCY_CAP_MS - min(latency_ms, LATENCY_CAP_MS)) / LATENCY_CAP_MS


def normalize_throughput(throughput_mbps: float) -> float:
    return min(throughput_mbps, THROUGHPUT_CAP_MBPS) / THROUGHPUT_CAP_MBPS


def performance_score(latency_ms: float, throughput_mbps: float) -> float:
    """
    Score a measurement in [0, 1]: mean of normalised latency and throughput.

    Latency is capped at 100 ms and throughput at 1000 Mbps.
    """
    latency_ms = max(latency_ms, 0.0)
    throughput_mbps = max(throughput_mbps, 0.0)
    return (normalize_latency(latency_ms) + normalize_throughput(throughput_mbps)) / 2


def _number(data: Mapping[str, Any], key: str, error=InvalidModelError) -> float:
    if key not in data or data[key] is None:
        raise error(f"Missing field '{key}'")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise error(f"Field '{key}' is not numeric", value=value)
    if not math.isfinite(value):
        raise error(f"Field '{key}' is not finite", value=value)
    return float(value)


def _metric(metrics: Mapping[str, Any], key: str, interface: str,
            upper: Optional[float] = None) -> float:
    """A non-negative measurement value, optionally bounded above."""
    try:
        value = _number(metrics, key, ValidationError)
    except ValidationError as e:
        raise ValidationError(e.message, interface=interface, value=e.value)
    if value < 0 or (upper is not None and value > upper):
        bounds = f"[0, {upper:g}]" if upper is not None else ">= 0"
        raise ValidationError(f"Field '{key}' must be {bounds}", interface=interface, value=value)
    return value


def _count(data: Mapping[str, Any], key: str) -> int:
    value = _number(data, key)
    if value < 0 or value != int(value):
        raise InvalidModelError(f"Field '{key}' must be a non-negative integer", value=value)
    return int(value)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) if isinstance(data, Mapping) else None
    if not isinstance(value, Mapping):
        raise InvalidModelError(f"Missing section '{key}'")
    return value


@dataclass(frozen=True)
class MeasurementRecord:
    """A single timestamped performance sample for an interface."""

    timestamp: datetime
    interface: str
    latency_ms: float
    throughput_mbps: float
    packet_loss_pct: float
    jitter_ms: float
    mtu: int
    performance_score: Optional[float] = None

    @property
    def score(self) -> float:
        """Stored score, or the probe scoring formula when none was recorded."""
        if self.performance_score is not None:
            return self.performance_score
        return performance_score(self.latency_ms, self.throughput_mbps)

    def validate(self) -> "MeasurementRecord":
        """Raise ValidationError unless every field is within its domain."""
        MeasurementRecord.from_dict(self.to_dict())
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "interface": self.interface,
            "metrics": {
                "latency": self.latency_ms,
                "throughput": self.throughput_mbps,
                "packet_loss": self.packet_loss_pct,
                "jitter": self.jitter_ms,
                "mtu": self.mtu,
                "performance_score": self.score,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MeasurementRecord":
        if not isinstance(data, Mapping):
            raise ValidationError("Measurement record must be a mapping", value=data)
        metrics = data.get("metrics", data)
        if not isinstance(metrics, Mapping):
            raise ValidationError("Measurement metrics must be a mapping", value=metrics)
        interface = data.get("interface")
        if not isinstance(interface, str) or not interface:
            raise ValidationError("Measurement record has no interface", value=interface)
        if metrics.get("mtu") is None:
            raise ValidationError("Missing field 'mtu'", interface=interface)
        score = metrics.get("performance_score", metrics.get("score"))
        if score is not None:
            score = _metric({"performance_score": score}, "performance_score", interface, 1.0)
        return cls(
            timestamp=parse_timestamp(data.get("timestamp")),
            interface=interface,
            latency_ms=_metric(metrics, "latency", interface),
            throughput_mbps=_metric(metrics, "throughput", interface),
            packet_loss_pct=_metric(metrics, "packet_loss", interface, 100.0),
            jitter_ms=_metric(metrics, "jitter", interface),
            mtu=validate_live_mtu(metrics["mtu"], interface),
            performance_score=score,
        )

    @classmethod
    def from_measurement(cls, interface: str, measurement: Mapping[str, Any],
                         timestamp: Optional[datetime] = None) -> "MeasurementRecord":
        """
        Build a record from a metric-source style mapping.

        Accepts both the collector keys (``latency_ms``, ``throughput_mbps``,
        ``packet_loss_pct``, ``jitter_ms``) and the short history keys
        (``latency``, ``throughput``, ``packet_loss``, ``jitter``).
        """
        aliases = {
            "latency": "latency_ms",
            "throughput": "throughput_mbps",
            "packet_loss": "packet_loss_pct",
            "jitter": "jitter_ms",
            "performance_score": "score",
        }
        metrics: Dict[str, Any] = {}
        for short, long in aliases.items():
            if short in measurement:
                metrics[short] = measurement[short]
            elif long in measurement:
                metrics[short] = measurement[long]
        metrics["mtu"] = measurement.get("mtu")
        if "jitter" not in metrics:
            metrics["jitter"] = 0.0
        ts = timestamp or measurement.get("timestamp") or utcnow()
        return cls.from_dict({"timestamp": ts, "interface": interface, "metrics": metrics})


@dataclass(frozen=True)
class Trend:
    avg: float
    trend: float

    @property
    def slope(self) -> float:
        return self.trend

    def to_dict(self) -> Dict[str, float]:
        return {"avg": self.avg, "trend": self.trend}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Trend":
        return cls(avg=_number(data, "avg"), trend=_number(data, "trend"))


@dataclass(frozen=True)
class TimeBucket:
    bucket: str  # HH:MM
    count: int


@dataclass(frozen=True)
class OptimalConditions:
    mtu: float
    time_ranges: List[TimeBucket] = field(default_factory=list)
    bucket_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mtu": self.mtu,
            "time_ranges": [{"key": b.bucket, "count": b.count} for b in self.time_ranges],
            "bucket_count": self.bucket_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OptimalConditions":
        ranges = data.get("time_ranges", [])
        if not isinstance(ranges, list):
            raise InvalidModelError("Field 'time_ranges' must be a list", value=ranges)
        buckets = []
        for item in ranges:
            if not isinstance(item, Mapping) or not isinstance(item.get("key"), str):
                raise InvalidModelError("Malformed time bucket", value=item)
            buckets.append(TimeBucket(bucket=item["key"], count=_count(item, "count")))
        bucket_count = _count(data, "bucket_count") if "bucket_count" in data else len(buckets)
        return cls(mtu=_number(data, "mtu"), time_ranges=buckets, bucket_count=bucket_count)


@dataclass(frozen=True)
class Anomalies:
    latency_spike_count: int = 0
    packet_loss_event_count: int = 0
    throughput_drop_count: int = 0

    @property
    def total(self) -> int:
        return self.latency_spike_count + self.packet_loss_event_count + self.throughput_drop_count

    def to_dict(self) -> Dict[str, int]:
        return {
            "latency_spikes": self.latency_spike_count,
            "packet_loss_events": self.packet_loss_event_count,
            "throughput_drops": self.throughput_drop_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Anomalies":
        return cls(
            latency_spike_count=_count(data, "latency_spikes"),
            packet_loss_event_count=_count(data, "packet_loss_events"),
            throughput_drop_count=_count(data, "throughput_drops"),
        )


@dataclass(frozen=True)
class Correlations:
    mtu_vs_performance: float = 0.0
    latency_vs_throughput: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "mtu_vs_performance": self.mtu_vs_performance,
            "latency_vs_throughput": self.latency_vs_throughput,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Correlations":
        return cls(
            mtu_vs_performance=_number(data, "mtu_vs_performance"),
            latency_vs_throughput=float(data.get("latency_vs_throughput", 0.0)),
        )


@dataclass(frozen=True)
class NetworkConditionModel:
    """Statistical summary of an interface's history. Rebuilt on every analysis."""

    interface: str
    sample_count: int
    latency_trend: Trend
    throughput_trend: Trend
    packet_loss_trend: Trend
    stability_score: float
    optimal_conditions: OptimalConditions
    anomalies: Anomalies
    correlations: Correlations

    def validate(self) -> "NetworkConditionModel":
        """Raise InvalidModelError unless every field lies in its numeric domain."""
        if self.sample_count < 1:
            raise InvalidModelError("Model has no samples", interface=self.interface)
        for name in ("latency_trend", "throughput_trend", "packet_loss_trend"):
            trend = getattr(self, name)
            if not (math.isfinite(trend.avg) and math.isfinite(trend.trend)):
                raise InvalidModelError(f"Non-finite {name}", interface=self.interface)
        if not (math.isfinite(self.stability_score) and 0.0 <= self.stability_score <= 1.0):
            raise InvalidModelError(
                "stability_score outside [0, 1]",
                interface=self.interface, value=self.stability_score,
            )
        corr = self.correlations.mtu_vs_performance
        if not (math.isfinite(corr) and -1.0 <= corr <= 1.0):
            raise InvalidModelError(
                "mtu_vs_performance outside [-1, 1]", interface=self.interface, value=corr
            )
        mtu = self.optimal_conditions.mtu
        if not (math.isfinite(mtu) and mtu > 0):
            raise InvalidModelError("Invalid optimal MTU", interface=self.interface, value=mtu)
        counts = (
            self.anomalies.latency_spike_count,
            self.anomalies.packet_loss_event_count,
            self.anomalies.throughput_drop_count,
            self.optimal_conditions.bucket_count,
        )
        if any(c < 0 for c in counts):
            raise InvalidModelError("Negative count in model", interface=self.interface)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "sample_count": self.sample_count,
            "latency_trend": self.latency_trend.to_dict(),
            "throughput_trend": self.throughput_trend.to_dict(),
            "packet_loss_trend": self.packet_loss_trend.to_dict(),
            "stability_score": self.stability_score,
            "optimal_conditions": self.optimal_conditions.to_dict(),
            "anomalies": self.anomalies.to_dict(),
            "correlations": self.correlations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NetworkConditionModel":
        if not isinstance(data, Mapping):
            raise InvalidModelError("Model must be a mapping", value=data)
        model = cls(
            interface=str(data.get("interface", "")),
            sample_count=_count(data, "sample_count") if "sample_count" in data else 1,
            latency_trend=Trend.from_dict(_section(data, "latency_trend")),
            throughput_trend=Trend.from_dict(_section(data, "throughput_trend")),
            packet_loss_trend=Trend.from_dict(_section(data, "packet_loss_trend")),
            stability_score=_number(data, "stability_score"),
            optimal_conditions=OptimalConditions.from_dict(_section(data, "optimal_conditions")),
            anomalies=Anomalies.from_dict(_section(data, "anomalies")),
            correlations=Correlations.from_dict(_section(data, "correlations")),
        )
        return model.validate()


@dataclass(frozen=True)
class MtuRange:
    min: int
    max: int

    def contains(self, mtu: int) -> bool:
        return self.min <= mtu <= self.max

    def to_dict(self) -> Dict[str, int]:
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class Recommendation:
    direction: Direction
    expected_improvement: float
    risk_level: RiskLevel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mtu_adjustment": self.direction.value,
            "expected_improvement": self.expected_improvement,
            "risk_level": self.risk_level.value,
        }


@dataclass(frozen=True)
class Prediction:
    """Most recent forecast for an interface at a given current MTU."""

    interface: str
    timestamp: datetime
    current_mtu: int
    optimal_mtu_range: MtuRange
    confidence_score: float
    recommendation: Recommendation
    latency_trend: float = 0.0
    throughput_trend: float = 0.0
    packet_loss_trend: float = 0.0
    stability_prediction: float = 0.0

    def validate(self) -> "Prediction":
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValidationError(
                "confidence_score outside [0, 1]",
                interface=self.interface, value=self.confidence_score,
            )
        if not 0.0 <= self.recommendation.expected_improvement <= 1.0:
            raise ValidationError(
                "expected_improvement outside [0, 1]",
                interface=self.interface, value=self.recommendation.expected_improvement,
            )
        if self.optimal_mtu_range.min > self.optimal_mtu_range.max:
            raise ValidationError(
                "Empty optimal MTU range",
                interface=self.interface, value=self.optimal_mtu_range.to_dict(),
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "interface": self.interface,
            "current_mtu": self.current_mtu,
            "predictions": {
                "latency_trend": self.latency_trend,
                "throughput_trend": self.throughput_trend,
                "packet_loss_trend": self.packet_loss_trend,
                "stability_prediction": self.stability_prediction,
                "optimal_mtu_range": self.optimal_mtu_range.to_dict(),
                "confidence_score": self.confidence_score,
                "recommendations": self.recommendation.to_dict(),
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Prediction":
        try:
            body = data["predictions"]
            rec = body["recommendations"]
            prediction = cls(
                interface=str(data["interface"]),
                timestamp=parse_timestamp(data["timestamp"]),
                current_mtu=int(data["current_mtu"]),
                optimal_mtu_range=MtuRange(
                    min=int(body["optimal_mtu_range"]["min"]),
                    max=int(body["optimal_mtu_range"]["max"]),
                ),
                confidence_score=float(body["confidence_score"]),
                recommendation=Recommendation(
                    direction=Direction(rec["mtu_adjustment"]),
                    expected_improvement=float(rec["expected_improvement"]),
                    risk_level=RiskLevel(rec["risk_level"]),
                ),
                latency_trend=float(body.get("latency_trend", 0.0)),
                throughput_trend=float(body.get("throughput_trend", 0.0)),
                packet_loss_trend=float(body.get("packet_loss_trend", 0.0)),
                stability_prediction=float(body.get("stability_prediction", 0.0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("Malformed prediction", cause=e)
        return prediction.validate()


@dataclass
class ProbeResult:
    """Outcome of probing one candidate MTU during an optimization run."""

    mtu: int
    latency_ms: Optional[float] = None
    throughput_mbps: Optional[float] = None
    packet_loss_pct: Optional[float] = None
    jitter_ms: Optional[float] = None
    score: Optional[float] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.score is not None
