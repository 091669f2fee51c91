"""
ML Engine for the MTU tuner

This module turns a network condition model into a bounded confidence score
and combines the model with a current MTU into a prediction: the optimal MTU
range, the direction to move, the expected improvement and the risk level.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from prometheus_client import Gauge, Summary

from .exceptions import InvalidModelError, NoDataError, ValidationError
from .models import (
    MTU_CEILING,
    MTU_FLOOR,
    Direction,
    MtuRange,
    NetworkConditionModel,
    Prediction,
    Recommendation,
    RiskLevel,
    utcnow,
    validate_live_mtu,
)
from .store import PerformanceStore

# Configure logging
logger = logging.getLogger(__name__)

# Prometheus metrics
ML_PREDICTION_TIME = Summary('wg_mtu_prediction_seconds', 'Time spent making MTU predictions')
MTU_PREDICTION = Gauge('wg_mtu_prediction', 'Predicted optimal MTU value', ['interface'])
PREDICTION_CONFIDENCE = Gauge('wg_mtu_prediction_confidence', 'Confidence in MTU prediction (0-1)', ['interface'])

LOW_RISK_CONFIDENCE = 0.8
DATA_SUFFICIENCY_BUCKETS = 10


@dataclass(frozen=True)
class ConfidenceWeights:
    stability: float = 0.45
    anomaly: float = 0.2
    correlation: float = 0.25
    data: float = 0.1

    def __post_init__(self):
        weights = (self.stability, self.anomaly, self.correlation, self.data)
        if any(w < 0 for w in weights) or not math.isclose(sum(weights), 1.0):
            raise ValidationError("Confidence weights must be non-negative and sum to 1", value=weights)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(max(value, low), high)


def anomaly_component(count: int, decay: float = 0.2) -> float:
    """1 with no anomalies, decaying exponentially towards 0 as the count grows."""
    return math.exp(-decay * count)


def data_component(bucket_count: int, sufficient: int = DATA_SUFFICIENCY_BUCKETS) -> float:
    """Saturating share of the distinct high-performance time buckets needed."""
    return min(1.0, bucket_count / sufficient)


class ConfidenceScorer:
    """Deterministic, monotonic confidence score in [0, 1]."""

    def __init__(self, weights: Optional[ConfidenceWeights] = None):
        self.weights = weights or ConfidenceWeights()

    def score(self, model: Union[NetworkConditionModel, Mapping[str, Any]]) -> float:
        """
        Score a model.

        Args:
            model: A NetworkConditionModel or its dictionary form

        Returns:
            Confidence in [0, 1]

        Raises:
            InvalidModelError: if a required field is missing or out of domain
        """
        if isinstance(model, Mapping):
            model = NetworkConditionModel.from_dict(model)
        elif isinstance(model, NetworkConditionModel):
            model.validate()
        else:
            raise InvalidModelError("Unsupported model type", value=type(model).__name__)

        w = self.weights
        confidence = (
            w.stability * model.stability_score
            + w.anomaly * anomaly_component(model.anomalies.total)
            + w.correlation * abs(model.correlations.mtu_vs_performance)
            + w.data * data_component(model.optimal_conditions.bucket_count)
        )
        return _clamp(confidence)


def expected_improvement(confidence: float, current_mtu: int, optimal_mtu: int) -> float:
    """Confidence scaled by the distance to the optimum over the live MTU span."""
    distance = min(1.0, abs(current_mtu - optimal_mtu) / (MTU_CEILING - MTU_FLOOR))
    return _clamp(confidence * distance)


class Predictor:
    """Forecasts the optimal MTU range for an interface from its model."""

    def __init__(self, store: PerformanceStore, scorer: Optional[ConfidenceScorer] = None,
                 range_delta: int = 20):
        """
        Initialize the predictor.

        Args:
            store: Source of models and destination of predictions
            scorer: Confidence scorer (defaults to the standard weights)
            range_delta: Half-width of the optimal MTU range
        """
        self.store = store
        self.scorer = scorer or ConfidenceScorer()
        self.range_delta = range_delta

    @ML_PREDICTION_TIME.time()
    def predict(self, interface: str, current_mtu: int) -> Prediction:
        """
        Predict the optimal MTU range for the interface.

        Args:
            interface: Interface name
            current_mtu: MTU currently set on the interface

        Returns:
            The persisted Prediction

        Raises:
            ValidationError: if current_mtu is outside the live bounds
            NoDataError: if no model exists for the interface
        """
        current_mtu = validate_live_mtu(current_mtu, interface)
        model = self.store.load_model(interface)
        if model is None:
            raise NoDataError("No network condition model", interface=interface)

        confidence = self.scorer.score(model)
        optimal = int(round(model.optimal_conditions.mtu))

        if current_mtu < optimal:
            direction = Direction.INCREASE
        elif current_mtu > optimal:
            direction = Direction.DECREASE
        else:
            direction = Direction.MAINTAIN

        risk = RiskLevel.LOW if confidence >= LOW_RISK_CONFIDENCE else RiskLevel.MEDIUM

        prediction = Prediction(
            interface=interface,
            timestamp=utcnow(),
            current_mtu=current_mtu,
            optimal_mtu_range=MtuRange(min=optimal - self.range_delta, max=optimal + self.range_delta),
            confidence_score=confidence,
            recommendation=Recommendation(
                direction=direction,
                expected_improvement=expected_improvement(confidence, current_mtu, optimal),
                risk_level=risk,
            ),
            latency_trend=model.latency_trend.trend,
            throughput_trend=model.throughput_trend.trend,
            packet_loss_trend=model.packet_loss_trend.trend,
            stability_prediction=model.stability_score,
        )
        self.store.save_prediction(prediction)

        # Update Prometheus metrics
        MTU_PREDICTION.labels(interface=interface).set(optimal)
        PREDICTION_CONFIDENCE.labels(interface=interface).set(confidence)

        logger.info(
            f"Predicted optimal MTU {optimal} for {interface} "
            f"(current {current_mtu}, {direction.value}, confidence: {confidence:.2f}, risk: {risk.value})"
        )
        return prediction
