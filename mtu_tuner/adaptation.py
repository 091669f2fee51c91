"""
Adaptation Decision Engine

Turns a fresh prediction into the next MTU for an interface. The engine never
touches the live interface; applying the returned value is up to the caller.
"""

import logging

from prometheus_client import Counter

from .ml_engine import Predictor
from .models import MTU_CEILING, MTU_FLOOR, RiskLevel, clamp_mtu, validate_live_mtu

logger = logging.getLogger(__name__)

# Prometheus metrics
ADAPTATION_DECISIONS = Counter(
    'wg_mtu_adaptation_decisions_total', 'Adaptation decisions by outcome', ['interface', 'outcome']
)


class AdaptationEngine:
    """Confidence-gated MTU adaptation."""

    def __init__(self, predictor: Predictor, confidence_threshold: float = 0.7):
        """
        Initialize the engine.

        Args:
            predictor: Source of fresh predictions
            confidence_threshold: Confidence that must be exceeded before moving
        """
        self.predictor = predictor
        self.confidence_threshold = confidence_threshold

    def adapt(self, interface: str, current_mtu: int) -> int:
        """
        Decide the next MTU for the interface.

        Args:
            interface: Interface name
            current_mtu: MTU currently set on the interface

        Returns:
            The new MTU, always within the live bounds (possibly unchanged)

        Raises:
            ValidationError: if current_mtu is outside the live bounds
            NoDataError: if no model exists for the interface
        """
        current_mtu = validate_live_mtu(current_mtu, interface)
        prediction = self.predictor.predict(interface, current_mtu)
        optimal = prediction.optimal_mtu_range
        confidence = prediction.confidence_score
        risk = prediction.recommendation.risk_level

        if optimal.contains(current_mtu):
            logger.info(f"MTU {current_mtu} on {interface} is within the optimal range "
                        f"[{optimal.min}, {optimal.max}]")
            outcome = "in_range"
            new_mtu = current_mtu
        elif confidence > self.confidence_threshold and risk != RiskLevel.HIGH:
            new_mtu = optimal.min if current_mtu < optimal.min else optimal.max
            logger.info(f"Moving {interface} MTU {current_mtu} -> {new_mtu} "
                        f"(confidence {confidence:.2f}, risk {risk.value})")
            outcome = "move"
        else:
            logger.info(f"Keeping {interface} MTU {current_mtu}: confidence {confidence:.2f} "
                        f"at or below {self.confidence_threshold} or risk {risk.value}")
            outcome = "insufficient_confidence"
            new_mtu = current_mtu

        clamped = clamp_mtu(new_mtu)
        if clamped != new_mtu:
            logger.warning(f"Clamped proposed MTU {new_mtu} to {clamped} "
                           f"(bounds [{MTU_FLOOR}, {MTU_CEILING}])")
        ADAPTATION_DECISIONS.labels(interface=interface, outcome=outcome).inc()
        return clamped
