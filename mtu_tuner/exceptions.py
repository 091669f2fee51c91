"""
Error taxonomy for the MTU tuner.

Every public operation either returns a typed value or raises one of the
exceptions below. Each carries enough context (interface, attempted value,
underlying cause) to diagnose a failure without reading the logs.
"""

from typing import Any, Optional


class MtuTunerError(Exception):
    """Base class for all tuner errors."""

    def __init__(self, message: str, interface: Optional[str] = None,
                 value: Any = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.interface = interface
        self.value = value
        self.cause = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.interface is not None:
            parts.append(f"interface={self.interface}")
        if self.value is not None:
            parts.append(f"value={self.value}")
        if self.cause is not None:
            parts.append(f"cause={self.cause!r}")
        return " | ".join(parts)


class ValidationError(MtuTunerError):
    """Out-of-range MTU or malformed input. Raised before any side effect."""


class InvalidModelError(ValidationError):
    """A network condition model is missing a field or has an out-of-domain value."""


class NoDataError(MtuTunerError):
    """Analysis or prediction was requested without history or model."""


class LockTimeoutError(MtuTunerError):
    """The interface lock could not be acquired within the attempt limit."""


class MeasurementFailure(MtuTunerError):
    """A probe attempt produced no usable data."""


class StoreCorruptionError(MtuTunerError):
    """Persisted state is unreadable or fails validation."""


class OptimizationFailure(MtuTunerError):
    """An optimization run produced no usable candidate."""


class OptimizationCancelled(OptimizationFailure):
    """An optimization run was cancelled; the original MTU has been restored."""
