"""
Configuration for the MTU tuner.

A single TunerConfig instance is built once (defaults, optionally merged with
a YAML file) and handed explicitly to every component.
"""

import logging
import math
import os
import sys
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

import yaml

from .exceptions import ValidationError
from .models import MTU_CEILING, MTU_FLOOR

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", value=value)
    return value


def _require_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number", value=value)
    return value


@dataclass
class TunerConfig:
    """Explicit configuration shared by the probing harness and the learning loop."""

    interface: str = ""  # Auto-detect
    server: str = "10.66.66.1"

    # Probing range
    min_mtu: int = MTU_FLOOR
    max_mtu: int = MTU_CEILING
    step: int = 10
    retry_count: int = 3
    jobs: int = os.cpu_count() or 1

    # Probe timing (seconds)
    settle_delay: float = 2.0
    reachability_timeout: float = 5.0
    ping_count: int = 4
    ping_timeout: float = 10.0
    throughput_duration: int = 5
    throughput_timeout: float = 15.0

    # Interface lock
    lock_dir: str = "/run/wg-mtu-opt"
    lock_attempts: int = 30
    lock_backoff: float = 1.0

    # Learning
    state_dir: str = "/var/lib/wg-mtu-opt/learning"
    evaluation_interval: float = 300.0
    adaptation_threshold: int = 3
    confidence_threshold: float = 0.7
    range_delta: int = 20
    analysis_window: Optional[int] = None

    # Ambient
    prometheus_port: Optional[int] = None
    log_file: Optional[str] = None
    verbose: bool = False

    def validate(self) -> "TunerConfig":
        """
        Check every value against its type and domain.

        Returns:
            self, so calls can be chained

        Raises:
            ValidationError: on the first invalid value
        """
        for name in ("interface", "server", "lock_dir", "state_dir"):
            if not isinstance(getattr(self, name), str):
                raise ValidationError(f"{name} must be a string", value=getattr(self, name))
        for name in ("min_mtu", "max_mtu", "range_delta"):
            _require_int(name, getattr(self, name))
        for name in ("step", "retry_count", "jobs", "ping_count", "throughput_duration",
                     "lock_attempts", "adaptation_threshold"):
            value = _require_int(name, getattr(self, name))
            if value < 1:
                raise ValidationError(f"{name} must be a positive integer", value=value)
        for name in ("settle_delay", "reachability_timeout", "ping_timeout",
                     "throughput_timeout", "lock_backoff", "evaluation_interval"):
            if _require_number(name, getattr(self, name)) < 0:
                raise ValidationError(f"{name} must not be negative", value=getattr(self, name))

        if not MTU_FLOOR <= self.min_mtu <= MTU_CEILING:
            raise ValidationError(
                f"min_mtu must be within [{MTU_FLOOR}, {MTU_CEILING}]", value=self.min_mtu
            )
        if not MTU_FLOOR <= self.max_mtu <= MTU_CEILING:
            raise ValidationError(
                f"max_mtu must be within [{MTU_FLOOR}, {MTU_CEILING}]", value=self.max_mtu
            )
        if self.min_mtu >= self.max_mtu:
            raise ValidationError(
                "min_mtu must be less than max_mtu", value=(self.min_mtu, self.max_mtu)
            )
        if not 0.0 <= _require_number("confidence_threshold", self.confidence_threshold) <= 1.0:
            raise ValidationError(
                "confidence_threshold must be within [0, 1]", value=self.confidence_threshold
            )
        if self.range_delta < 0:
            raise ValidationError("range_delta must not be negative", value=self.range_delta)
        if self.analysis_window is not None and _require_int("analysis_window", self.analysis_window) < 1:
            raise ValidationError("analysis_window must be positive", value=self.analysis_window)
        if self.prometheus_port is not None:
            port = _require_int("prometheus_port", self.prometheus_port)
            if not 0 < port < 65536:
                raise ValidationError("prometheus_port must be within [1, 65535]", value=port)
        if self.log_file is not None and not isinstance(self.log_file, str):
            raise ValidationError("log_file must be a string", value=self.log_file)
        if not isinstance(self.verbose, bool):
            raise ValidationError("verbose must be a boolean", value=self.verbose)
        return self

    def with_overrides(self, **overrides: Any) -> "TunerConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(config_path: Optional[str] = None) -> TunerConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the configuration file. If None, use default config.

    Returns:
        TunerConfig with file values merged over the defaults.
    """
    config = TunerConfig()
    if config_path is None:
        return config

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("top-level YAML value must be a mapping")
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.error(f"Failed to load configuration from {config_path}: {e}")
        logger.info("Using default configuration")
        return config

    known = {f.name for f in fields(TunerConfig)}
    values = {}
    for key, value in data.items():
        if key in known:
            values[key] = value
        else:
            logger.warning(f"Ignoring unknown configuration key: {key}")
    return replace(config, **values)


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure application-wide logging.

    Args:
        verbose: Log at DEBUG instead of INFO
        log_file: Optional file that receives the same records as stderr
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    logger.debug(f"Logging configured (verbose={verbose}, log_file={log_file})")
