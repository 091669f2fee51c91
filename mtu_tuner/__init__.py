"""
WireGuard MTU Tuner - Adaptive MTU Optimization

This package implements the adaptive MTU tuning engine: a lock-protected
probing harness that measures candidate MTU values, and a learning loop that
turns measurement history into confidence-weighted MTU adaptations.
"""

__version__ = "0.1.0"
