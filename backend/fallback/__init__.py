"""
Fallback package - GPS outage detection and substitute positioning

Submodules:
- models: PositionSample, StopPassRecord, FallbackState value objects
- scoring: Pure confidence tables per fallback strategy
- controller: FallbackController state machine
"""

from .models import (
    FallbackState,
    FallbackStrategy,
    PositionEstimate,
    PositionSample,
    SignalHealth,
    StopPassRecord,
)
from .scoring import FallbackScorer
from .controller import FallbackController

__all__ = [
    "FallbackState",
    "FallbackStrategy",
    "PositionEstimate",
    "PositionSample",
    "SignalHealth",
    "StopPassRecord",
    "FallbackScorer",
    "FallbackController",
]
