"""
Decision package - arrival mode selection and notify verdicts

Submodules:
- models: ArrivalTarget, ScheduledArrival, Decision value objects
- engine: ModeSelector, ArrivalDecider, DecisionEngine
- monitor: MonitoringSession tying sources, engine and delivery together
"""

from .models import (
    ArrivalTarget,
    Decision,
    OperatingMode,
    ScheduledArrival,
    ScheduleDeviation,
    TransitLeg,
)
from .engine import ArrivalDecider, DecisionEngine, ModeSelector

__all__ = [
    "ArrivalTarget",
    "Decision",
    "OperatingMode",
    "ScheduledArrival",
    "ScheduleDeviation",
    "TransitLeg",
    "ArrivalDecider",
    "DecisionEngine",
    "ModeSelector",
]
