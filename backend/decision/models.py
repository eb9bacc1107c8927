"""
Decision domain models.

Targets, schedule inputs and the immutable Decision produced once per
evaluation tick.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4


class OperatingMode(str, Enum):
    """How the engine combines schedule and position evidence."""
    TIME_ONLY = "time_only"
    POSITION_ONLY = "position_only"
    HYBRID = "hybrid"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class TransitLeg:
    """The leg of the journey that ends at the target stop."""
    leg_id: str
    railway_id: Optional[str] = None
    train_number: Optional[str] = None
    scheduled_arrival: Optional[datetime] = None


@dataclass(frozen=True)
class ArrivalTarget:
    """
    The stop being monitored.

    approach_event_id identifies one approach to the stop; a new id is
    minted every time the monitored target is set.
    """
    target_id: str
    station_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    leg: Optional[TransitLeg] = None
    approach_event_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def idempotence_key(self) -> tuple:
        return (self.target_id, self.approach_event_id)


@dataclass(frozen=True)
class ScheduledArrival:
    """Scheduled arrival for a leg plus the currently reported delay."""
    arrival_time: datetime
    delay_minutes: int = 0

    @property
    def expected_arrival(self) -> datetime:
        return self.arrival_time + timedelta(minutes=self.delay_minutes)


@dataclass(frozen=True)
class ScheduleDeviation:
    """Difference between the schedule-based and position-based ETAs."""
    expected_arrival: datetime
    estimated_arrival: datetime
    deviation_seconds: float  # positive: running late versus the schedule
    confidence: float
    threshold_seconds: float = 180.0

    @property
    def is_delayed(self) -> bool:
        return self.deviation_seconds > 0

    @property
    def significant(self) -> bool:
        return abs(self.deviation_seconds) >= self.threshold_seconds

    @property
    def display_text(self) -> str:
        minutes = int(abs(self.deviation_seconds) // 60)
        if minutes == 0:
            return "on time"
        if self.is_delayed:
            return f"{minutes} min late"
        return f"{minutes} min early"

    def to_dict(self) -> dict:
        return {
            "expected_arrival": self.expected_arrival.isoformat(),
            "estimated_arrival": self.estimated_arrival.isoformat(),
            "deviation_seconds": self.deviation_seconds,
            "confidence": self.confidence,
            "significant": self.significant,
            "display_text": self.display_text,
        }


@dataclass(frozen=True)
class Decision:
    """One notify/no-notify verdict. Immutable once produced."""
    should_notify: bool
    mode: OperatingMode
    confidence: float
    estimated_time_to_arrival: Optional[float]  # seconds
    distance_to_target: Optional[float]  # meters
    reason: str
    produced_at: datetime
    target_id: Optional[str] = None
    approach_event_id: Optional[str] = None
    deviation: Optional[ScheduleDeviation] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence {self.confidence} outside [0, 1]")

    def to_mongo_doc(self) -> dict:
        return {
            "should_notify": self.should_notify,
            "mode": self.mode.value,
            "confidence": self.confidence,
            "estimated_time_to_arrival": self.estimated_time_to_arrival,
            "distance_to_target": self.distance_to_target,
            "reason": self.reason,
            "produced_at": self.produced_at,
            "target_id": self.target_id,
            "approach_event_id": self.approach_event_id,
            "deviation": self.deviation.to_dict() if self.deviation else None,
        }

    def to_dict(self) -> dict:
        doc = self.to_mongo_doc()
        doc["produced_at"] = self.produced_at.isoformat()
        return doc
