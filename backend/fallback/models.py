"""
Fallback domain models.

Value objects exchanged between the position source, the fallback
controller and the decision engine. All of them are immutable; the
controller publishes new snapshots instead of mutating old ones.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

FRESHNESS_WINDOW_SECONDS = 15.0


class FallbackStrategy(str, Enum):
    """Substitute position-estimation methods used during an outage."""
    LAST_KNOWN_POSITION = "last_known_position"
    STOP_SEQUENCE_INFERENCE = "stop_sequence_inference"
    MANUAL_CONFIRMATION = "manual_confirmation"
    BLENDED = "blended"


class SignalHealth(str, Enum):
    NORMAL = "normal"
    OUTAGE = "outage"
    RECOVERING = "recovering"


@dataclass(frozen=True)
class PositionSample:
    """A timestamped position fix with its accuracy radius."""
    latitude: float
    longitude: float
    accuracy_meters: float
    captured_at: datetime

    def __post_init__(self):
        if self.accuracy_meters < 0:
            raise ValueError("accuracy_meters must be >= 0")

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.captured_at).total_seconds())

    def is_fresh(self, now: datetime, window_seconds: float = FRESHNESS_WINDOW_SECONDS) -> bool:
        return self.age_seconds(now) < window_seconds

    def to_mongo_doc(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StopPassRecord:
    """A reported crossing of a stop along the current leg."""
    stop_id: str
    stop_name: str
    observed_at: datetime
    position: Optional[PositionSample] = None
    confidence: float = 0.5
    manual: bool = False

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")


@dataclass(frozen=True)
class PositionEstimate:
    """
    Best-effort position handed to the decision engine.

    strategy is None for a live sample; otherwise it names the fallback
    strategy that produced the estimate.
    """
    latitude: float
    longitude: float
    accuracy_meters: float
    confidence: float
    strategy: Optional[FallbackStrategy] = None

    @property
    def is_fallback(self) -> bool:
        return self.strategy is not None


@dataclass(frozen=True)
class FallbackState:
    """Snapshot of the fallback controller's state."""
    active: bool
    strategy: Optional[FallbackStrategy]
    confidence: float
    health: SignalHealth = SignalHealth.NORMAL
    outage_started_at: Optional[datetime] = None
    last_good_position: Optional[PositionSample] = None
    estimate: Optional[PositionEstimate] = None
    reason: str = ""

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        if not self.active and self.outage_started_at is not None:
            raise ValueError("inactive fallback state cannot carry outage_started_at")

    @classmethod
    def inactive(cls, last_good_position: Optional[PositionSample] = None) -> "FallbackState":
        return cls(
            active=False,
            strategy=None,
            confidence=0.0,
            health=SignalHealth.NORMAL,
            last_good_position=last_good_position,
            reason="GPS signal normal",
        )

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "strategy": self.strategy.value if self.strategy else None,
            "confidence": self.confidence,
            "health": self.health.value,
            "outage_started_at": self.outage_started_at.isoformat() if self.outage_started_at else None,
            "last_good_position": (
                {
                    "latitude": self.last_good_position.latitude,
                    "longitude": self.last_good_position.longitude,
                    "accuracy_meters": self.last_good_position.accuracy_meters,
                    "captured_at": self.last_good_position.captured_at.isoformat(),
                }
                if self.last_good_position
                else None
            ),
            "estimate": (
                {
                    "latitude": self.estimate.latitude,
                    "longitude": self.estimate.longitude,
                    "accuracy_meters": self.estimate.accuracy_meters,
                    "confidence": self.estimate.confidence,
                }
                if self.estimate
                else None
            ),
            "reason": self.reason,
        }
