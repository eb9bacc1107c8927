"""
Delivery domain models.

Channels, per-try attempts, the delivery record owned by the reliability
manager and the final result handed back to callers. Records are frozen;
the manager replaces them on every change.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Tuple


class DeliveryChannel(str, Enum):
    """Ways an alert can reach the traveler, highest priority first."""
    SYSTEM_NOTIFICATION = "system_notification"
    LOCAL_SOUND = "local_sound"
    HAPTIC = "haptic"
    VISUAL_BANNER = "visual_banner"
    BADGE = "badge"

    @property
    def priority(self) -> int:
        return _CHANNEL_PRIORITY[self]

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


_CHANNEL_PRIORITY = {
    DeliveryChannel.SYSTEM_NOTIFICATION: 100,
    DeliveryChannel.LOCAL_SOUND: 90,
    DeliveryChannel.HAPTIC: 80,
    DeliveryChannel.VISUAL_BANNER: 70,
    DeliveryChannel.BADGE: 60,
}


def parse_channels(values: Iterable[str]) -> List[DeliveryChannel]:
    """
    Parse channel names, preserving order.

    Raises:
        ValueError: On an unknown channel name
    """
    channels = []
    for value in values:
        value = value.strip()
        if not value:
            continue
        channels.append(DeliveryChannel(value.lower()))
    return channels


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNAVAILABLE = "unavailable"
    PERMISSION_DENIED = "permission_denied"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class DeliveryConfig:
    """Which channels must succeed, which may be tried, and how hard to try."""
    required_channels: FrozenSet[DeliveryChannel]
    fallback_channels: Tuple[DeliveryChannel, ...]
    max_retry_attempts: int = 5  # total tries per channel
    retry_delays_seconds: Tuple[float, ...] = (1.0, 3.0, 10.0, 30.0, 60.0)
    timeout_seconds: float = 30.0

    def __post_init__(self):
        object.__setattr__(self, "required_channels", frozenset(self.required_channels))
        object.__setattr__(self, "fallback_channels", tuple(self.fallback_channels))
        object.__setattr__(self, "retry_delays_seconds", tuple(self.retry_delays_seconds))
        if not self.required_channels and not self.fallback_channels:
            raise ValueError("at least one delivery channel is required")
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be >= 1")
        if not self.retry_delays_seconds or any(d < 0 for d in self.retry_delays_seconds):
            raise ValueError("retry_delays_seconds must be non-empty and non-negative")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @classmethod
    def default(cls) -> "DeliveryConfig":
        return cls(
            required_channels=frozenset({DeliveryChannel.SYSTEM_NOTIFICATION}),
            fallback_channels=(
                DeliveryChannel.LOCAL_SOUND,
                DeliveryChannel.HAPTIC,
                DeliveryChannel.VISUAL_BANNER,
                DeliveryChannel.BADGE,
            ),
        )

    @classmethod
    def critical(cls) -> "DeliveryConfig":
        return cls(
            required_channels=frozenset({
                DeliveryChannel.SYSTEM_NOTIFICATION,
                DeliveryChannel.LOCAL_SOUND,
                DeliveryChannel.HAPTIC,
            }),
            fallback_channels=(DeliveryChannel.VISUAL_BANNER, DeliveryChannel.BADGE),
        )

    def ordered_channels(self) -> List[DeliveryChannel]:
        """Required and fallback channels, deduplicated, by descending priority."""
        channels = set(self.required_channels) | set(self.fallback_channels)
        return sorted(channels, key=lambda c: c.priority, reverse=True)

    def retry_delay(self, retry_number: int) -> float:
        """Delay before the n-th retry (1-based); the last delay repeats."""
        index = min(max(retry_number, 1) - 1, len(self.retry_delays_seconds) - 1)
        return self.retry_delays_seconds[index]

    def quorum_met(self, successful: Iterable[DeliveryChannel]) -> bool:
        successful = set(successful)
        if not self.required_channels:
            return bool(successful)
        return self.required_channels.issubset(successful)


@dataclass(frozen=True)
class DeliveryAttempt:
    """One try against one channel."""
    channel: DeliveryChannel
    outcome: AttemptOutcome
    duration_ms: float
    retry_index: int
    attempted_at: datetime
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS

    def describe(self) -> str:
        text = f"{self.channel.value}#{self.retry_index} {self.outcome.value} ({self.duration_ms:.0f}ms)"
        if self.reason:
            text += f": {self.reason}"
        return text

    def to_mongo_doc(self) -> dict:
        return {
            "channel": self.channel.value,
            "outcome": self.outcome.value,
            "duration_ms": self.duration_ms,
            "retry_index": self.retry_index,
            "attempted_at": self.attempted_at,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DeliveryResult:
    """Terminal outcome of a delivery."""
    notification_id: str
    status: DeliveryStatus
    successful_channels: Tuple[DeliveryChannel, ...] = ()
    failed_channels: Tuple[DeliveryChannel, ...] = ()
    total_attempts: int = 0
    abandoned: bool = False
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status in (DeliveryStatus.SUCCESS, DeliveryStatus.PARTIAL_SUCCESS)

    @property
    def needs_last_resort_indicator(self) -> bool:
        """True when nothing reached the traveler and the UI must show a fallback cue."""
        return not self.successful_channels

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "status": self.status.value,
            "successful_channels": [c.value for c in self.successful_channels],
            "failed_channels": [c.value for c in self.failed_channels],
            "total_attempts": self.total_attempts,
            "abandoned": self.abandoned,
            "error": self.error,
            "needs_last_resort_indicator": self.needs_last_resort_indicator,
        }


@dataclass(frozen=True)
class DeliveryRecord:
    """Everything known about one notification id's delivery."""
    notification_id: str
    created_at: datetime
    required_channels: FrozenSet[DeliveryChannel]
    fallback_channels: Tuple[DeliveryChannel, ...]
    attempts: Tuple[DeliveryAttempt, ...] = ()
    completed: bool = False
    abandoned: bool = False
    final_result: Optional[DeliveryResult] = None
    title: str = ""
    body: str = ""

    @property
    def successful_channels(self) -> List[DeliveryChannel]:
        seen = []
        for attempt in self.attempts:
            if attempt.is_success and attempt.channel not in seen:
                seen.append(attempt.channel)
        return seen

    @property
    def failed_channels(self) -> List[DeliveryChannel]:
        succeeded = set(self.successful_channels)
        seen = []
        for attempt in self.attempts:
            if attempt.channel not in succeeded and attempt.channel not in seen:
                seen.append(attempt.channel)
        return seen

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    @property
    def delivery_rate(self) -> float:
        """Fraction of required channels that succeeded (1.0 with none required and any success)."""
        succeeded = set(self.successful_channels)
        if not self.required_channels:
            return 1.0 if succeeded else 0.0
        return len(self.required_channels & succeeded) / len(self.required_channels)

    def attempts_for(self, channel: DeliveryChannel) -> List[DeliveryAttempt]:
        return [a for a in self.attempts if a.channel == channel]

    def with_attempt(self, attempt: DeliveryAttempt) -> "DeliveryRecord":
        return replace(self, attempts=self.attempts + (attempt,))

    def history_text(self) -> str:
        return "; ".join(a.describe() for a in self.attempts) or "no attempts"

    def to_mongo_doc(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "created_at": self.created_at,
            "required_channels": sorted(c.value for c in self.required_channels),
            "fallback_channels": [c.value for c in self.fallback_channels],
            "attempts": [a.to_mongo_doc() for a in self.attempts],
            "completed": self.completed,
            "abandoned": self.abandoned,
            "final_result": self.final_result.to_dict() if self.final_result else None,
            "title": self.title,
            "body": self.body,
        }

    def to_dict(self) -> dict:
        doc = self.to_mongo_doc()
        doc["created_at"] = self.created_at.isoformat()
        for attempt in doc["attempts"]:
            attempt["attempted_at"] = attempt["attempted_at"].isoformat()
        doc["delivery_rate"] = self.delivery_rate
        return doc
