"""Delivery telemetry counters."""

from collections import Counter, deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Protocol

from common.clock import Clock, SystemClock

from .models import DeliveryAttempt, DeliveryChannel, DeliveryRecord, DeliveryResult, DeliveryStatus


class DeliveryTelemetry(Protocol):
    def record_attempt(self, attempt: DeliveryAttempt) -> None:
        ...

    def record_result(self, result: DeliveryResult, record: DeliveryRecord) -> None:
        ...


class DeliveryStatistics:
    """
    In-memory DeliveryTelemetry used by the API and tests.

    Abandoned deliveries are counted apart from the status tallies. The
    attempt history of the most recent non-successful deliveries is kept
    for inspection.
    """

    RECENT_FAILURES = 20

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.started_at: datetime = self.clock.now()
        self.channel_attempts: Counter = Counter()
        self.channel_successes: Counter = Counter()
        self.results: Counter = Counter()
        self.abandoned = 0
        self._recent_failures: Deque[Dict] = deque(maxlen=self.RECENT_FAILURES)

    def record_attempt(self, attempt: DeliveryAttempt) -> None:
        self.channel_attempts[attempt.channel] += 1
        if attempt.is_success:
            self.channel_successes[attempt.channel] += 1

    def record_result(self, result: DeliveryResult, record: DeliveryRecord) -> None:
        if result.abandoned:
            self.abandoned += 1
            return
        self.results[result.status] += 1
        if result.status != DeliveryStatus.SUCCESS:
            self._recent_failures.append(
                {
                    "notification_id": result.notification_id,
                    "status": result.status.value,
                    "failed_channels": [c.value for c in result.failed_channels],
                    "history": record.history_text(),
                    "recorded_at": self.clock.now().isoformat(),
                }
            )

    @property
    def recent_failures(self) -> List[Dict]:
        """Newest first."""
        return list(reversed(self._recent_failures))

    @property
    def total_deliveries(self) -> int:
        return sum(self.results.values())

    @property
    def delivery_rate(self) -> float:
        """Share of deliveries where the traveler got at least the quorum or a partial signal."""
        if not self.total_deliveries:
            return 0.0
        delivered = self.results[DeliveryStatus.SUCCESS] + self.results[DeliveryStatus.PARTIAL_SUCCESS]
        return delivered / self.total_deliveries

    @property
    def success_rate(self) -> float:
        if not self.total_deliveries:
            return 0.0
        return self.results[DeliveryStatus.SUCCESS] / self.total_deliveries

    def channel_success_rate(self, channel: DeliveryChannel) -> float:
        attempts = self.channel_attempts[channel]
        if not attempts:
            return 0.0
        return self.channel_successes[channel] / attempts

    @property
    def uptime_seconds(self) -> float:
        return (self.clock.now() - self.started_at).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "total_deliveries": self.total_deliveries,
            "by_status": {status.value: self.results[status] for status in DeliveryStatus},
            "abandoned": self.abandoned,
            "delivery_rate": self.delivery_rate,
            "success_rate": self.success_rate,
            "channels": {
                channel.value: {
                    "attempts": self.channel_attempts[channel],
                    "successes": self.channel_successes[channel],
                    "success_rate": self.channel_success_rate(channel),
                }
                for channel in DeliveryChannel
            },
            "recent_failures": self.recent_failures,
            "uptime_seconds": self.uptime_seconds,
        }
