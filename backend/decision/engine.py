"""
Arrival Decision Engine - Mode selection and evidence fusion

Produces exactly one Decision per evaluation tick from:
- the scheduled arrival for the current leg (time-based evidence)
- the best-effort position from the fallback controller (position evidence)

The per-mode rules live in ArrivalDecider as pure static functions; the
DecisionEngine adds the little state they need (approach history for speed
estimation and the notified-approach set for idempotence).
"""

import logging
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Deque, Optional, Set, Tuple

from common.geo import haversine_m
from fallback.models import PositionEstimate

from .models import (
    ArrivalTarget,
    Decision,
    OperatingMode,
    ScheduledArrival,
    ScheduleDeviation,
)

logger = logging.getLogger(__name__)


class ModeSelector:
    """Pure mode selection."""

    @staticmethod
    def select(
        preferred: OperatingMode,
        accuracy_meters: Optional[float],
        low_accuracy_threshold_meters: float,
    ) -> OperatingMode:
        """
        Choose the operating mode for this tick.

        Order (first match wins):
        1. A pinned TimeOnly preference never needs GPS and is honored.
        2. Missing or poor accuracy -> Degraded.
        3. Hybrid preference -> Hybrid.
        4. Otherwise the pinned PositionOnly preference.

        Raises:
            ValueError: If Degraded is passed as the preference
        """
        if preferred == OperatingMode.DEGRADED:
            raise ValueError("Degraded cannot be selected as a preference")
        if preferred == OperatingMode.TIME_ONLY:
            return OperatingMode.TIME_ONLY
        if accuracy_meters is None or accuracy_meters > low_accuracy_threshold_meters:
            return OperatingMode.DEGRADED
        if preferred == OperatingMode.HYBRID:
            return OperatingMode.HYBRID
        return preferred


class ArrivalDecider:
    """Pure per-mode decision rules."""

    TIME_CONFIDENCE = 0.8
    FUSION_CONFIDENCE_FLOOR = 0.7
    DEGRADED_TIME_WEIGHT = 0.8
    DEGRADED_POSITION_WEIGHT = 0.2
    DEGRADED_TIME_ONLY_FACTOR = 0.7
    DEGRADED_POSITION_ACCURACY_M = 100.0
    MIN_CONFIDENCE_DISTANCE_M = 100.0

    # accuracy/distance ratio upper bounds -> confidence
    CONFIDENCE_BANDS = ((0.1, 1.0), (0.3, 0.8), (0.5, 0.6), (1.0, 0.4))
    CONFIDENCE_FLOOR = 0.2

    @staticmethod
    def time_based(
        scheduled: Optional[ScheduledArrival],
        now: datetime,
        lead_time_seconds: float,
    ) -> Decision:
        """Notify when the delay-adjusted arrival is within the lead time and still ahead."""
        if scheduled is None:
            return Decision(
                should_notify=False,
                mode=OperatingMode.TIME_ONLY,
                confidence=0.0,
                estimated_time_to_arrival=None,
                distance_to_target=None,
                reason="No scheduled arrival time",
                produced_at=now,
            )

        eta = (scheduled.expected_arrival - now).total_seconds()
        should_notify = 0 < eta <= lead_time_seconds
        if should_notify:
            reason = "Scheduled arrival is within the alert lead time"
        elif eta <= 0:
            reason = "Scheduled arrival time has passed"
        else:
            reason = "Not yet time to alert"
        if scheduled.delay_minutes:
            reason += f" (delay {scheduled.delay_minutes} min)"

        return Decision(
            should_notify=should_notify,
            mode=OperatingMode.TIME_ONLY,
            confidence=ArrivalDecider.TIME_CONFIDENCE,
            estimated_time_to_arrival=eta,
            distance_to_target=None,
            reason=reason,
            produced_at=now,
        )

    @staticmethod
    def position_confidence(accuracy_meters: float, distance_meters: float) -> float:
        """
        Confidence of a live fix relative to the remaining distance.

        Penalizes fixes whose error radius approaches the distance left.
        """
        ratio = max(0.0, accuracy_meters) / max(distance_meters, ArrivalDecider.MIN_CONFIDENCE_DISTANCE_M)
        for limit, confidence in ArrivalDecider.CONFIDENCE_BANDS:
            if ratio < limit:
                return confidence
        return ArrivalDecider.CONFIDENCE_FLOOR

    @staticmethod
    def position_based(
        estimate: Optional[PositionEstimate],
        target: Optional[ArrivalTarget],
        now: datetime,
        notify_radius_meters: float,
        speed_mps: float = 0.0,
    ) -> Decision:
        """Notify when the position estimate is within the notify radius of the target."""
        if estimate is None or target is None or not target.has_coordinates:
            reason = "Position unavailable" if estimate is None else "Target coordinates unknown"
            return Decision(
                should_notify=False,
                mode=OperatingMode.POSITION_ONLY,
                confidence=0.0,
                estimated_time_to_arrival=None,
                distance_to_target=None,
                reason=reason,
                produced_at=now,
            )

        distance = haversine_m(estimate.latitude, estimate.longitude, target.latitude, target.longitude)
        eta = distance / speed_mps if speed_mps > 0 else None
        should_notify = distance <= notify_radius_meters

        if estimate.is_fallback:
            confidence = estimate.confidence
        else:
            confidence = ArrivalDecider.position_confidence(estimate.accuracy_meters, distance)

        return Decision(
            should_notify=should_notify,
            mode=OperatingMode.POSITION_ONLY,
            confidence=confidence,
            estimated_time_to_arrival=eta,
            distance_to_target=distance,
            reason="Approaching the target stop" if should_notify else "Still outside the alert radius",
            produced_at=now,
        )

    @staticmethod
    def hybrid(
        time_decision: Decision,
        position_decision: Decision,
        now: datetime,
        deviation_threshold_seconds: float = 180.0,
    ) -> Decision:
        """
        Fuse the time and position verdicts.

        Both confident (> 0.7): either trigger fires, confidence is the max.
        Otherwise the more confident verdict wins outright.
        """
        deviation = None
        time_eta = time_decision.estimated_time_to_arrival
        position_eta = position_decision.estimated_time_to_arrival
        if time_eta is not None and position_eta is not None:
            deviation = ScheduleDeviation(
                expected_arrival=now + timedelta(seconds=time_eta),
                estimated_arrival=now + timedelta(seconds=position_eta),
                deviation_seconds=time_eta - position_eta,
                confidence=(time_decision.confidence + position_decision.confidence) / 2.0,
                threshold_seconds=deviation_threshold_seconds,
            )

        floor = ArrivalDecider.FUSION_CONFIDENCE_FLOOR
        if time_decision.confidence > floor and position_decision.confidence > floor:
            should_notify = time_decision.should_notify or position_decision.should_notify
            confidence = max(time_decision.confidence, position_decision.confidence)
            reason = "Schedule and position agree on confidence; either trigger fires"
        elif position_decision.confidence > time_decision.confidence:
            should_notify = position_decision.should_notify
            confidence = position_decision.confidence
            reason = f"Position preferred: {position_decision.reason}"
        else:
            should_notify = time_decision.should_notify
            confidence = time_decision.confidence
            reason = f"Schedule preferred: {time_decision.reason}"

        if deviation is not None and deviation.significant:
            reason += f" ({deviation.display_text})"

        return Decision(
            should_notify=should_notify,
            mode=OperatingMode.HYBRID,
            confidence=confidence,
            estimated_time_to_arrival=position_eta if position_eta is not None else time_eta,
            distance_to_target=position_decision.distance_to_target,
            reason=reason,
            produced_at=now,
            deviation=deviation,
        )

    @staticmethod
    def degraded(
        time_decision: Decision,
        position_decision: Optional[Decision],
        position_accuracy_meters: Optional[float],
        now: datetime,
    ) -> Decision:
        """
        Schedule-first verdict for poor or missing GPS.

        A usable position (accuracy < 100m) contributes 20% of the
        confidence but never changes should_notify.
        """
        usable = (
            position_decision is not None
            and position_decision.distance_to_target is not None
            and position_accuracy_meters is not None
            and position_accuracy_meters < ArrivalDecider.DEGRADED_POSITION_ACCURACY_M
        )
        if usable:
            confidence = (
                ArrivalDecider.DEGRADED_TIME_WEIGHT * time_decision.confidence
                + ArrivalDecider.DEGRADED_POSITION_WEIGHT * position_decision.confidence
            )
            return Decision(
                should_notify=time_decision.should_notify,
                mode=OperatingMode.DEGRADED,
                confidence=min(1.0, confidence),
                estimated_time_to_arrival=time_decision.estimated_time_to_arrival,
                distance_to_target=position_decision.distance_to_target,
                reason=f"GPS degraded, schedule preferred: {time_decision.reason}",
                produced_at=now,
            )

        return Decision(
            should_notify=time_decision.should_notify,
            mode=OperatingMode.DEGRADED,
            confidence=time_decision.confidence * ArrivalDecider.DEGRADED_TIME_ONLY_FACTOR,
            estimated_time_to_arrival=time_decision.estimated_time_to_arrival,
            distance_to_target=None,
            reason=f"GPS unavailable, schedule only: {time_decision.reason}",
            produced_at=now,
        )


class DecisionEngine:
    """Produces one Decision per tick and suppresses repeat triggers per approach."""

    APPROACH_HISTORY_LIMIT = 10

    def __init__(
        self,
        *,
        lead_time_seconds: float = 300.0,
        notify_radius_meters: float = 500.0,
        low_accuracy_threshold_meters: float = 50.0,
        deviation_threshold_seconds: float = 180.0,
        preferred_mode: OperatingMode = OperatingMode.HYBRID,
    ):
        if preferred_mode == OperatingMode.DEGRADED:
            raise ValueError("Degraded cannot be selected as a preference")
        self.lead_time_seconds = lead_time_seconds
        self.notify_radius_meters = notify_radius_meters
        self.low_accuracy_threshold_meters = low_accuracy_threshold_meters
        self.deviation_threshold_seconds = deviation_threshold_seconds
        self.preferred_mode = preferred_mode

        self._approach_history: Deque[Tuple[datetime, float]] = deque(maxlen=self.APPROACH_HISTORY_LIMIT)
        self._notified: Set[tuple] = set()

    def evaluate(
        self,
        target: Optional[ArrivalTarget],
        scheduled: Optional[ScheduledArrival],
        estimate: Optional[PositionEstimate],
        now: datetime,
    ) -> Decision:
        """Compute the Decision for this tick."""
        # Only a live fix can qualify for a GPS-based mode
        live_accuracy = estimate.accuracy_meters if estimate is not None and not estimate.is_fallback else None
        mode = ModeSelector.select(self.preferred_mode, live_accuracy, self.low_accuracy_threshold_meters)

        time_decision = ArrivalDecider.time_based(scheduled, now, self.lead_time_seconds)
        if mode == OperatingMode.TIME_ONLY:
            decision = time_decision
        else:
            position_decision = self._position_decision(estimate, target, now)
            if mode == OperatingMode.POSITION_ONLY:
                decision = position_decision
            elif mode == OperatingMode.HYBRID:
                decision = ArrivalDecider.hybrid(
                    time_decision, position_decision, now, self.deviation_threshold_seconds
                )
            else:
                decision = ArrivalDecider.degraded(
                    time_decision,
                    position_decision if estimate is not None else None,
                    estimate.accuracy_meters if estimate is not None else None,
                    now,
                )

        if target is not None:
            decision = replace(
                decision, target_id=target.target_id, approach_event_id=target.approach_event_id
            )
            if decision.should_notify and target.idempotence_key in self._notified:
                decision = replace(
                    decision, should_notify=False, reason=f"Already notified for this approach ({decision.reason})"
                )

        logger.debug(
            f"Decision mode={decision.mode.value} notify={decision.should_notify} "
            f"confidence={decision.confidence:.2f}: {decision.reason}"
        )
        return decision

    def mark_notified(self, target: ArrivalTarget) -> None:
        """Record that a notify decision for this approach was handed to delivery."""
        self._notified.add(target.idempotence_key)

    def was_notified(self, target: ArrivalTarget) -> bool:
        return target.idempotence_key in self._notified

    def reset_target(self) -> None:
        """Forget approach history when the monitored target changes."""
        self._approach_history.clear()

    def estimate_speed(self) -> float:
        """Closing speed in m/s from the last two approach records; 0 if unknown or not closing."""
        if len(self._approach_history) < 2:
            return 0.0
        (t1, d1), (t2, d2) = list(self._approach_history)[-2:]
        elapsed = (t2 - t1).total_seconds()
        if elapsed <= 0:
            return 0.0
        return max(0.0, (d1 - d2) / elapsed)

    def _position_decision(
        self,
        estimate: Optional[PositionEstimate],
        target: Optional[ArrivalTarget],
        now: datetime,
    ) -> Decision:
        if estimate is not None and target is not None and target.has_coordinates:
            distance = haversine_m(estimate.latitude, estimate.longitude, target.latitude, target.longitude)
            self._approach_history.append((now, distance))
        return ArrivalDecider.position_based(
            estimate, target, now, self.notify_radius_meters, self.estimate_speed()
        )
