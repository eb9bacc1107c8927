"""
Fallback Controller

Watches position-source liveness, classifies signal health and, during an
outage, supplies a substitute position estimate so the decision engine
never blocks on missing data.

State machine:
- NORMAL -> OUTAGE when no good sample has been seen for outage_threshold
- OUTAGE -> NORMAL on a fresh accurate sample (auto-recovery enabled)
- OUTAGE -> RECOVERING on a fresh accurate sample (auto-recovery disabled)
- RECOVERING -> NORMAL on dismiss()
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

from common.clock import Clock, Ticker
from common.geo import midpoint

from .models import (
    FRESHNESS_WINDOW_SECONDS,
    FallbackState,
    FallbackStrategy,
    PositionEstimate,
    PositionSample,
    SignalHealth,
    StopPassRecord,
)
from .scoring import FallbackScorer

logger = logging.getLogger(__name__)


class FallbackController:
    """Owns FallbackState and the stop-pass history for one monitoring session."""

    STOP_HISTORY_LIMIT = 20
    RECENT_POSITION_SECONDS = 60.0

    def __init__(
        self,
        position_provider,
        clock: Clock,
        *,
        outage_threshold_seconds: float = 30.0,
        freshness_seconds: float = FRESHNESS_WINDOW_SECONDS,
        accuracy_bound_meters: float = 100.0,
        poll_interval_seconds: float = 5.0,
        auto_recovery: bool = True,
        preferred_strategy: Optional[FallbackStrategy] = None,
    ):
        if outage_threshold_seconds <= 0:
            raise ValueError("outage_threshold_seconds must be positive")
        if preferred_strategy == FallbackStrategy.MANUAL_CONFIRMATION:
            raise ValueError("manual confirmation cannot be a preferred strategy")

        self.position_provider = position_provider
        self.clock = clock
        self.outage_threshold_seconds = outage_threshold_seconds
        self.freshness_seconds = freshness_seconds
        self.accuracy_bound_meters = accuracy_bound_meters
        self.auto_recovery = auto_recovery
        self.preferred_strategy = preferred_strategy

        self._ticker = Ticker("fallback-poll", poll_interval_seconds, self._on_tick, clock)
        self._stop_history: Deque[StopPassRecord] = deque(maxlen=self.STOP_HISTORY_LIMIT)
        self._health = SignalHealth.NORMAL
        self._strategy: Optional[FallbackStrategy] = None
        self._outage_started_at: Optional[datetime] = None
        self._last_good: Optional[PositionSample] = None
        self._latest: Optional[PositionSample] = None
        self._manual_override = False
        self._monitoring_started_at: Optional[datetime] = None

    # ==================== Lifecycle ====================

    @property
    def monitoring(self) -> bool:
        return self._monitoring_started_at is not None

    def start(self, *, run_ticker: bool = True) -> None:
        """Begin watching the position source."""
        self._monitoring_started_at = self.clock.now()
        self._reset_outage()
        if run_ticker:
            self._ticker.start()
        logger.info("Fallback monitoring started")

    async def stop(self) -> None:
        """Cancel polling and forget per-session history."""
        await self._ticker.stop()
        self._monitoring_started_at = None
        self._stop_history.clear()
        self._manual_override = False
        self._reset_outage()
        logger.info("Fallback monitoring stopped")

    async def _on_tick(self) -> None:
        await self.poll()

    async def poll(self) -> FallbackState:
        """Pull the current sample from the position source and re-evaluate."""
        try:
            sample = await self.position_provider.get_current_position()
        except Exception as e:
            logger.warning(f"Position source failed, treating as no sample: {e}")
            sample = None
        if sample is not None:
            self.observe(sample)
        return self.evaluate()

    # ==================== Inputs ====================

    def is_good_sample(self, sample: PositionSample) -> bool:
        return (
            0 < sample.accuracy_meters < self.accuracy_bound_meters
            and sample.is_fresh(self.clock.now(), self.freshness_seconds)
        )

    def observe(self, sample: PositionSample) -> None:
        """Feed a sample pushed by the position source."""
        if self._latest is None or sample.captured_at >= self._latest.captured_at:
            self._latest = sample
        if not self.is_good_sample(sample):
            return
        if self._last_good is None or sample.captured_at >= self._last_good.captured_at:
            self._last_good = sample

        if self._health == SignalHealth.OUTAGE:
            if self.auto_recovery:
                outage_seconds = (self.clock.now() - self._outage_started_at).total_seconds()
                logger.info(f"GPS signal recovered after {outage_seconds:.0f}s outage")
                self._reset_outage()
            else:
                logger.info("GPS signal available again, awaiting manual dismissal")
                self._health = SignalHealth.RECOVERING

    def record_stop_crossing(
        self,
        stop_id: str,
        stop_name: str,
        position: Optional[PositionSample] = None,
        confidence: float = 0.5,
    ) -> StopPassRecord:
        """Append a stop pass to the bounded history."""
        record = StopPassRecord(
            stop_id=stop_id,
            stop_name=stop_name,
            observed_at=self.clock.now(),
            position=position,
            confidence=confidence,
        )
        self._stop_history.append(record)
        logger.info(f"Stop passed: {stop_name} ({len(self._stop_history)} in history)")
        if self._health != SignalHealth.NORMAL and not self._manual_override:
            self._strategy = self._select_strategy(self.clock.now())
        return record

    def confirm_manual_position(
        self,
        stop_id: str,
        stop_name: str,
        position: Optional[PositionSample] = None,
    ) -> StopPassRecord:
        """User-confirmed location; overrides automatic strategy selection until cleared."""
        record = StopPassRecord(
            stop_id=stop_id,
            stop_name=stop_name,
            observed_at=self.clock.now(),
            position=position,
            confidence=FallbackScorer.MANUAL_CONFIDENCE,
            manual=True,
        )
        self._stop_history.append(record)
        self._manual_override = True
        if self._health != SignalHealth.NORMAL:
            self._strategy = FallbackStrategy.MANUAL_CONFIRMATION
        logger.info(f"Manual position confirmed at {stop_name}")
        return record

    def clear_manual_confirmation(self) -> None:
        if not self._manual_override:
            return
        self._manual_override = False
        if self._health != SignalHealth.NORMAL:
            self._strategy = self._select_strategy(self.clock.now())
        logger.info("Manual position confirmation cleared")

    def dismiss(self) -> FallbackState:
        """Manually end an outage (required when auto-recovery is disabled)."""
        if self._health != SignalHealth.NORMAL:
            logger.info(f"Fallback dismissed while {self._health.value}")
            self._reset_outage()
        return self.snapshot()

    # ==================== Evaluation ====================

    def evaluate(self) -> FallbackState:
        """Run the outage transition check and return the current snapshot."""
        if not self.monitoring:
            return self.snapshot()

        now = self.clock.now()
        gap_start = self._gap_start()
        gap_seconds = (now - gap_start).total_seconds()
        signal_missing = gap_seconds >= self.outage_threshold_seconds

        if self._health == SignalHealth.NORMAL and signal_missing:
            self._health = SignalHealth.OUTAGE
            self._outage_started_at = gap_start
            self._strategy = self._select_strategy(now)
            label = self._strategy.value if self._strategy else "none"
            logger.warning(
                f"GPS outage detected ({gap_seconds:.0f}s without a good sample), strategy={label}"
            )
        elif self._health == SignalHealth.RECOVERING and signal_missing:
            # Signal dropped again before anyone dismissed the outage
            self._health = SignalHealth.OUTAGE
            self._strategy = self._select_strategy(now)
            logger.warning("GPS signal lost again while awaiting dismissal")

        return self.snapshot()

    def snapshot(self) -> FallbackState:
        """Immutable view of the current fallback state."""
        if self._health == SignalHealth.NORMAL:
            return FallbackState.inactive(self._last_good)

        now = self.clock.now()
        confidence = FallbackScorer.confidence_for(
            self._strategy, self._last_good_age(now), list(self._stop_history)
        )
        estimate = self._estimate(self._strategy, confidence)
        if self._strategy is None:
            reason = "No position estimate available"
        else:
            reason = f"Using {self._strategy.value.replace('_', ' ')} (confidence {confidence:.1f})"
        if self._health == SignalHealth.RECOVERING:
            reason += "; signal back, awaiting dismissal"

        return FallbackState(
            active=True,
            strategy=self._strategy,
            confidence=confidence,
            health=self._health,
            outage_started_at=self._outage_started_at,
            last_good_position=self._last_good,
            estimate=estimate,
            reason=reason,
        )

    def best_effort_position(self) -> Optional[PositionEstimate]:
        """
        The position the decision engine should use right now.

        A fresh live sample wins whenever one exists (its accuracy is
        judged by the decision engine). During an outage without one, the
        fallback estimate is returned. None means no estimate is available.
        """
        now = self.clock.now()
        if self._latest is not None and self._latest.is_fresh(now, self.freshness_seconds):
            if self._health != SignalHealth.OUTAGE:
                return PositionEstimate(
                    latitude=self._latest.latitude,
                    longitude=self._latest.longitude,
                    accuracy_meters=self._latest.accuracy_meters,
                    confidence=1.0,
                )
        if self._health == SignalHealth.NORMAL:
            return None
        return self.snapshot().estimate

    @property
    def health(self) -> SignalHealth:
        return self._health

    @property
    def stop_history(self) -> List[StopPassRecord]:
        return list(self._stop_history)

    def debug_summary(self) -> str:
        state = self.snapshot()
        lines = [
            f"health: {state.health.value}",
            f"strategy: {state.strategy.value if state.strategy else 'none'}",
            f"confidence: {state.confidence:.2f}",
            f"stop passes: {len(self._stop_history)}",
        ]
        if self._last_good is not None:
            lines.append(f"last good age: {self._last_good_age(self.clock.now()):.0f}s")
        if state.outage_started_at is not None:
            lines.append(f"outage since: {state.outage_started_at.isoformat()}")
        return "\n".join(lines)

    # ==================== Internals ====================

    def _reset_outage(self) -> None:
        self._health = SignalHealth.NORMAL
        self._strategy = None
        self._outage_started_at = None

    def _gap_start(self) -> datetime:
        if self._last_good is not None:
            if self._monitoring_started_at and self._last_good.captured_at < self._monitoring_started_at:
                return self._monitoring_started_at
            return self._last_good.captured_at
        return self._monitoring_started_at or self.clock.now()

    def _last_good_age(self, now: datetime) -> Optional[float]:
        if self._last_good is None:
            return None
        return self._last_good.age_seconds(now)

    def _select_strategy(self, now: datetime) -> Optional[FallbackStrategy]:
        if self._manual_override:
            return FallbackStrategy.MANUAL_CONFIRMATION

        history = list(self._stop_history)
        age = self._last_good_age(now)
        if self.preferred_strategy is not None:
            if FallbackScorer.confidence_for(self.preferred_strategy, age, history) > 0:
                return self.preferred_strategy
            logger.info(
                f"Preferred strategy {self.preferred_strategy.value} has no data, selecting automatically"
            )

        recent_position = age is not None and age < self.RECENT_POSITION_SECONDS
        if recent_position and history:
            return FallbackStrategy.BLENDED
        if recent_position:
            return FallbackStrategy.LAST_KNOWN_POSITION
        if history:
            return FallbackStrategy.STOP_SEQUENCE_INFERENCE
        if self._last_good is not None:
            return FallbackStrategy.LAST_KNOWN_POSITION
        return None

    def _last_known_estimate(self) -> Optional[PositionSample]:
        return self._last_good

    def _stop_estimate(self, manual_only: bool = False) -> Optional[PositionSample]:
        for record in reversed(self._stop_history):
            if manual_only and not record.manual:
                continue
            if record.position is not None:
                return record.position
        return None

    def _estimate(
        self, strategy: Optional[FallbackStrategy], confidence: float
    ) -> Optional[PositionEstimate]:
        if strategy is None:
            return None
        if strategy == FallbackStrategy.LAST_KNOWN_POSITION:
            source = self._last_known_estimate()
        elif strategy == FallbackStrategy.STOP_SEQUENCE_INFERENCE:
            source = self._stop_estimate()
        elif strategy == FallbackStrategy.MANUAL_CONFIRMATION:
            source = self._stop_estimate(manual_only=True)
        else:
            lkp = self._last_known_estimate()
            stop = self._stop_estimate()
            if lkp is not None and stop is not None:
                lat, lon = midpoint(lkp.latitude, lkp.longitude, stop.latitude, stop.longitude)
                return PositionEstimate(
                    latitude=lat,
                    longitude=lon,
                    accuracy_meters=max(lkp.accuracy_meters, stop.accuracy_meters),
                    confidence=confidence,
                    strategy=strategy,
                )
            source = lkp or stop

        if source is None:
            return None
        return PositionEstimate(
            latitude=source.latitude,
            longitude=source.longitude,
            accuracy_meters=source.accuracy_meters,
            confidence=confidence,
            strategy=strategy,
        )
