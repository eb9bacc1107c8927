"""
Monitoring Session

Explicitly constructed service that owns one monitored target:

- runs the decision ticker (default every 10s) and the fallback controller
- emits every Decision to subscribers via on_decision()
- hands notify decisions to the delivery reliability manager as
  independent tasks so slow deliveries never block the next tick
- on stop(), cancels both tickers and abandons in-flight deliveries
"""

import asyncio
import logging
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, List, Optional, Set

from common.clock import Clock, Ticker
from common.config import AlarmSettings
from fallback.controller import FallbackController
from notifications.messages import MessageGenerator, compose_arrival_message
from notifications.models import DeliveryResult
from notifications.payloads import ArrivalPayload
from notifications.reliability import DeliveryInProgressError, DeliveryReliabilityManager

from .engine import DecisionEngine
from .models import ArrivalTarget, Decision, ScheduledArrival

logger = logging.getLogger(__name__)

DecisionListener = Callable[[Decision], None]


def arrival_notification_id(target: ArrivalTarget) -> str:
    return f"arrival_{target.target_id}_{target.approach_event_id}"


class MonitoringSession:
    """Single writer of the monitored target; drives one decision per tick."""

    RECENT_DECISIONS = 50

    def __init__(
        self,
        settings: AlarmSettings,
        clock: Clock,
        position_provider,
        schedule_provider,
        delivery: DeliveryReliabilityManager,
        message_generator: Optional[MessageGenerator] = None,
        history=None,
    ):
        self.settings = settings
        self.clock = clock
        self.schedule_provider = schedule_provider
        self.delivery = delivery
        self.message_generator = message_generator
        self.history = history

        self.engine = DecisionEngine(
            lead_time_seconds=settings.lead_time_seconds,
            notify_radius_meters=settings.notify_radius_meters,
            low_accuracy_threshold_meters=settings.low_accuracy_threshold_meters,
            deviation_threshold_seconds=settings.deviation_threshold_seconds,
            preferred_mode=settings.preferred_mode,
        )
        self.fallback = FallbackController(
            position_provider,
            clock,
            outage_threshold_seconds=settings.outage_threshold_seconds,
            freshness_seconds=settings.position_freshness_seconds,
            accuracy_bound_meters=settings.fallback_accuracy_bound_meters,
            poll_interval_seconds=settings.fallback_poll_interval_seconds,
            auto_recovery=settings.auto_recovery_enabled,
            preferred_strategy=settings.preferred_fallback_strategy,
        )

        self._ticker = Ticker("decision-tick", settings.decision_interval_seconds, self._on_tick, clock)
        self._tick_lock = asyncio.Lock()
        self._target: Optional[ArrivalTarget] = None
        self._listeners: List[DecisionListener] = []
        self._recent: Deque[Decision] = deque(maxlen=self.RECENT_DECISIONS)
        self._delivery_tasks: Set[asyncio.Task] = set()
        self.results: Deque[DeliveryResult] = deque(maxlen=self.RECENT_DECISIONS)
        self.last_resort_indicator = False
        self.running = False

    # ==================== Target ====================

    @property
    def target(self) -> Optional[ArrivalTarget]:
        return self._target

    def set_target(self, target: Optional[ArrivalTarget]) -> None:
        """Replace the monitored target; a new approach starts with it."""
        previous = self._target
        self._target = target
        if previous is not None and target is not None and previous.idempotence_key == target.idempotence_key:
            return
        self.engine.reset_target()
        self.last_resort_indicator = False
        if target is not None:
            logger.info(
                f"Monitoring target {target.target_id} ({target.station_name}), approach {target.approach_event_id}"
            )

    # ==================== Subscribers ====================

    def on_decision(self, listener: DecisionListener) -> Callable[[], None]:
        """Subscribe to every produced Decision. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def recent_decisions(self) -> List[Decision]:
        return list(self._recent)

    # ==================== Lifecycle ====================

    async def start(self, target: Optional[ArrivalTarget] = None, *, run_tickers: bool = True) -> None:
        if target is not None:
            self.set_target(target)
        self.fallback.start(run_ticker=run_tickers)
        if run_tickers:
            self._ticker.start()
        self.running = True
        logger.info("Monitoring started")

    async def stop(self) -> None:
        """Cancel both tickers and abandon in-flight deliveries."""
        await self._ticker.stop()
        await self.fallback.stop()
        self.delivery.abandon_all()
        tasks = list(self._delivery_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._delivery_tasks.clear()
        self.running = False
        logger.info(f"Monitoring stopped ({len(tasks)} deliveries cancelled)")

    async def wait_for_deliveries(self) -> None:
        if self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

    @property
    def active_deliveries(self) -> int:
        return len(self._delivery_tasks)

    # ==================== Tick ====================

    async def _on_tick(self) -> None:
        await self.tick()

    async def tick(self) -> Decision:
        """Produce exactly one Decision; ticks never overlap."""
        async with self._tick_lock:
            target = self._target
            estimate = self.fallback.best_effort_position()
            scheduled = await self._scheduled_arrival(target)
            decision = self.engine.evaluate(target, scheduled, estimate, self.clock.now())
            if decision.should_notify and target is not None and self._notified_in_history(target):
                self.engine.mark_notified(target)
                decision = replace(
                    decision, should_notify=False, reason=f"Already notified for this approach ({decision.reason})"
                )

            self._recent.append(decision)
            self._record_decision(decision)
            self._emit(decision)

            if decision.should_notify and target is not None:
                logger.info(
                    f"Notify decision for {target.station_name} "
                    f"({decision.mode.value}, confidence {decision.confidence:.2f}): {decision.reason}"
                )
                self.engine.mark_notified(target)
                self._dispatch(decision, target)
            return decision

    async def _scheduled_arrival(self, target: Optional[ArrivalTarget]) -> Optional[ScheduledArrival]:
        if target is None or target.leg is None:
            return None
        try:
            return await self.schedule_provider.get_scheduled_arrival(target.leg)
        except Exception as e:
            logger.warning(f"Schedule source failed for leg {target.leg.leg_id}: {e}")
            return None

    def _emit(self, decision: Decision) -> None:
        for listener in list(self._listeners):
            try:
                listener(decision)
            except Exception as e:
                logger.error(f"Decision listener failed: {e}")

    def _notified_in_history(self, target: ArrivalTarget) -> bool:
        """A notify decision for this approach stored by an earlier session."""
        if self.history is None:
            return False
        try:
            notified = self.history.was_notified(target.target_id, target.approach_event_id)
        except Exception as e:
            logger.warning(f"Failed to query notification history: {e}")
            return False
        if notified:
            logger.info(f"Approach {target.approach_event_id} was already notified; not alerting again")
        return notified

    def _record_decision(self, decision: Decision) -> None:
        if self.history is None:
            return
        try:
            self.history.record_decision(decision)
        except Exception as e:
            logger.warning(f"Failed to record decision history: {e}")

    # ==================== Delivery ====================

    def _dispatch(self, decision: Decision, target: ArrivalTarget) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(decision, target))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _deliver(self, decision: Decision, target: ArrivalTarget) -> Optional[DeliveryResult]:
        message = await compose_arrival_message(
            decision,
            target,
            self.settings.message_style,
            self.message_generator,
            self.settings.message_timeout_seconds,
        )
        payload = ArrivalPayload(
            target_id=target.target_id,
            approach_event_id=target.approach_event_id,
            station_name=target.station_name,
            mode=decision.mode.value,
            eta_seconds=decision.estimated_time_to_arrival,
            distance_meters=decision.distance_to_target,
        )
        notification_id = arrival_notification_id(target)
        try:
            result = await self.delivery.deliver(
                notification_id,
                message.title,
                message.body,
                self.settings.delivery_config(),
                payload,
                critical=True,
            )
        except DeliveryInProgressError as e:
            logger.warning(str(e))
            return None
        finally:
            self._record_delivery(notification_id)

        self.results.append(result)
        if result.needs_last_resort_indicator:
            self.last_resort_indicator = True
            logger.error(f"No channel reached the traveler for {notification_id}; last-resort indicator raised")
        return result

    def _record_delivery(self, notification_id: str) -> None:
        record = self.delivery.get_record(notification_id)
        if self.history is None or record is None:
            return
        try:
            self.history.record_delivery(record)
        except Exception as e:
            logger.warning(f"Failed to record delivery history: {e}")

    def status(self) -> dict:
        target = self._target
        last = self._recent[-1] if self._recent else None
        return {
            "running": self.running,
            "target": (
                {
                    "target_id": target.target_id,
                    "station_name": target.station_name,
                    "approach_event_id": target.approach_event_id,
                    "notified": self.engine.was_notified(target),
                }
                if target
                else None
            ),
            "fallback": self.fallback.snapshot().to_dict(),
            "last_decision": last.to_dict() if last else None,
            "active_deliveries": self.active_deliveries,
            "last_resort_indicator": self.last_resort_indicator,
        }
