"""
Tests for the monitoring session.

Covers:
- One decision per tick and notify dispatch
- Approach idempotence across ticks and targets
- Subscribers, history and schedule source failures
- Stop semantics (tickers cancelled, deliveries abandoned)
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from common.clock import ManualClock
from common.config import AlarmSettings
from decision.models import ArrivalTarget, OperatingMode, TransitLeg
from decision.monitor import MonitoringSession, arrival_notification_id
from fallback.models import PositionSample
from notifications.channels import PermissionDeniedError
from notifications.models import DeliveryChannel, DeliveryStatus
from notifications.payloads import payload_from_data
from notifications.reliability import DeliveryReliabilityManager
from providers.fake_providers import (
    FakeMessageGenerator,
    InMemoryHistoryStore,
    ScriptedChannelBackend,
    ScriptedPositionProvider,
    StaticScheduleProvider,
)

START = datetime(2026, 1, 20, 8, 0, 0, tzinfo=timezone.utc)
SHINJUKU = (35.6896, 139.7006)


def target_arriving_in(minutes, **kwargs):
    return ArrivalTarget(
        target_id="shinjuku",
        station_name="Shinjuku",
        latitude=SHINJUKU[0],
        longitude=SHINJUKU[1],
        leg=TransitLeg(leg_id="leg-1", scheduled_arrival=START + timedelta(minutes=minutes)),
        **kwargs,
    )


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def backend():
    return ScriptedChannelBackend()


@pytest.fixture
def history():
    return InMemoryHistoryStore()


def make_session(clock, backend, history=None, settings=None, schedule=None, generator=None, position=None):
    delivery = DeliveryReliabilityManager(backend, clock)
    return MonitoringSession(
        settings or AlarmSettings(),
        clock,
        position or ScriptedPositionProvider(),
        schedule or StaticScheduleProvider(),
        delivery,
        message_generator=generator,
        history=history,
    )


class TestTick:
    """Test decision production and dispatch."""

    @pytest.mark.asyncio
    async def test_notify_dispatches_once_per_approach(self, clock, backend, history):
        sent = []
        backend.on_send = lambda channel, notification: sent.append(notification)
        session = make_session(clock, backend, history)
        target = target_arriving_in(4)
        await session.start(target, run_tickers=False)

        first = await session.tick()
        await session.wait_for_deliveries()

        assert first.should_notify is True
        assert first.mode == OperatingMode.DEGRADED
        assert first.target_id == "shinjuku"
        nid = arrival_notification_id(target)
        assert backend.sent == [(DeliveryChannel.SYSTEM_NOTIFICATION, nid)]
        assert session.results[-1].status == DeliveryStatus.SUCCESS
        assert nid in history.deliveries

        notification = sent[0]
        assert notification.critical is True
        assert notification.title == "A gentle reminder"
        assert "Shinjuku" in notification.body
        assert "GPS weak, using timetable" in notification.body
        payload = payload_from_data(notification.data())
        assert payload.approach_event_id == target.approach_event_id

        clock.advance(10)
        second = await session.tick()
        await session.wait_for_deliveries()

        assert second.should_notify is False
        assert len(backend.sent) == 1
        assert len(history.decisions) == 2
        assert session.status()["target"]["notified"] is True

    @pytest.mark.asyncio
    async def test_new_target_starts_new_approach(self, clock, backend):
        session = make_session(clock, backend)
        await session.start(target_arriving_in(4), run_tickers=False)
        await session.tick()
        await session.wait_for_deliveries()

        session.set_target(target_arriving_in(3))
        decision = await session.tick()
        await session.wait_for_deliveries()

        assert decision.should_notify is True
        assert len(backend.sent) == 2

    @pytest.mark.asyncio
    async def test_resumed_approach_not_notified_again(self, clock, backend, history):
        """A new session on the same approach consults stored decisions."""
        target = target_arriving_in(4)
        first = make_session(clock, backend, history)
        await first.start(target, run_tickers=False)
        await first.tick()
        await first.wait_for_deliveries()
        await first.stop()

        resumed = make_session(clock, backend, history)
        await resumed.start(target, run_tickers=False)
        decision = await resumed.tick()
        await resumed.wait_for_deliveries()

        assert decision.should_notify is False
        assert decision.reason.startswith("Already notified for this approach")
        assert len(backend.sent) == 1
        assert resumed.active_deliveries == 0
        assert resumed.status()["target"]["notified"] is True

    @pytest.mark.asyncio
    async def test_same_target_keeps_approach(self, clock, backend):
        session = make_session(clock, backend)
        target = target_arriving_in(4)
        await session.start(target, run_tickers=False)
        await session.tick()
        await session.wait_for_deliveries()

        session.set_target(target)
        assert (await session.tick()).should_notify is False

    @pytest.mark.asyncio
    async def test_live_fix_enables_hybrid(self, clock, backend):
        session = make_session(clock, backend)
        await session.start(target_arriving_in(20), run_tickers=False)
        session.fallback.observe(
            PositionSample(
                latitude=SHINJUKU[0] - 0.0027, longitude=SHINJUKU[1], accuracy_meters=10.0, captured_at=clock.now()
            )
        )

        decision = await session.tick()
        await session.wait_for_deliveries()

        assert decision.mode == OperatingMode.HYBRID
        assert decision.should_notify is True
        assert decision.distance_to_target == pytest.approx(300, abs=5)

    @pytest.mark.asyncio
    async def test_no_target_never_notifies(self, clock, backend):
        session = make_session(clock, backend)
        await session.start(run_tickers=False)
        decision = await session.tick()
        assert decision.should_notify is False
        assert decision.target_id is None
        assert session.status()["target"] is None

    @pytest.mark.asyncio
    async def test_schedule_failure_treated_as_missing(self, clock, backend):
        session = make_session(clock, backend, schedule=StaticScheduleProvider(error=RuntimeError("API down")))
        await session.start(target_arriving_in(4), run_tickers=False)
        decision = await session.tick()
        assert decision.should_notify is False
        assert decision.confidence == 0.0

    @pytest.mark.asyncio
    async def test_history_failure_does_not_break_tick(self, clock, backend):
        session = make_session(clock, backend, history=InMemoryHistoryStore(fail=True))
        await session.start(target_arriving_in(4), run_tickers=False)
        decision = await session.tick()
        await session.wait_for_deliveries()
        assert decision.should_notify is True
        assert session.results[-1].status == DeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_no_channel_reached_raises_last_resort_indicator(self, clock):
        denied = {channel: [PermissionDeniedError(channel)] for channel in DeliveryChannel}
        session = make_session(clock, ScriptedChannelBackend(scripts=denied))
        await session.start(target_arriving_in(4), run_tickers=False)

        await session.tick()
        await session.wait_for_deliveries()

        assert session.results[-1].status == DeliveryStatus.FAILURE
        assert session.last_resort_indicator is True
        assert session.status()["last_resort_indicator"] is True


class TestMessages:
    """Test message composition during dispatch."""

    @pytest.mark.asyncio
    async def test_generated_text_used(self, clock, backend):
        sent = []
        backend.on_send = lambda channel, notification: sent.append(notification)
        generator = FakeMessageGenerator(text="Shinjuku already, sleepyhead")
        session = make_session(clock, backend, generator=generator)
        await session.start(target_arriving_in(4), run_tickers=False)

        await session.tick()
        await session.wait_for_deliveries()

        assert sent[0].body.startswith("Shinjuku already, sleepyhead")
        assert generator.calls[0]["station_name"] == "Shinjuku"

    @pytest.mark.asyncio
    async def test_slow_generator_falls_back_to_template(self, clock, backend):
        sent = []
        backend.on_send = lambda channel, notification: sent.append(notification)
        settings = replace(AlarmSettings(), message_timeout_seconds=0.05)
        generator = FakeMessageGenerator(text="too late", delay=1.0)
        session = make_session(clock, backend, settings=settings, generator=generator)
        await session.start(target_arriving_in(4), run_tickers=False)

        await session.tick()
        await session.wait_for_deliveries()

        assert sent[0].body.startswith("We'll be at Shinjuku soon.")


class TestSubscribers:
    """Test decision subscribers."""

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, clock, backend):
        session = make_session(clock, backend)
        await session.start(run_tickers=False)
        seen = []
        unsubscribe = session.on_decision(seen.append)

        await session.tick()
        unsubscribe()
        await session.tick()

        assert len(seen) == 1
        assert len(session.recent_decisions) == 2

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_tick(self, clock, backend):
        session = make_session(clock, backend)
        await session.start(run_tickers=False)
        seen = []

        def broken(decision):
            raise RuntimeError("render failed")

        session.on_decision(broken)
        session.on_decision(seen.append)
        await session.tick()
        assert len(seen) == 1


class TestStop:
    """Test session shutdown."""

    @pytest.mark.asyncio
    async def test_stop_abandons_in_flight_delivery(self, clock):
        backend = ScriptedChannelBackend(scripts={DeliveryChannel.SYSTEM_NOTIFICATION: ["hang"]})
        session = make_session(clock, backend)
        target = target_arriving_in(4)
        await session.start(target, run_tickers=False)

        await session.tick()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert session.active_deliveries == 1

        await session.stop()

        assert session.active_deliveries == 0
        assert session.running is False
        record = session.delivery.get_record(arrival_notification_id(target))
        assert record.abandoned is True
        assert record.completed is True

    @pytest.mark.asyncio
    async def test_tickers_drive_decisions_until_stopped(self, clock, backend):
        session = make_session(clock, backend)
        await session.start(ArrivalTarget(target_id="t", station_name="Somewhere"))
        for _ in range(30):
            await asyncio.sleep(0)
        await session.stop()

        produced = len(session.recent_decisions)
        assert produced > 0
        for _ in range(10):
            await asyncio.sleep(0)
        assert len(session.recent_decisions) == produced
