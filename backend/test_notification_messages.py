"""
Tests for alert message composition and snooze planning.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from decision.models import ArrivalTarget, Decision, OperatingMode, ScheduleDeviation
from notifications.messages import (
    FALLBACK_TEMPLATES,
    MessageKind,
    MessageStyle,
    compose_arrival_message,
    fallback_message,
    generate_with_timeout,
)
from notifications.snooze import SnoozePlanner
from providers.fake_providers import FakeMessageGenerator

NOW = datetime(2026, 1, 20, 8, 0, 0, tzinfo=timezone.utc)
TARGET = ArrivalTarget(target_id="shibuya", station_name="Shibuya")


def decision(mode=OperatingMode.HYBRID, eta=240.0, distance=None, deviation=None):
    return Decision(
        should_notify=True,
        mode=mode,
        confidence=0.9,
        estimated_time_to_arrival=eta,
        distance_to_target=distance,
        reason="test",
        produced_at=NOW,
        deviation=deviation,
    )


class TestTemplates:
    """Test the deterministic fallback templates."""

    def test_every_style_has_every_kind(self):
        for style in MessageStyle:
            assert set(FALLBACK_TEMPLATES[style]) == set(MessageKind)
            assert style.tone

    def test_render_substitutes_station_and_count(self):
        template = fallback_message(MessageKind.SNOOZE, MessageStyle.SPORTY, "Ebisu", count=3)
        assert template.body == "It's Ebisu! Alarm 3! Push through and get up!"


class TestGenerateWithTimeout:
    """Test the bounded wait on the message generator."""

    @pytest.mark.asyncio
    async def test_no_generator(self):
        assert await generate_with_timeout(None, "Shibuya", 60, MessageStyle.HEALING, 1.0) is None

    @pytest.mark.asyncio
    async def test_generated_text_is_stripped(self):
        generator = FakeMessageGenerator(text="  Up you get  ")
        text = await generate_with_timeout(generator, "Shibuya", 60, MessageStyle.BUTLER, 1.0)
        assert text == "Up you get"
        assert generator.calls == [
            {"station_name": "Shibuya", "eta_seconds": 60, "style": MessageStyle.BUTLER}
        ]

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        generator = FakeMessageGenerator(delay=1.0)
        loop = asyncio.get_running_loop()
        started = loop.time()
        text = await generate_with_timeout(generator, "Shibuya", 60, MessageStyle.HEALING, 0.05)
        assert text is None
        assert loop.time() - started < 0.9

    @pytest.mark.asyncio
    async def test_error_returns_none(self):
        generator = FakeMessageGenerator(error=RuntimeError("quota exceeded"))
        assert await generate_with_timeout(generator, "Shibuya", 60, MessageStyle.HEALING, 1.0) is None

    @pytest.mark.asyncio
    async def test_blank_text_returns_none(self):
        generator = FakeMessageGenerator(text="   ")
        assert await generate_with_timeout(generator, "Shibuya", 60, MessageStyle.HEALING, 1.0) is None


class TestComposeArrivalMessage:
    """Test arrival title/body composition."""

    @pytest.mark.asyncio
    async def test_template_with_details(self):
        message = await compose_arrival_message(decision(distance=812.4), TARGET, MessageStyle.FRIENDLY)
        assert message.generated is False
        assert message.title == "Up you get!"
        assert message.body == (
            "Shibuya is coming up! Don't want to miss your stop now. (about 4 min to go, 812 m away)"
        )

    @pytest.mark.asyncio
    async def test_position_mode_uses_location_template(self):
        message = await compose_arrival_message(
            decision(mode=OperatingMode.POSITION_ONLY, eta=None, distance=300.0), TARGET, MessageStyle.HEALING
        )
        assert message.title == "Almost home"
        assert message.body.endswith("(300 m away)")

    @pytest.mark.asyncio
    async def test_degraded_and_deviation_noted(self):
        deviation = ScheduleDeviation(
            expected_arrival=NOW, estimated_arrival=NOW, deviation_seconds=-240, confidence=0.8
        )
        message = await compose_arrival_message(
            decision(mode=OperatingMode.DEGRADED, eta=30.0, deviation=deviation), TARGET, MessageStyle.HEALING
        )
        assert message.body.endswith("(about 1 min to go, 4 min early, GPS weak, using timetable)")

    @pytest.mark.asyncio
    async def test_generated_body_keeps_template_title(self):
        generator = FakeMessageGenerator(text="Shibuya, my liege.")
        message = await compose_arrival_message(decision(eta=None), TARGET, MessageStyle.BUTLER, generator, 1.0)
        assert message.generated is True
        assert message.title == "It is time to wake"
        assert message.body == "Shibuya, my liege."


class TestSnoozePlanner:
    """Test station-count snooze plans."""

    def test_full_plan(self):
        plan = SnoozePlanner.plan("alert-1", "Shinjuku", 3, 5)

        assert [n.stations_remaining for n in plan] == [3, 2, 1]
        assert [n.fire_after_minutes for n in plan] == [4, 6, 8]
        assert [n.critical for n in plan] == [False, False, True]
        assert plan[0].notification_id == "snooze_alert-1_3stations"
        assert plan[2].body == (
            "Next stop is yours! Don't forget your belongings. "
            "This is Shinjuku. Reminder 3, whenever you're ready."
        )
        assert plan[1].payload.stations_remaining == 2

    def test_counts_already_passed_are_skipped(self):
        plan = SnoozePlanner.plan("alert-1", "Shinjuku", 3, 2)
        assert [n.stations_remaining for n in plan] == [2, 1]
        assert [n.fire_after_minutes for n in plan] == [0, 2]
        assert "Reminder 2" in plan[0].body

    def test_nothing_left_to_plan(self):
        assert SnoozePlanner.plan("alert-1", "Shinjuku", 3, 0) == []

    CASES = [
        ("one", 1, "Next stop is yours! Don't forget your belongings."),
        ("two", 2, "2 more stops! Time to get ready."),
        ("many", 5, "5 more stops to go."),
    ]

    @pytest.mark.parametrize("name,remaining,expected", CASES)
    def test_countdown_text(self, name, remaining, expected):
        assert SnoozePlanner.countdown_text(remaining) == expected, f"Failed on {name}"

    @pytest.mark.parametrize("start,current", [(0, 5), (11, 12), (3, -1)])
    def test_invalid_counts(self, start, current):
        with pytest.raises(ValueError):
            SnoozePlanner.plan("alert-1", "Shinjuku", start, current)
