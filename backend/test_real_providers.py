"""
Tests for the production providers.

HTTP is served by httpx.MockTransport.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from common.clock import ManualClock
from decision.models import TransitLeg
from fallback.models import PositionSample
from notifications.messages import MessageStyle
from providers.real_providers import (
    LatestSamplePositionProvider,
    ODPTScheduleProvider,
    OpenAIMessageGenerator,
)

START = datetime(2026, 1, 20, 8, 0, 0, tzinfo=timezone.utc)
LEG = TransitLeg(
    leg_id="leg-1",
    railway_id="odpt.Railway:JR-East.Yamanote",
    train_number="0830G",
    scheduled_arrival=START + timedelta(minutes=30),
)


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestLatestSamplePositionProvider:
    """Test the push-fed position source."""

    @pytest.mark.asyncio
    async def test_keeps_newest_sample(self):
        provider = LatestSamplePositionProvider()
        assert await provider.get_current_position() is None

        newer = PositionSample(latitude=1, longitude=1, accuracy_meters=5, captured_at=START + timedelta(seconds=5))
        older = PositionSample(latitude=2, longitude=2, accuracy_meters=5, captured_at=START)
        provider.push(newer)
        provider.push(older)
        assert await provider.get_current_position() == newer


class TestODPTScheduleProvider:
    """Test delay lookup and caching."""

    @pytest.mark.asyncio
    async def test_delay_from_train_data(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=[
                {"odpt:trainNumber": "0700G", "odpt:delay": 600},
                {"odpt:trainNumber": "0830G", "odpt:delay": 190},
            ])

        clock = ManualClock(START)
        provider = ODPTScheduleProvider(consumer_key="key", client=mock_client(handler), clock=clock)

        scheduled = await provider.get_scheduled_arrival(LEG)

        assert scheduled.delay_minutes == 3
        assert scheduled.arrival_time == LEG.scheduled_arrival
        assert requests[0].url.params["odpt:railway"] == "odpt.Railway:JR-East.Yamanote"
        assert requests[0].url.params["acl:consumerKey"] == "key"

        await provider.get_scheduled_arrival(LEG)
        assert len(requests) == 1
        clock.advance(301)
        await provider.get_scheduled_arrival(LEG)
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_cached_delay(self):
        responses = [httpx.Response(200, json=[{"odpt:trainNumber": "0830G", "odpt:delay": 300}]), httpx.Response(503)]

        def handler(request):
            return responses.pop(0)

        clock = ManualClock(START)
        provider = ODPTScheduleProvider(consumer_key="key", client=mock_client(handler), clock=clock)
        assert await provider.get_delay_minutes("r", "0830G") == 5
        clock.advance(400)
        assert await provider.get_delay_minutes("r", "0830G") == 5

    @pytest.mark.asyncio
    async def test_failure_without_cache_means_no_delay(self):
        provider = ODPTScheduleProvider(
            consumer_key="key", client=mock_client(lambda request: httpx.Response(500)), clock=ManualClock(START)
        )
        assert await provider.get_delay_minutes("r", "0830G") == 0

    @pytest.mark.asyncio
    async def test_leg_without_schedule(self):
        provider = ODPTScheduleProvider(consumer_key="key", client=mock_client(lambda r: httpx.Response(200, json=[])))
        assert await provider.get_scheduled_arrival(TransitLeg(leg_id="x")) is None


class TestOpenAIMessageGenerator:
    """Test the chat completion message generator."""

    @pytest.mark.asyncio
    async def test_generates_message(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": " Wake up, Shinjuku! "}}]})

        generator = OpenAIMessageGenerator(api_key="sk-test", client=mock_client(handler))
        text = await generator.generate_message("Shinjuku", 180, MessageStyle.SPORTY)

        assert text == "Wake up, Shinjuku!"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        assert b"about 3 minutes" in seen[0].content

    @pytest.mark.asyncio
    async def test_missing_key(self):
        generator = OpenAIMessageGenerator(api_key="")
        with pytest.raises(RuntimeError):
            await generator.generate_message("Shinjuku", None, MessageStyle.HEALING)

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        generator = OpenAIMessageGenerator(api_key="sk-test", client=mock_client(lambda r: httpx.Response(429)))
        with pytest.raises(httpx.HTTPStatusError):
            await generator.generate_message("Shinjuku", 60, MessageStyle.HEALING)
