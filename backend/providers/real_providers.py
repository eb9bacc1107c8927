from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import httpx

from common.clock import Clock, SystemClock
from decision.models import ScheduledArrival, TransitLeg
from fallback.models import PositionSample
from notifications.messages import MessageStyle

from .contracts import PositionProvider, ScheduleProvider

logger = logging.getLogger(__name__)

ODPT_API_URL = "https://api.odpt.org/api/v4"
OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"


class LatestSamplePositionProvider(PositionProvider):
    """Holds the most recent sample pushed by the device (POST /api/positions)."""

    def __init__(self) -> None:
        self._latest: Optional[PositionSample] = None

    def push(self, sample: PositionSample) -> None:
        if self._latest is None or sample.captured_at >= self._latest.captured_at:
            self._latest = sample

    async def get_current_position(self) -> Optional[PositionSample]:
        return self._latest


class ODPTScheduleProvider(ScheduleProvider):
    """Scheduled arrival from the leg, delay from ODPT live train data."""

    CACHE_SECONDS = 300

    def __init__(
        self,
        consumer_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.consumer_key = consumer_key if consumer_key is not None else os.environ.get("ODPT_CONSUMER_KEY", "")
        self.client = client
        self.clock = clock or SystemClock()
        self._cache: Dict[Tuple[str, str], Tuple[int, datetime]] = {}

    async def get_scheduled_arrival(self, leg: TransitLeg) -> Optional[ScheduledArrival]:
        if leg.scheduled_arrival is None:
            return None
        delay = 0
        if leg.railway_id and leg.train_number:
            delay = await self.get_delay_minutes(leg.railway_id, leg.train_number)
        return ScheduledArrival(arrival_time=leg.scheduled_arrival, delay_minutes=delay)

    async def get_delay_minutes(self, railway_id: str, train_number: str) -> int:
        """Current delay of a train in whole minutes, 0 when unknown."""
        key = (railway_id, train_number)
        cached = self._cache.get(key)
        now = self.clock.now()
        if cached and now - cached[1] < timedelta(seconds=self.CACHE_SECONDS):
            return cached[0]

        params = {"odpt:railway": railway_id, "acl:consumerKey": self.consumer_key}
        try:
            if self.client is not None:
                response = await self.client.get(f"{ODPT_API_URL}/odpt:Train", params=params)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.get(f"{ODPT_API_URL}/odpt:Train", params=params)
            response.raise_for_status()
            trains = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"ODPT delay lookup failed for {railway_id}/{train_number}: {e}")
            return cached[0] if cached else 0

        delay = 0
        for train in trains:
            if train.get("odpt:trainNumber") == train_number:
                delay = int(train.get("odpt:delay") or 0) // 60
                break
        self._cache[key] = (delay, now)
        if delay:
            logger.info(f"Train {train_number} on {railway_id} delayed {delay} min")
        return delay


class OpenAIMessageGenerator:
    """Short styled wake-up messages from the OpenAI chat completions API."""

    MODEL = "gpt-3.5-turbo"

    def __init__(self, api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", "")
        self.client = client

    async def generate_message(
        self, station_name: str, eta_seconds: Optional[float], style: MessageStyle
    ) -> str:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY not set")

        eta_text = f"about {max(1, round(eta_seconds / 60))} minutes" if eta_seconds else "very soon"
        body = {
            "model": self.MODEL,
            "temperature": 0.8,
            "max_tokens": 80,
            "messages": [
                {
                    "role": "system",
                    "content": f"You write one-sentence wake-up alerts for train passengers. Tone: {style.tone}.",
                },
                {
                    "role": "user",
                    "content": f"The passenger arrives at {station_name} in {eta_text}. Wake them up.",
                },
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self.client is not None:
            response = await self.client.post(OPENAI_API_URL, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(OPENAI_API_URL, json=body, headers=headers)
        response.raise_for_status()
        data = response.json()
        return data["choices"][0]["message"]["content"].strip()
