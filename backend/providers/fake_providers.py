from __future__ import annotations

import asyncio
import json
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Union

from common.clock import Clock, SystemClock
from decision.models import Decision, ScheduledArrival, TransitLeg
from fallback.models import PositionSample
from notifications.channels import OutgoingNotification
from notifications.messages import MessageStyle
from notifications.models import DeliveryChannel, DeliveryRecord

from .contracts import PositionProvider, ScheduleProvider

FIXTURES_ROOT = Path(__file__).parent.parent / "fixtures" / "demo"


class _FixtureLoader:
    def __init__(self, fixture_name: str):
        self.path = FIXTURES_ROOT / fixture_name / "data.json"
        with self.path.open("r", encoding="utf-8") as f:
            self.data = json.load(f)


class FakeScheduleProvider(ScheduleProvider, _FixtureLoader):
    """Scheduled arrivals and delays per leg id from the demo fixture."""

    def __init__(self) -> None:
        _FixtureLoader.__init__(self, "schedule")

    async def get_scheduled_arrival(self, leg: TransitLeg) -> Optional[ScheduledArrival]:
        entry = self.data.get("legs", {}).get(leg.leg_id, {})
        arrival = leg.scheduled_arrival
        if arrival is None and entry.get("arrival_time"):
            arrival = datetime.fromisoformat(entry["arrival_time"])
        if arrival is None:
            return None
        return ScheduledArrival(arrival_time=arrival, delay_minutes=int(entry.get("delay_minutes", 0)))


class FakePositionProvider(PositionProvider, _FixtureLoader):
    """
    Replays the demo GPS track one sample per call.

    null entries in the track simulate an outage (no sample). The track
    loops once exhausted.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        _FixtureLoader.__init__(self, "positions")
        self.clock = clock or SystemClock()
        self._index = 0

    async def get_current_position(self) -> Optional[PositionSample]:
        track = self.data.get("track", [])
        if not track:
            return None
        entry = track[self._index % len(track)]
        self._index += 1
        if entry is None:
            return None
        return PositionSample(
            latitude=entry["lat"],
            longitude=entry["lon"],
            accuracy_meters=entry["accuracy"],
            captured_at=self.clock.now(),
        )


class ScriptedPositionProvider(PositionProvider):
    """Returns queued samples in order, then the last one (or None) forever."""

    def __init__(self, samples: Optional[Iterable[Optional[PositionSample]]] = None):
        self._queue: Deque[Optional[PositionSample]] = deque(samples or [])
        self.current: Optional[PositionSample] = None
        self.error: Optional[Exception] = None
        self.calls = 0

    def push(self, sample: Optional[PositionSample]) -> None:
        self._queue.append(sample)

    def set_current(self, sample: Optional[PositionSample]) -> None:
        self._queue.clear()
        self.current = sample

    async def get_current_position(self) -> Optional[PositionSample]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self._queue:
            self.current = self._queue.popleft()
        return self.current


class StaticScheduleProvider(ScheduleProvider):
    """Returns the leg's own scheduled arrival with a fixed delay."""

    def __init__(self, delay_minutes: int = 0, error: Optional[Exception] = None):
        self.delay_minutes = delay_minutes
        self.error = error

    async def get_scheduled_arrival(self, leg: TransitLeg) -> Optional[ScheduledArrival]:
        if self.error is not None:
            raise self.error
        if leg.scheduled_arrival is None:
            return None
        return ScheduledArrival(arrival_time=leg.scheduled_arrival, delay_minutes=self.delay_minutes)


class FakeMessageGenerator:
    """Message generator with a configurable delay or failure."""

    def __init__(self, text: str = "Generated wake-up message", delay: float = 0.0, error: Optional[Exception] = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate_message(
        self, station_name: str, eta_seconds: Optional[float], style: MessageStyle
    ) -> str:
        self.calls.append({"station_name": station_name, "eta_seconds": eta_seconds, "style": style})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


# Script steps for ScriptedChannelBackend: "ok", "hang", an exception
# instance to raise, or a callable run before succeeding.
ScriptStep = Union[str, Exception, Any]


class ScriptedChannelBackend:
    """
    ChannelBackend whose per-channel behaviour is scripted.

    Each send consumes the next step for that channel; once a script is
    exhausted the last step repeats. Unscripted channels succeed.
    """

    def __init__(
        self,
        scripts: Optional[Dict[DeliveryChannel, List[ScriptStep]]] = None,
        available: Optional[Dict[DeliveryChannel, bool]] = None,
        on_send=None,
    ):
        self.scripts = {channel: list(steps) for channel, steps in (scripts or {}).items()}
        self.available = dict(available or {})
        self.on_send = on_send
        self.sent: List[tuple] = []
        self.availability_checks: List[DeliveryChannel] = []

    async def is_available(self, channel: DeliveryChannel) -> bool:
        self.availability_checks.append(channel)
        return self.available.get(channel, True)

    async def send(self, channel: DeliveryChannel, notification: OutgoingNotification) -> None:
        self.sent.append((channel, notification.notification_id))
        if self.on_send is not None:
            self.on_send(channel, notification)
        steps = self.scripts.get(channel)
        if not steps:
            return
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if step == "hang":
            await asyncio.Event().wait()
        elif isinstance(step, Exception):
            raise step

    def sends_for(self, channel: DeliveryChannel) -> int:
        return sum(1 for sent_channel, _ in self.sent if sent_channel == channel)


class RecordingDeviceSurface:
    """DeviceSurface that records what it was asked to do."""

    def __init__(self, capabilities: Optional[Dict[DeliveryChannel, bool]] = None):
        self._capabilities = capabilities or {channel: True for channel in DeliveryChannel}
        self.events: List[tuple] = []

    async def capabilities(self) -> Dict[DeliveryChannel, bool]:
        return dict(self._capabilities)

    async def post_notification(self, notification: OutgoingNotification) -> None:
        self.events.append(("notification", notification.title, notification.body))

    async def play_sound(self, critical: bool) -> None:
        self.events.append(("sound", critical))

    async def vibrate(self) -> None:
        self.events.append(("haptic",))

    async def show_banner(self, title: str, body: str) -> None:
        self.events.append(("banner", title, body))

    async def increment_badge(self) -> None:
        self.events.append(("badge",))


class InMemoryHistoryStore:
    """HistoryStore kept in lists; used in demo mode and tests."""

    def __init__(self, fail: bool = False):
        self.decisions: List[Decision] = []
        self.deliveries: Dict[str, DeliveryRecord] = {}
        self.fail = fail

    def record_decision(self, decision: Decision) -> None:
        if self.fail:
            raise RuntimeError("history store unavailable")
        self.decisions.append(decision)

    def record_delivery(self, record: DeliveryRecord) -> None:
        if self.fail:
            raise RuntimeError("history store unavailable")
        self.deliveries[record.notification_id] = record

    def recent_deliveries(self, since: datetime, limit: int = 50) -> List[dict]:
        if self.fail:
            raise RuntimeError("history store unavailable")
        records = sorted(
            (r for r in self.deliveries.values() if r.created_at >= since),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return [r.to_mongo_doc() for r in records[:limit]]

    def was_notified(self, target_id: str, approach_event_id: str) -> bool:
        if self.fail:
            raise RuntimeError("history store unavailable")
        return any(
            d.should_notify and d.target_id == target_id and d.approach_event_id == approach_event_id
            for d in self.decisions
        )

    def cleanup(self, older_than: Optional[datetime] = None) -> int:
        """Drop decisions and records older than the cutoff (24h ago by default)."""
        cutoff = older_than or datetime.now(timezone.utc) - timedelta(hours=24)
        before = len(self.decisions) + len(self.deliveries)
        self.decisions = [d for d in self.decisions if d.produced_at >= cutoff]
        self.deliveries = {nid: r for nid, r in self.deliveries.items() if r.created_at >= cutoff}
        return before - len(self.decisions) - len(self.deliveries)
