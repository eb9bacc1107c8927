from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from common.clock import Clock, SystemClock
from notifications.channels import ChannelBackend, DeviceSurfaceBackend
from notifications.expo_push import ExpoChannelBackend, ExpoPushClient
from notifications.messages import MessageGenerator

from .contracts import PositionProvider, ScheduleProvider
from .fake_providers import (
    FakeMessageGenerator,
    FakePositionProvider,
    FakeScheduleProvider,
    RecordingDeviceSurface,
)
from .real_providers import (
    LatestSamplePositionProvider,
    ODPTScheduleProvider,
    OpenAIMessageGenerator,
)


@dataclass
class ProviderSet:
    position: PositionProvider
    schedule: ScheduleProvider
    messages: Optional[MessageGenerator]
    channels: ChannelBackend
    mode: str


def _build_prod(clock: Clock) -> ProviderSet:
    expo = ExpoPushClient(access_token=os.environ.get("EXPO_ACCESS_TOKEN") or None)
    return ProviderSet(
        position=LatestSamplePositionProvider(),
        schedule=ODPTScheduleProvider(clock=clock),
        messages=OpenAIMessageGenerator() if os.environ.get("OPENAI_API_KEY") else None,
        channels=ExpoChannelBackend(expo, os.environ.get("EXPO_PUSH_TOKEN")),
        mode="prod",
    )


def _build_fake(clock: Clock, mode: str) -> ProviderSet:
    return ProviderSet(
        position=FakePositionProvider(clock),
        schedule=FakeScheduleProvider(),
        messages=FakeMessageGenerator(),
        channels=DeviceSurfaceBackend(RecordingDeviceSurface()),
        mode=mode,
    )


def active_mode(mode: Optional[str] = None) -> str:
    return (mode or os.environ.get("ALARM_MODE", "prod")).lower()


def load_providers(mode: Optional[str] = None, clock: Optional[Clock] = None) -> ProviderSet:
    """Build a fresh provider set; demo/test modes use fixture-backed fakes."""
    resolved = active_mode(mode)
    clock = clock or SystemClock()
    if resolved in {"demo", "test"}:
        return _build_fake(clock, resolved)
    return _build_prod(clock)
