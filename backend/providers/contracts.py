from __future__ import annotations

from typing import Optional, Protocol

from decision.models import ScheduledArrival, TransitLeg
from fallback.models import PositionSample
from notifications.messages import MessageGenerator


class PositionProvider(Protocol):
    async def get_current_position(self) -> Optional[PositionSample]:
        ...


class ScheduleProvider(Protocol):
    async def get_scheduled_arrival(self, leg: TransitLeg) -> Optional[ScheduledArrival]:
        ...


__all__ = ["MessageGenerator", "PositionProvider", "ScheduleProvider"]
