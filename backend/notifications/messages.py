"""
Alert message text.

Deterministic templates per message style, plus a bounded wait on an
optional external message generator. The generator is raced against a
hard timeout and the template is used on expiry or error, so message text
can never stall the decision loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from decision.models import ArrivalTarget, Decision, OperatingMode

logger = logging.getLogger(__name__)


class MessageStyle(str, Enum):
    """Voice used for alert text."""
    CHEERFUL = "cheerful"
    BUTLER = "butler"
    FRIENDLY = "friendly"
    TSUNDERE = "tsundere"
    SPORTY = "sporty"
    HEALING = "healing"

    @property
    def tone(self) -> str:
        return _TONES[self]


_TONES = {
    MessageStyle.CHEERFUL: "bright, upbeat and excitable",
    MessageStyle.BUTLER: "formal, courteous and refined",
    MessageStyle.FRIENDLY: "warm, casual and neighbourly",
    MessageStyle.TSUNDERE: "aloof at first but secretly caring",
    MessageStyle.SPORTY: "energetic coach shouting encouragement",
    MessageStyle.HEALING: "soft, calm and reassuring",
}


class MessageKind(str, Enum):
    TRAIN = "train"  # schedule-driven alert
    LOCATION = "location"  # position-driven alert
    SNOOZE = "snooze"


@dataclass(frozen=True)
class MessageTemplate:
    title: str
    body: str

    def render(self, station: str, count: int = 1) -> "MessageTemplate":
        return MessageTemplate(
            title=self.title.format(station=station, count=count),
            body=self.body.format(station=station, count=count),
        )


FALLBACK_TEMPLATES = {
    MessageStyle.CHEERFUL: {
        MessageKind.TRAIN: MessageTemplate("Wake up wake up!", "It's {station} already! Seriously, get up or you'll miss it!"),
        MessageKind.LOCATION: MessageTemplate("We're here!", "Almost at {station}! Time to get ready to hop off!"),
        MessageKind.SNOOZE: MessageTemplate("Still asleep?", "It's {station}! That's alarm number {count}, get up!"),
    },
    MessageStyle.BUTLER: {
        MessageKind.TRAIN: MessageTemplate("It is time to wake", "We are arriving at {station}. Kindly prepare to alight."),
        MessageKind.LOCATION: MessageTemplate("Destination reached", "We are now near {station}. Please prepare to disembark."),
        MessageKind.SNOOZE: MessageTemplate("A further reminder", "This is {station}. Reminder number {count}; do forgive the intrusion."),
    },
    MessageStyle.FRIENDLY: {
        MessageKind.TRAIN: MessageTemplate("Up you get!", "{station} is coming up! Don't want to miss your stop now."),
        MessageKind.LOCATION: MessageTemplate("Nearly there!", "We're close to {station}! Grab your things."),
        MessageKind.SNOOZE: MessageTemplate("Still snoozing?", "Honestly, it's {station}! Alarm {count}, up you get this time."),
    },
    MessageStyle.TSUNDERE: {
        MessageKind.TRAIN: MessageTemplate("N-not that I'm worried", "It's {station}! I don't care if you miss it... just wake up."),
        MessageKind.LOCATION: MessageTemplate("We're there, obviously", "{station}. It's not like I wanted to tell you or anything!"),
        MessageKind.SNOOZE: MessageTemplate("Ugh, fine", "Still asleep? I said {station}! That's {count} times... you're making me worry."),
    },
    MessageStyle.SPORTY: {
        MessageKind.TRAIN: MessageTemplate("Alright, up!", "{station} arriving! Get ready to move, let's go!"),
        MessageKind.LOCATION: MessageTemplate("Finish line!", "Entering {station}! Start your exit prep, you've got this!"),
        MessageKind.SNOOZE: MessageTemplate("Dig deep!", "It's {station}! Alarm {count}! Push through and get up!"),
    },
    MessageStyle.HEALING: {
        MessageKind.TRAIN: MessageTemplate("A gentle reminder", "We'll be at {station} soon. Take your time waking up."),
        MessageKind.LOCATION: MessageTemplate("Almost home", "We're near {station} now. Gather your things slowly."),
        MessageKind.SNOOZE: MessageTemplate("Time to wake, gently", "This is {station}. Reminder {count}, whenever you're ready."),
    },
}


def fallback_message(kind: MessageKind, style: MessageStyle, station: str, count: int = 1) -> MessageTemplate:
    return FALLBACK_TEMPLATES[style][kind].render(station, count)


class MessageGenerator(Protocol):
    async def generate_message(
        self, station_name: str, eta_seconds: Optional[float], style: MessageStyle
    ) -> str:
        ...


async def generate_with_timeout(
    generator: Optional[MessageGenerator],
    station_name: str,
    eta_seconds: Optional[float],
    style: MessageStyle,
    timeout_seconds: float,
) -> Optional[str]:
    """
    Await the generator for at most timeout_seconds.

    Returns the generated text, or None if the fallback had to be used.
    """
    if generator is None:
        return None
    try:
        text = await asyncio.wait_for(
            generator.generate_message(station_name, eta_seconds, style),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Message generation timed out after {timeout_seconds}s, using template")
        return None
    except Exception as e:
        logger.warning(f"Message generation failed, using template: {e}")
        return None
    text = (text or "").strip()
    return text or None


@dataclass(frozen=True)
class ComposedMessage:
    title: str
    body: str
    generated: bool


def _details(decision: Decision) -> str:
    parts = []
    if decision.estimated_time_to_arrival is not None and decision.estimated_time_to_arrival > 0:
        minutes = max(1, round(decision.estimated_time_to_arrival / 60))
        parts.append(f"about {minutes} min to go")
    if decision.distance_to_target is not None:
        parts.append(f"{int(decision.distance_to_target)} m away")
    if decision.deviation is not None and decision.deviation.significant:
        parts.append(decision.deviation.display_text)
    if decision.mode == OperatingMode.DEGRADED:
        parts.append("GPS weak, using timetable")
    return f" ({', '.join(parts)})" if parts else ""


async def compose_arrival_message(
    decision: Decision,
    target: ArrivalTarget,
    style: MessageStyle,
    generator: Optional[MessageGenerator] = None,
    timeout_seconds: float = 3.0,
) -> ComposedMessage:
    """Title and body for an arrival alert."""
    kind = MessageKind.LOCATION if decision.mode == OperatingMode.POSITION_ONLY else MessageKind.TRAIN
    template = fallback_message(kind, style, target.station_name)
    generated = await generate_with_timeout(
        generator,
        target.station_name,
        decision.estimated_time_to_arrival,
        style,
        timeout_seconds,
    )
    body = generated if generated is not None else template.body
    return ComposedMessage(
        title=template.title,
        body=body + _details(decision),
        generated=generated is not None,
    )
