"""
Snooze planning - Pure domain logic

Plans one follow-up alert per remaining station so a traveler who slept
through the first alarm is reminded again as the stop gets closer.
"""

from dataclasses import dataclass
from typing import List

from .messages import MessageKind, MessageStyle, fallback_message
from .payloads import SnoozePayload


@dataclass(frozen=True)
class SnoozeNotification:
    notification_id: str
    stations_remaining: int
    fire_after_minutes: int
    title: str
    body: str
    payload: SnoozePayload
    critical: bool


class SnoozePlanner:
    """Pure functions for station-count based snooze alerts."""

    MINUTES_PER_STATION = 2
    MAX_SNOOZE_STATIONS = 10

    @staticmethod
    def notification_id(alert_id: str, stations_remaining: int) -> str:
        return f"snooze_{alert_id}_{stations_remaining}stations"

    @staticmethod
    def countdown_text(stations_remaining: int) -> str:
        if stations_remaining == 1:
            return "Next stop is yours! Don't forget your belongings."
        if stations_remaining == 2:
            return "2 more stops! Time to get ready."
        return f"{stations_remaining} more stops to go."

    @staticmethod
    def plan(
        alert_id: str,
        station_name: str,
        snooze_start_stations: int,
        current_station_count: int,
        style: MessageStyle = MessageStyle.HEALING,
    ) -> List[SnoozeNotification]:
        """
        Snooze alerts from snooze_start_stations down to 1 stop remaining.

        Counts the train has already passed (more than current_station_count
        stations remaining) are skipped.

        Raises:
            ValueError: If the station counts are out of range
        """
        if not 1 <= snooze_start_stations <= SnoozePlanner.MAX_SNOOZE_STATIONS:
            raise ValueError(f"snooze_start_stations must be 1-{SnoozePlanner.MAX_SNOOZE_STATIONS}")
        if current_station_count < 0:
            raise ValueError("current_station_count must be >= 0")

        planned = []
        for count, stations_remaining in enumerate(range(snooze_start_stations, 0, -1), start=1):
            stations_until = current_station_count - stations_remaining
            if stations_until < 0:
                continue
            template = fallback_message(MessageKind.SNOOZE, style, station_name, count=count)
            planned.append(
                SnoozeNotification(
                    notification_id=SnoozePlanner.notification_id(alert_id, stations_remaining),
                    stations_remaining=stations_remaining,
                    fire_after_minutes=stations_until * SnoozePlanner.MINUTES_PER_STATION,
                    title=template.title,
                    body=f"{SnoozePlanner.countdown_text(stations_remaining)} {template.body}",
                    payload=SnoozePayload(
                        alert_id=alert_id,
                        station_name=station_name,
                        stations_remaining=stations_remaining,
                    ),
                    critical=stations_remaining == 1,
                )
            )
        return planned
