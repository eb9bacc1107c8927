"""
Notification payloads.

One explicitly-fielded type per notification kind. to_data() produces the
flat string map carried in push/notification data; payload_from_data()
rebuilds the typed payload from a stored history entry.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union


class NotificationKind(str, Enum):
    ARRIVAL = "arrival"
    SNOOZE = "snooze"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class ArrivalPayload:
    target_id: str
    approach_event_id: str
    station_name: str
    mode: str
    eta_seconds: Optional[float] = None
    distance_meters: Optional[float] = None

    kind = NotificationKind.ARRIVAL

    def to_data(self) -> Dict[str, str]:
        data = {
            "type": self.kind.value,
            "targetId": self.target_id,
            "approachEventId": self.approach_event_id,
            "stationName": self.station_name,
            "mode": self.mode,
        }
        if self.eta_seconds is not None:
            data["etaSeconds"] = str(int(self.eta_seconds))
        if self.distance_meters is not None:
            data["distanceMeters"] = str(int(self.distance_meters))
        return data


@dataclass(frozen=True)
class SnoozePayload:
    alert_id: str
    station_name: str
    stations_remaining: int

    kind = NotificationKind.SNOOZE

    def to_data(self) -> Dict[str, str]:
        return {
            "type": self.kind.value,
            "alertId": self.alert_id,
            "stationName": self.station_name,
            "stationsRemaining": str(self.stations_remaining),
        }


@dataclass(frozen=True)
class TransferPayload:
    transfer_alert_id: str
    station_name: str
    point_type: str  # "transfer" or "arrival"

    kind = NotificationKind.TRANSFER

    def to_data(self) -> Dict[str, str]:
        return {
            "type": self.kind.value,
            "transferAlertId": self.transfer_alert_id,
            "stationName": self.station_name,
            "pointType": self.point_type,
        }


NotificationPayload = Union[ArrivalPayload, SnoozePayload, TransferPayload]


def _optional_float(value: Optional[str]) -> Optional[float]:
    return float(value) if value not in (None, "") else None


def payload_from_data(data: Dict[str, str]) -> NotificationPayload:
    """
    Rebuild a typed payload from its data map.

    Raises:
        ValueError: If the type is unknown or a required field is missing
    """
    try:
        kind = NotificationKind(data.get("type", ""))
    except ValueError:
        raise ValueError(f"Unknown notification payload type: {data.get('type')!r}")

    try:
        if kind == NotificationKind.ARRIVAL:
            return ArrivalPayload(
                target_id=data["targetId"],
                approach_event_id=data["approachEventId"],
                station_name=data["stationName"],
                mode=data["mode"],
                eta_seconds=_optional_float(data.get("etaSeconds")),
                distance_meters=_optional_float(data.get("distanceMeters")),
            )
        if kind == NotificationKind.SNOOZE:
            return SnoozePayload(
                alert_id=data["alertId"],
                station_name=data["stationName"],
                stations_remaining=int(data["stationsRemaining"]),
            )
        return TransferPayload(
            transfer_alert_id=data["transferAlertId"],
            station_name=data["stationName"],
            point_type=data["pointType"],
        )
    except KeyError as e:
        raise ValueError(f"{kind.value} payload missing field {e.args[0]}")
