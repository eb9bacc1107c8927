"""
Tests for notification payload data maps.
"""

import pytest

from notifications.channels import OutgoingNotification
from notifications.payloads import (
    ArrivalPayload,
    SnoozePayload,
    TransferPayload,
    payload_from_data,
)


class TestPayloadData:
    """Test the flat string maps carried in notification data."""

    def test_arrival_payload(self):
        payload = ArrivalPayload(
            target_id="shinjuku",
            approach_event_id="a-1",
            station_name="Shinjuku",
            mode="hybrid",
            eta_seconds=241.7,
            distance_meters=None,
        )
        data = payload.to_data()
        assert data == {
            "type": "arrival",
            "targetId": "shinjuku",
            "approachEventId": "a-1",
            "stationName": "Shinjuku",
            "mode": "hybrid",
            "etaSeconds": "241",
        }
        assert all(isinstance(v, str) for v in data.values())

    def test_snooze_payload_restored(self):
        data = SnoozePayload(alert_id="x", station_name="Ebisu", stations_remaining=2).to_data()
        restored = payload_from_data(data)
        assert isinstance(restored, SnoozePayload)
        assert restored.stations_remaining == 2

    def test_transfer_payload_restored(self):
        payload = TransferPayload(transfer_alert_id="t-9", station_name="Tokyo", point_type="transfer")
        assert payload_from_data(payload.to_data()) == payload

    def test_notification_data_includes_id(self):
        payload = SnoozePayload(alert_id="x", station_name="Ebisu", stations_remaining=1)
        notification = OutgoingNotification("snooze_x_1stations", "t", "b", payload)
        data = notification.data()
        assert data["notificationId"] == "snooze_x_1stations"
        assert data["type"] == "snooze"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown notification payload type"):
            payload_from_data({"type": "weather"})

    def test_missing_field_rejected(self):
        with pytest.raises(ValueError, match="missing field stationName"):
            payload_from_data({"type": "transfer", "transferAlertId": "t", "pointType": "arrival"})
