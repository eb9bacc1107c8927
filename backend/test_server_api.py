"""
Tests for the HTTP API.

The app is built with fixture providers, a manual clock and an in-memory
history store; tickers are disabled so ticks are driven explicitly.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from common.clock import ManualClock
from common.config import AlarmSettings
from decision.models import Decision, OperatingMode
from notifications.models import DeliveryChannel, DeliveryRecord
from providers import load_providers
from providers.fake_providers import InMemoryHistoryStore
from server import create_app

START_BODY = {
    "target_id": "shinjuku",
    "station_name": "Shinjuku",
    "latitude": 35.6896,
    "longitude": 139.7006,
    "leg_id": "leg-1",
    "scheduled_arrival": "2026-01-20T08:04:00+00:00",
}


@pytest.fixture
def history():
    return InMemoryHistoryStore()


@pytest.fixture
def client(history):
    clock = ManualClock()
    app = create_app(
        settings=AlarmSettings(),
        providers=load_providers("test", clock=clock),
        clock=clock,
        history=history,
        run_tickers=False,
    )
    with TestClient(app) as test_client:
        yield test_client


class TestWithoutSession:
    """Test endpoints before monitoring starts."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "mode": "test", "monitoring": False}

    def test_status_idle(self, client):
        assert client.get("/api/monitoring/status").json() == {"running": False, "target": None}
        assert client.get("/api/decisions").json() == []

    @pytest.mark.parametrize(
        "path,body",
        [
            ("/api/monitoring/stop", None),
            ("/api/monitoring/tick", None),
            ("/api/stops/crossing", {"stop_id": "a", "stop_name": "A"}),
            ("/api/fallback/dismiss", None),
        ],
    )
    def test_session_required(self, client, path, body):
        response = client.post(path, json=body)
        assert response.status_code == 409

    def test_position_accepted_without_session(self, client):
        response = client.post("/api/positions", json={"latitude": 35.0, "longitude": 139.0, "accuracy_meters": 10})
        assert response.json() == {"accepted": True, "fallback": None}

    def test_negative_accuracy_rejected(self, client):
        response = client.post("/api/positions", json={"latitude": 35.0, "longitude": 139.0, "accuracy_meters": -1})
        assert response.status_code == 422

    def test_unknown_delivery(self, client):
        assert client.get("/api/deliveries/nope").status_code == 404


class TestMonitoringFlow:
    """Test a full monitoring session through the API."""

    def test_start_tick_and_stop(self, client, history):
        status = client.post("/api/monitoring/start", json=START_BODY).json()
        assert status["running"] is True
        assert status["target"]["station_name"] == "Shinjuku"
        approach_event_id = status["target"]["approach_event_id"]

        decision = client.post("/api/monitoring/tick").json()
        assert decision["should_notify"] is True
        assert decision["mode"] == "degraded"
        assert decision["approach_event_id"] == approach_event_id

        repeat = client.post("/api/monitoring/tick").json()
        assert repeat["should_notify"] is False
        assert len(client.get("/api/decisions").json()) == 2
        assert len(client.get("/api/decisions?limit=1").json()) == 1
        assert len(history.decisions) == 2

        record = client.get(f"/api/deliveries/arrival_shinjuku_{approach_event_id}")
        assert record.status_code == 200
        assert record.json()["notification_id"] == f"arrival_shinjuku_{approach_event_id}"

        stopped = client.post("/api/monitoring/stop").json()
        assert stopped["running"] is False
        assert client.get("/api/health").json()["monitoring"] is False

    def test_position_and_fallback_controls(self, client):
        client.post("/api/monitoring/start", json=START_BODY)

        pushed = client.post("/api/positions", json={"latitude": 35.68, "longitude": 139.70, "accuracy_meters": 12})
        assert pushed.json()["fallback"]["active"] is False
        assert pushed.json()["fallback"]["last_good_position"]["latitude"] == 35.68

        crossing = client.post("/api/stops/crossing", json={"stop_id": "yoyogi", "stop_name": "Yoyogi"})
        assert crossing.status_code == 200
        assert crossing.json()["health"] == "normal"

        missing = client.post("/api/fallback/manual", json={"stop_id": "yoyogi"})
        assert missing.status_code == 400

        confirmed = client.post(
            "/api/fallback/manual",
            json={"stop_id": "yoyogi", "stop_name": "Yoyogi", "latitude": 35.683, "longitude": 139.702},
        )
        assert confirmed.status_code == 200
        cleared = client.post("/api/fallback/manual", json={"clear": True})
        assert cleared.status_code == 200

        dismissed = client.post("/api/fallback/dismiss").json()
        assert dismissed["active"] is False

    def test_statistics(self, client):
        client.post("/api/monitoring/start", json=START_BODY)
        client.post("/api/monitoring/tick")
        stats = client.get("/api/deliveries/statistics").json()
        assert "delivery_rate" in stats
        assert set(stats["channels"]) == {
            "system_notification", "local_sound", "haptic", "visual_banner", "badge"
        }


class TestSnoozePlan:
    """Test the snooze plan endpoint."""

    def test_plan(self, client):
        response = client.post(
            "/api/snooze/plan",
            json={"alert_id": "a1", "station_name": "Shibuya", "snooze_start_stations": 3, "current_station_count": 5},
        )
        assert response.status_code == 200
        planned = response.json()
        assert [p["notification_id"] for p in planned] == [
            "snooze_a1_3stations",
            "snooze_a1_2stations",
            "snooze_a1_1stations",
        ]
        assert [p["fire_after_minutes"] for p in planned] == [4, 6, 8]
        assert [p["critical"] for p in planned] == [False, False, True]
        assert planned[-1]["data"] == {
            "type": "snooze",
            "alertId": "a1",
            "stationName": "Shibuya",
            "stationsRemaining": "1",
        }

    def test_out_of_range(self, client):
        response = client.post(
            "/api/snooze/plan",
            json={"alert_id": "a1", "station_name": "Shibuya", "snooze_start_stations": 11, "current_station_count": 5},
        )
        assert response.status_code == 400


NOW = datetime(2026, 1, 20, 8, 0, 0, tzinfo=timezone.utc)


def stored_record(notification_id, created_at):
    return DeliveryRecord(
        notification_id=notification_id,
        created_at=created_at,
        required_channels=frozenset({DeliveryChannel.SYSTEM_NOTIFICATION}),
        fallback_channels=(),
        completed=True,
    )


def stored_decision(produced_at, approach_event_id="a-1"):
    return Decision(
        should_notify=True,
        mode=OperatingMode.TIME_ONLY,
        confidence=0.8,
        estimated_time_to_arrival=240.0,
        distance_to_target=None,
        reason="Arrival within lead time",
        produced_at=produced_at,
        target_id="shinjuku",
        approach_event_id=approach_event_id,
    )


class TestHistoryRoutes:
    """Test delivery history queries and retention."""

    def test_recent_deliveries(self, client, history):
        history.record_delivery(stored_record("n1", NOW - timedelta(hours=2)))
        history.record_delivery(stored_record("n2", NOW - timedelta(minutes=30)))
        history.record_delivery(stored_record("stale", NOW - timedelta(hours=30)))

        ids = [d["notification_id"] for d in client.get("/api/deliveries").json()]
        assert ids == ["n2", "n1"]
        assert [d["notification_id"] for d in client.get("/api/deliveries?limit=1").json()] == ["n2"]
        assert [d["notification_id"] for d in client.get("/api/deliveries?hours=1").json()] == ["n2"]

    def test_history_unavailable(self, client, history):
        history.fail = True
        assert client.get("/api/deliveries").status_code == 503

    def test_start_drops_expired_history(self, client, history):
        history.record_decision(stored_decision(NOW - timedelta(hours=30)))
        history.record_delivery(stored_record("stale", NOW - timedelta(hours=30)))
        history.record_delivery(stored_record("fresh", NOW - timedelta(hours=1)))

        client.post("/api/monitoring/start", json=START_BODY)

        assert "stale" not in history.deliveries
        assert "fresh" in history.deliveries
        assert history.decisions == []

    def test_resumed_approach_not_notified_again(self, client, history):
        history.record_decision(stored_decision(NOW - timedelta(minutes=5), approach_event_id="resume-1"))

        status = client.post("/api/monitoring/start", json={**START_BODY, "approach_event_id": "resume-1"}).json()
        assert status["target"]["approach_event_id"] == "resume-1"

        decision = client.post("/api/monitoring/tick").json()
        assert decision["should_notify"] is False
        assert decision["reason"].startswith("Already notified for this approach")
