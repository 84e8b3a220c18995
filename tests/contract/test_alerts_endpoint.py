"""
Contract tests for the /alerts and /notifications endpoints.

Alerts are listed newest first, filterable by room, status and severity, and
move open -> acknowledged -> resolved through operator actions.
"""
import pytest

from .test_readings_endpoint import reading_payload


def raise_alert(client, temperature=32, sensor_id="sensor-1", timestamp="2024-05-01T12:00:00"):
    response = client.post(
        "/readings",
        json=reading_payload(temperature, 50, timestamp=timestamp, sensor_id=sensor_id)
    )
    return response.json()["created"][0]


@pytest.mark.contract
def test_alerts_endpoint_returns_valid_schema(api_client):
    raise_alert(api_client)

    response = api_client.get("/alerts")

    assert response.status_code == 200
    data = response.json()
    assert data["total_count"] == 1
    assert data["open_count"] == 1

    for alert in data["alerts"]:
        for field in ("id", "room_id", "room_name", "alert_type", "severity",
                      "message", "triggered_at", "status"):
            assert field in alert


@pytest.mark.contract
def test_alerts_empty(api_client):
    data = api_client.get("/alerts").json()

    assert data == {"total_count": 0, "open_count": 0, "alerts": []}


@pytest.mark.contract
def test_alerts_filtering(api_client):
    high = raise_alert(api_client, 32, sensor_id="sensor-1")
    critical = raise_alert(api_client, 37, sensor_id="sensor-2")

    by_severity = api_client.get("/alerts", params={"severity": "critical"}).json()
    assert [a["id"] for a in by_severity["alerts"]] == [critical["id"]]

    api_client.post(f"/alerts/{high['id']}/resolve")
    by_status = api_client.get("/alerts", params={"status": "open"}).json()
    assert [a["id"] for a in by_status["alerts"]] == [critical["id"]]

    other_room = api_client.get("/alerts", params={"room_id": "room-999"}).json()
    assert other_room["alerts"] == []

    limited = api_client.get("/alerts", params={"limit": 1}).json()
    assert limited["total_count"] == 1


@pytest.mark.contract
@pytest.mark.parametrize("params", [
    {"limit": 0},
    {"limit": 1001},
    {"severity": "catastrophic"},
    {"status": "snoozed"},
])
def test_alerts_invalid_query(api_client, params):
    assert api_client.get("/alerts", params=params).status_code == 422


@pytest.mark.contract
def test_get_alert_by_id(api_client):
    alert = raise_alert(api_client)

    response = api_client.get(f"/alerts/{alert['id']}")

    assert response.status_code == 200
    assert response.json()["id"] == alert["id"]


@pytest.mark.contract
def test_get_unknown_alert(api_client):
    response = api_client.get("/alerts/not-an-alert")

    assert response.status_code == 404
    assert "not-an-alert" in response.json()["detail"]


@pytest.mark.contract
def test_acknowledge_alert(api_client):
    alert = raise_alert(api_client)

    response = api_client.post(f"/alerts/{alert['id']}/acknowledge", json={"userId": "operator-7"})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "acknowledged"
    assert data["acknowledged_by"] == "operator-7"
    assert data["acknowledged_at"] is not None
    assert api_client.get("/alerts").json()["open_count"] == 0


@pytest.mark.contract
def test_acknowledge_without_body(api_client):
    alert = raise_alert(api_client)

    response = api_client.post(f"/alerts/{alert['id']}/acknowledge")

    assert response.status_code == 200
    assert response.json()["acknowledged_by"] is None


@pytest.mark.contract
def test_resolve_alert(api_client):
    alert = raise_alert(api_client)

    response = api_client.post(f"/alerts/{alert['id']}/resolve")

    assert response.status_code == 200
    assert response.json()["status"] == "resolved"
    assert response.json()["resolved_at"] is not None


@pytest.mark.contract
def test_resolved_alert_cannot_change(api_client):
    alert = raise_alert(api_client)
    api_client.post(f"/alerts/{alert['id']}/resolve")

    assert api_client.post(f"/alerts/{alert['id']}/resolve").status_code == 409
    assert api_client.post(f"/alerts/{alert['id']}/acknowledge").status_code == 409


@pytest.mark.contract
@pytest.mark.parametrize("action", ["acknowledge", "resolve"])
def test_operator_action_on_unknown_alert(api_client, action):
    assert api_client.post(f"/alerts/missing/{action}").status_code == 404


@pytest.mark.contract
def test_create_notification(api_client):
    response = api_client.post("/notifications", json={"message": "Fire drill at 15:00", "severity": "medium"})

    assert response.status_code == 201
    data = response.json()
    assert data["alert_type"] == "system_notification"
    assert data["severity"] == "medium"
    assert data["room_id"] == "system"
    assert data["room_name"] == "System-Wide"
    assert data["sensor_id"] is None

    assert api_client.get(f"/alerts/{data['id']}").status_code == 200


@pytest.mark.contract
def test_create_notification_for_room(api_client):
    response = api_client.post("/notifications", json={
        "message": "Door left open",
        "roomId": "room-101",
        "roomName": "Lab",
    })

    assert response.status_code == 201
    assert response.json()["room_id"] == "room-101"
    assert response.json()["severity"] == "info"


@pytest.mark.contract
@pytest.mark.parametrize("payload", [
    {"message": "   "},
    {"message": "ok", "roomId": ""},
    {},
    {"message": "ok", "severity": "urgent"},
])
def test_create_notification_rejects_invalid(api_client, payload):
    assert api_client.post("/notifications", json=payload).status_code == 422
