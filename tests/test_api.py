from datetime import timedelta

from conftest import TEST_SECRET, make_doctors
from shared.auth_lib import issue_token


def start(client, headers, count=4, runner_name="R"):
    return client.post(
        "/api/queue/start",
        json={"doctors": make_doctors(count), "runnerName": runner_name},
        headers=headers,
    )


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_status_requires_bearer_token(client):
    response = client.get("/api/queue/status")
    assert response.status_code == 401
    assert "error" in response.get_json()


def test_status_rejects_bad_tokens(client):
    forged = issue_token("someone", "admin", secret="other-secret")
    expired = issue_token("someone", "admin", secret=TEST_SECRET, expires_in=timedelta(seconds=-5))
    unknown_role = issue_token("someone", "nurse", secret=TEST_SECRET)
    for token in (forged, expired, unknown_role, "not-a-jwt"):
        response = client.get("/api/queue/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


def test_idle_status_shape(client, spectator_headers):
    response = client.get("/api/queue/status", headers=spectator_headers)
    assert response.status_code == 200
    assert response.get_json() == {
        "isRunning": False,
        "currentQueueIndex": 0,
        "doctors": [],
        "currentDoctor": None,
    }


def test_end_to_end_runner_spectator_admin(client, runner_headers, spectator_headers, admin_headers):
    response = start(client, runner_headers)
    assert response.status_code == 200
    assert response.get_json()["success"] is True

    state = client.get("/api/queue/status", headers=spectator_headers).get_json()
    assert state["isRunning"] is True
    assert state["currentDoctor"]["name"] == "D1"
    assert state["runnerName"] == "R"
    assert state["runnerId"] == "runner-1"
    assert isinstance(state["elapsedTime"], int)
    assert state["lastUpdated"].endswith("Z")

    client.post("/api/queue/advance", headers=runner_headers)
    client.post("/api/queue/advance", headers=runner_headers)
    state = client.get("/api/queue/status", headers=spectator_headers).get_json()
    assert state["currentQueueIndex"] == 2
    assert state["currentDoctor"]["name"] == "D3"

    response = client.post("/api/queue/advance", headers=spectator_headers)
    assert response.status_code == 403
    assert "error" in response.get_json()
    state = client.get("/api/queue/status", headers=spectator_headers).get_json()
    assert state["currentQueueIndex"] == 2

    response = client.post("/api/queue/stop", json={}, headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["deletedCount"] == 1

    state = client.get("/api/queue/status", headers=spectator_headers).get_json()
    assert state["isRunning"] is False
    assert state["doctors"] == []


def test_start_with_too_few_doctors_is_400(client, runner_headers):
    response = start(client, runner_headers, count=3)
    assert response.status_code == 400
    assert "4" in response.get_json()["error"]


def test_start_with_malformed_participant_is_400(client, runner_headers):
    response = client.post(
        "/api/queue/start",
        json={"doctors": [{"name": "No id"}] * 4, "runnerName": "R"},
        headers=runner_headers,
    )
    assert response.status_code == 400


def test_start_over_someone_elses_queue_is_403(client, runner_headers, spectator_headers):
    start(client, runner_headers)
    response = start(client, spectator_headers, runner_name="S")
    assert response.status_code == 403


def test_retreat_wraps(client, runner_headers):
    start(client, runner_headers)
    response = client.post("/api/queue/retreat", headers=runner_headers)
    assert response.get_json()["queueStatus"]["currentQueueIndex"] == 3


def test_roster_edit_endpoint(client, runner_headers, spectator_headers):
    start(client, runner_headers, count=5)
    for _ in range(4):
        client.post("/api/queue/advance", headers=runner_headers)

    response = client.put("/api/queue/roster", json={"doctors": make_doctors(4)}, headers=spectator_headers)
    assert response.status_code == 403

    response = client.put("/api/queue/roster", json={"doctors": make_doctors(4)}, headers=runner_headers)
    assert response.status_code == 200
    assert response.get_json()["queueStatus"]["currentQueueIndex"] == 0

    response = client.put("/api/queue/roster", json={}, headers=runner_headers)
    assert response.status_code == 400


def test_legacy_status_write(client, runner_headers, spectator_headers):
    response = client.post(
        "/api/queue/status",
        json={
            "isRunning": True,
            "currentQueueIndex": 1,
            "doctors": make_doctors(4),
            "startTime": "2026-10-19T08:00:00.000Z",
            "runnerName": "R",
        },
        headers=runner_headers,
    )
    assert response.status_code == 200
    assert response.get_json()["queueStatus"]["currentQueueIndex"] == 1

    response = client.post("/api/queue/status", json={"isRunning": False}, headers=spectator_headers)
    assert response.status_code == 403

    response = client.post(
        "/api/queue/status",
        json={"isRunning": False, "currentQueueIndex": 0, "doctors": [], "runnerName": ""},
        headers=runner_headers,
    )
    body = response.get_json()
    assert body["success"] is True
    assert body["deletedCount"] == 1


def test_legacy_status_write_validates_index(client, runner_headers):
    response = client.post(
        "/api/queue/status",
        json={"isRunning": True, "currentQueueIndex": -1, "doctors": make_doctors(4), "runnerName": "R"},
        headers=runner_headers,
    )
    assert response.status_code == 400


def test_legacy_status_write_requires_is_running(client, runner_headers):
    response = client.post("/api/queue/status", data="nope", headers=runner_headers)
    assert response.status_code == 400


def test_history_and_analytics_after_stop(client, runner_headers):
    start(client, runner_headers)
    client.post("/api/queue/stop", json={"status": "completed"}, headers=runner_headers)

    history = client.get("/api/queue/history?limit=5", headers=runner_headers).get_json()
    assert history["pagination"] == {"page": 1, "limit": 5, "total": 1, "pages": 1}
    assert history["data"][0]["status"] == "completed"
    assert history["data"][0]["runnerId"] == "runner-1"

    analytics = client.get("/api/queue/analytics?period=7d", headers=runner_headers).get_json()
    assert analytics["summary"] == {"totalSessions": 1, "period": "7d"}
    assert analytics["breakdowns"]["byStatus"] == [{"status": "completed", "count": 1}]


def test_history_rejects_unknown_status(client, runner_headers):
    response = client.get("/api/queue/history?status=paused", headers=runner_headers)
    assert response.status_code == 400


def test_notify_endpoint(client, runner_headers, notifier):
    response = client.post(
        "/api/queue/notify",
        json={"type": "next", "data": {"currentQueueNumber": 2, "totalDoctors": 4}, "messageId": "abc"},
        headers=runner_headers,
    )
    assert response.status_code == 200
    assert response.get_json() == {"success": True, "messageId": "abc"}
    _, event_type, data, message_id = notifier.calls[-1]
    assert event_type == "next"
    assert data["runnerName"] == "R"
    assert message_id == "abc"


def test_notify_rejects_unknown_type(client, runner_headers):
    response = client.post("/api/queue/notify", json={"type": "pause", "data": {}}, headers=runner_headers)
    assert response.status_code == 400
