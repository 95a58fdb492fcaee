from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from src.api.main import STATE, app


@pytest.fixture
def client():
    """AIなしモードで起動したテストクライアント"""
    with (
        patch("src.api.main.create_inference_client", return_value=None),
        TestClient(app) as test_client,
    ):
        yield test_client


@pytest.fixture
def session_id(client):
    response = client.post("/sessions", json={"session_id": "sess-api"})
    assert response.status_code == 200
    return "sess-api"


class TestSessionEndpoints:
    """セッションAPIのテスト"""

    def test_start_session_generates_id(self, client):
        response = client.post("/sessions", json={})

        assert response.status_code == 200
        session = response.json()["session"]
        assert session["id"].startswith("sess_")
        assert session["status"] == "active"

    def test_get_session(self, client, session_id):
        response = client.get(f"/sessions/{session_id}")

        assert response.status_code == 200
        assert response.json()["activity_count"] == 0

    def test_unknown_session_is_404(self, client):
        assert client.get("/sessions/missing").status_code == 404
        assert client.post("/sessions/missing/end").status_code == 404
        assert client.get("/sessions/missing/analysis").status_code == 404

    def test_end_session(self, client, session_id):
        response = client.post(f"/sessions/{session_id}/end")

        assert response.status_code == 200
        session = response.json()["session"]
        assert session["status"] == "completed"
        assert session["focus_score"] is not None

    def test_analysis(self, client, session_id):
        for _ in range(8):
            client.post(
                "/events",
                json={
                    "session_id": session_id,
                    "event_type": "tab_switch",
                    "url": "https://reddit.com/r/all?sort=hot",
                },
            )

        body = client.get(f"/sessions/{session_id}/analysis").json()

        assert [p["type"] for p in body["patterns"]][:2] == [
            "context_switching",
            "social_media_spiral",
        ]
        assert set(body["focus_score"]) >= {"overall", "site_focus"}
        assert body["summary"]["tab_switch_count"] == 8

    def test_insights_require_activities(self, client, session_id):
        response = client.get(f"/sessions/{session_id}/insights")

        assert response.status_code == 400

    def test_insights_with_comparison(self, client, session_id):
        client.post(
            "/events",
            json={"session_id": session_id, "event_type": "typing", "typing_velocity": 45},
        )
        client.post(f"/sessions/{session_id}/end")

        response = client.get(f"/sessions/{session_id}/insights", params={"compare": True})

        assert response.status_code == 200
        body = response.json()
        assert body["ai_generated"] is False
        assert body["insights"]["summary"].startswith("Session completed")
        assert body["comparison"] == "Not enough historical data for comparison"


class TestEventEndpoint:
    """イベント取り込みAPIのテスト"""

    def test_ingest_sanitizes_url(self, client, session_id):
        response = client.post(
            "/events",
            json={
                "session_id": session_id,
                "event_type": "url_change",
                "url": "https://github.com/org/repo/issues?q=secret#frag",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["url"] == "https://github.com/org/repo/issues"
        assert body["site"] == "productive"
        stored = STATE["activities"].find_by_session_id(session_id)
        assert stored[0].url == "https://github.com/org/repo/issues"

    def test_nested_metadata(self, client, session_id):
        response = client.post(
            "/events",
            json={
                "session_id": session_id,
                "event_type": "tab_activated",
                "metadata": {"tab": {"index": 2, "pinned": False}, "tags": ["work", None]},
            },
        )

        assert response.status_code == 200
        stored = STATE["activities"].find_by_session_id(session_id)
        assert stored[0].metadata == {
            "tab": {"index": 2, "pinned": False},
            "tags": ["work", None],
        }

    def test_unknown_session(self, client):
        response = client.post(
            "/events", json={"session_id": "missing", "event_type": "typing"}
        )
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "payload",
        [
            {"session_id": "sess-api", "event_type": "scrolling"},
            {"session_id": " ", "event_type": "typing"},
            {"session_id": "sess-api", "event_type": "idle_end", "idle_duration": -1},
        ],
    )
    def test_invalid_payload(self, client, session_id, payload):
        assert client.post("/events", json=payload).status_code == 422


class TestMonitoringEndpoints:
    """ヘルスチェック・モニタリングのテスト"""

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["ai_enabled"] is False
        assert body["rate_limit"] is None
        assert body["uptime"] >= 0

    def test_status(self, client):
        body = client.get("/status").json()

        assert body["ai_enabled"] is False
        assert body["connections"]["total_connections"] == 0

    def test_monitoring_data(self, client, session_id):
        body = client.get("/api/monitoring_data").json()

        assert any("Session started: sess-api" in line for line in body["logs"])
        assert body["deliveries"][-1]["event"] == "session:update"


class TestSessionSocket:
    """WebSocketのテスト"""

    def test_intervention_is_pushed(self, client, session_id):
        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            assert websocket.receive_json()["event"] == "session:subscribed"

            websocket.send_json(
                {"event": "activity:log", "data": {"event_type": "idle_end", "idle_duration": 400}}
            )
            message = websocket.receive_json()

        assert message["event"] == "intervention:send"
        assert message["data"]["pattern_type"] == "extended_idle"
        assert message["data"]["priority"] == "medium"

    def test_unknown_event(self, client, session_id):
        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"event": "dance"})

            message = websocket.receive_json()

        assert message == {"event": "error", "data": {"message": "Unknown event: dance"}}

    def test_invalid_activity(self, client, session_id):
        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"event": "activity:log", "data": {"event_type": "nope"}})

            message = websocket.receive_json()

        assert message["event"] == "error"
        assert message["data"]["message"] == "Invalid activity payload"

    def test_non_object_activity_data(self, client, session_id):
        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"event": "activity:log", "data": ["typing"]})

            message = websocket.receive_json()

        assert message == {"event": "error", "data": {"message": "Invalid activity payload"}}

    def test_ended_session_gets_no_intervention(self, client, session_id):
        client.post(f"/sessions/{session_id}/end")

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json(
                {"event": "activity:log", "data": {"event_type": "idle_end", "idle_duration": 400}}
            )
            websocket.send_json({"event": "dance"})

            events = []
            while not events or events[-1] != "error":
                events.append(websocket.receive_json()["event"])

        assert "intervention:send" not in events
        assert STATE["rate_limiter"].tracked_sessions == 0
