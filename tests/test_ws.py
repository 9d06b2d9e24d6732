import pytest
from mongomock_motor import AsyncMongoMockClient
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.utils.auth import create_access_token
from conftest import auth_headers, seed_database
from main import create_app

SOCKET_URL = "/api/ws/notifications"


@pytest.fixture
def live_client():
    db = AsyncMongoMockClient()["examdesk_ws"]
    app = create_app(database=db)
    with TestClient(app) as tc:
        tc.portal.call(seed_database, db)
        yield tc


def test_app_starts_and_serves_health(live_client):
    health = live_client.get("/health")
    version = live_client.get("/api/version")

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert version.status_code == 200


def socket_url(user_id, role):
    return f"{SOCKET_URL}?token={create_access_token(user_id, role)}"


def test_socket_rejects_missing_or_bad_tokens(live_client):
    with pytest.raises(WebSocketDisconnect):
        with live_client.websocket_connect(SOCKET_URL):
            pass
    with pytest.raises(WebSocketDisconnect):
        with live_client.websocket_connect(f"{SOCKET_URL}?token=garbage"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with live_client.websocket_connect(socket_url("T3", "TEACHER")):
            pass


def test_ping_pong_and_session_tracking(live_client):
    with live_client.websocket_connect(socket_url("T1", "TEACHER")) as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
        assert live_client.get("/health").json()["live_sessions"] == 1

        registry = live_client.app.state.registry
        assert registry.connection_count("T1") == 1
        assert registry.admin_connection_count("A1") == 1


def test_reported_incident_reaches_connected_admin(live_client):
    with live_client.websocket_connect(socket_url("A1", "ADMIN")) as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"

        response = live_client.post("/api/incidents", headers=auth_headers("T1", "TEACHER"), json={
            "exam_id": "E1", "student_id": "S2", "type": "ABSENT", "reason": "Not present at roll call",
        })
        assert response.status_code == 201

        message = ws.receive_json()
        assert message["event"] == "notification"
        assert message["data"]["type"] == "ABSENT_STUDENT"
        assert message["data"]["related_entity_id"] == response.json()["data"]["incident_id"]
