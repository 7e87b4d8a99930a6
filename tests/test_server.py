"""
Tests for the HTTP and WebSocket endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from server.app import app, metrics


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


class TestHttp:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert "active_connections" in body

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        body = response.json()
        for key in ("total_connections", "active_connections", "flows_started", "unsupported_clients", "bad_messages"):
            assert key in body


class TestWebSocket:
    def test_hello_gets_ready(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "hello", "locale": "mr-IN", "route": "/register", "capabilities": {"recognition": True}})
            message = ws.receive_json()

        assert message["type"] == "ready"
        assert message["locale"] == "mr"
        assert message["recognition_supported"] is True

    def test_unsupported_client_is_counted(self, client):
        before = metrics.unsupported_clients
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "hello", "capabilities": {"recognition": False}})
            assert ws.receive_json()["type"] == "ready"
            unsupported = ws.receive_json()

        assert unsupported["type"] == "unsupported"
        assert unsupported["capability"] == "recognition"
        assert metrics.unsupported_clients == before + 1

    def test_bad_message_keeps_connection(self, client):
        before = metrics.bad_messages
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            ws.send_json({"type": "hello", "capabilities": {"recognition": True}})
            assert ws.receive_json()["type"] == "ready"

        assert metrics.bad_messages == before + 1

    def test_connection_counters(self, client):
        before = metrics.total_connections
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "hello", "capabilities": {"recognition": True}})
            ws.receive_json()
        assert metrics.total_connections == before + 1
