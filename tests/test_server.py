"""
Tests for the FastAPI bridge (HTTP publish/health/stats and the WebSocket protocol).
"""
import pytest
from fastapi.testclient import TestClient

import server
from redis_pubsub.registry import SubscriptionRegistry


@pytest.fixture
def client(transport, monkeypatch):
    monkeypatch.delenv("API_KEY", raising=False)
    monkeypatch.setenv("HEARTBEAT_INTERVAL_SEC", "0")
    server.app.state.pubsub = SubscriptionRegistry(transport)
    with TestClient(server.app) as test_client:
        yield test_client
    server.app.state.pubsub = None


def _subscribe(ws, triggers, request_id="r1"):
    ws.send_json({"type": "subscribe", "triggers": triggers, "request_id": request_id})
    ack = ws.receive_json()
    assert ack["type"] == "ack"
    return ack["subscription"]


class TestHttp:
    """Health, stats and publish endpoints."""

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["channels"] == 0
        assert body["subscriptions"] == 0

    def test_publish(self, client, transport):
        response = client.post("/api/v1/publish", json={"trigger": "news", "payload": {"a": 1}})

        assert response.status_code == 200
        assert response.json() == {"trigger": "news", "receivers": 0, "status": "published"}
        assert transport.published == [("news", '{"a": 1}')]

    def test_publish_requires_trigger(self, client):
        response = client.post("/api/v1/publish", json={"trigger": "  ", "payload": 1})

        assert response.status_code == 400

    def test_stats(self, client):
        client.post("/api/v1/publish", json={"trigger": "news", "payload": 1})

        body = client.get("/api/v1/stats").json()

        assert body["counters"]["messages_published"] == 1

    def test_api_key_enforced_when_set(self, client, monkeypatch):
        monkeypatch.setenv("API_KEY", "secret")

        assert client.get("/api/v1/health").status_code == 401
        response = client.get("/api/v1/health", headers={"X-API-Key": "secret"})
        assert response.status_code == 200


class TestWebSocket:
    """Streaming triggers to WebSocket clients."""

    def test_ping(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "ping", "request_id": "p1"})

            assert ws.receive_json()["type"] == "pong"

    def test_subscribe_streams_published_events(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            key = _subscribe(ws, ["news"])

            client.post("/api/v1/publish", json={"trigger": "news", "payload": {"a": 1}})
            event = ws.receive_json()

            assert event["type"] == "event"
            assert event["subscription"] == key
            assert event["payload"] == {"a": 1}

    def test_publish_over_websocket(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            _subscribe(ws, "news")

            ws.send_json({"type": "publish", "trigger": "news", "payload": "hi", "request_id": "p"})
            frames = [ws.receive_json(), ws.receive_json()]

            by_type = {f["type"]: f for f in frames}
            assert by_type["ack"]["receivers"] == 1
            assert by_type["event"]["payload"] == "hi"

    def test_unsubscribe(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            key = _subscribe(ws, ["news", "sports"])
            assert server.app.state.pubsub.subscription_count == 2

            ws.send_json({"type": "unsubscribe", "subscription": key, "request_id": "u1"})
            ack = ws.receive_json()

            assert ack["type"] == "ack"
            assert ack["subscription"] == key
            assert server.app.state.pubsub.subscription_count == 0

    def test_unsubscribe_unknown(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "unsubscribe", "subscription": "sub_nope"})
            error = ws.receive_json()

            assert error["type"] == "error"
            assert error["error"]["code"] == "UNKNOWN_SUBSCRIPTION"

    def test_subscribe_failure(self, client, transport):
        transport.fail_subscribe = ConnectionError("refused")
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "subscribe", "trigger": "news"})
            error = ws.receive_json()

            assert error["error"]["code"] == "TRANSPORT_ERROR"

    def test_bad_requests(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["error"]["code"] == "BAD_REQUEST"

            ws.send_json({"type": "subscribe", "triggers": []})
            assert ws.receive_json()["error"]["code"] == "BAD_REQUEST"

            ws.send_json({"type": "teleport"})
            assert ws.receive_json()["error"]["code"] == "BAD_REQUEST"

    def test_disconnect_releases_subscriptions(self, client, transport):
        with client.websocket_connect("/api/v1/ws") as ws:
            _subscribe(ws, ["news"])
            ws.send_json({"type": "ping", "request_id": "sync"})
            ws.receive_json()

        assert server.app.state.pubsub.subscription_count == 0
