"""REST API and WebSocket channel on simulated readers."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import ADMIN_KEY

from fpservice.webserver import auth, server, websocket

ADMIN = {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "DB_PATH", tmp_path / "service.db")
    auth._rate_limit_storage.clear()
    auth.invalidate_key_cache()
    with TestClient(server.app) as test_client:
        yield test_client


def create_key(client, scopes, name="endpoint"):
    response = client.post("/api/admin/api-keys", json={"name": name, "scopes": scopes}, headers=ADMIN)
    assert response.status_code == 201
    return response.json()


def touch(client, device_id, finger, count=1, quality=90):
    response = client.post(f"/api/devices/{device_id}/simulate/touch",
                           json={"fingerId": finger, "quality": quality, "count": count},
                           headers=ADMIN)
    assert response.status_code == 200
    return response.json()


def enroll(client, user_id, finger, device_id="sim-1"):
    touch(client, device_id, finger, count=3)
    return client.post("/api/enroll", json={"deviceId": device_id, "userId": user_id}, headers=ADMIN)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["devices"] == 2
    assert data["active_sessions"] == 0


class TestAuth:

    def test_missing_key(self, client):
        response = client.get("/api/devices")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == 4001
        assert body["error"]["name"] == "UNAUTHORIZED"

    def test_invalid_key(self, client):
        response = client.get("/api/devices", headers={"X-API-Key": "fp_not_a_real_key"})
        assert response.status_code == 401

    def test_repeated_bad_keys_are_rate_limited(self, client):
        statuses = [client.get("/api/devices", headers={"X-API-Key": "fp_wrong"}).status_code
                    for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

    def test_missing_scope(self, client):
        key = create_key(client, ["device:read"])
        headers = {"X-API-Key": key["apiKey"]}

        assert client.get("/api/devices", headers=headers).status_code == 200

        response = client.post("/api/verify", json={"deviceId": "sim-1", "userId": "alice"}, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == 4002
        assert response.json()["error"]["details"]["required"] == "verify"

        assert client.get("/api/admin/stats", headers=headers).status_code == 403

    def test_unknown_scope_rejected(self, client):
        response = client.post("/api/admin/api-keys", json={"name": "x", "scopes": ["everything"]},
                               headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == 5004

    def test_revoked_key_stops_working(self, client):
        key = create_key(client, ["device:read"])
        headers = {"X-API-Key": key["apiKey"]}
        assert client.get("/api/devices", headers=headers).status_code == 200

        response = client.delete(f"/api/admin/api-keys/{key['id']}", headers=ADMIN)
        assert response.status_code == 200
        assert client.get("/api/devices", headers=headers).status_code == 401

        assert client.delete(f"/api/admin/api-keys/{key['id']}", headers=ADMIN).status_code == 404

    def test_list_keys_hides_secrets(self, client):
        key = create_key(client, ["scan"])
        keys = client.get("/api/admin/api-keys", headers=ADMIN).json()["keys"]
        assert {k["name"] for k in keys} == {"admin", "endpoint"}
        assert key["apiKey"] not in str(keys)


class TestDevices:

    def test_list_devices(self, client):
        data = client.get("/api/devices", headers=ADMIN).json()
        assert data["total"] == 2
        assert [d["deviceId"] for d in data["devices"]] == ["sim-1", "sim-2"]
        assert data["devices"][0]["state"] == "connected"
        assert data["devices"][0]["capabilities"]["resolutionDpi"] == 500

    def test_unknown_device(self, client):
        response = client.get("/api/devices/sim-9", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == 1001

    def test_touch_queues_fingers(self, client):
        assert touch(client, "sim-2", "alice", count=3)["pendingTouches"] == 3

    def test_unplug_and_plug(self, client):
        response = client.post("/api/devices/sim-2/simulate/unplug", headers=ADMIN)
        assert response.json()["device"]["state"] == "disconnected"

        response = client.post("/api/identify", json={"deviceId": "sim-2"}, headers=ADMIN)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == 1003

        response = client.post("/api/devices/sim-2/simulate/plug", headers=ADMIN)
        assert response.json()["device"]["state"] == "connected"


class TestFingerprintOperations:

    def test_enroll_verify_identify(self, client):
        response = enroll(client, "alice", "finger-alice")
        assert response.status_code == 200
        enrollment = response.json()["enrollment"]
        assert enrollment["userId"] == "alice"
        assert enrollment["scansCompleted"] == 3
        assert enrollment["quality"] <= max(enrollment["sourceQualities"])
        assert "template" not in enrollment

        user = client.get("/api/users/alice", headers=ADMIN).json()
        assert user["userId"] == "alice"
        assert user["templateSize"] > 0

        touch(client, "sim-1", "finger-alice")
        response = client.post("/api/verify", json={"deviceId": "sim-1", "userId": "alice"}, headers=ADMIN)
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["match"] is True
        assert result["threshold"] == 70.0

        touch(client, "sim-1", "finger-alice")
        response = client.post("/api/identify", json={"deviceId": "sim-1", "threshold": 60}, headers=ADMIN)
        result = response.json()["result"]
        assert result["match"] is True
        assert result["userId"] == "alice"
        assert result["candidatesChecked"] == 1

    def test_enroll_twice_conflicts(self, client):
        assert enroll(client, "bob", "finger-bob").status_code == 200

        response = client.post("/api/enroll", json={"deviceId": "sim-1", "userId": "bob"}, headers=ADMIN)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == 3002

    def test_verify_unknown_user(self, client):
        response = client.post("/api/verify", json={"deviceId": "sim-1", "userId": "ghost"}, headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == 3001

    def test_no_finger_times_out(self, client):
        response = client.post("/api/identify", json={"deviceId": "sim-1", "timeoutMs": 50}, headers=ADMIN)
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == 2002
        assert error["retryable"] is True

    def test_validation_error(self, client):
        response = client.post("/api/identify", json={"deviceId": "sim-1", "threshold": 150}, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == 5004

    def test_unknown_security_level(self, client):
        response = client.post("/api/identify", json={"deviceId": "sim-1", "securityLevel": "paranoid"},
                               headers=ADMIN)
        assert response.status_code == 400

    def test_scan_session_busy_and_stop(self, client):
        body = {"purpose": "identify", "deviceId": "sim-2", "timeoutMs": 10000}
        response = client.post("/api/scan/start", json=body, headers=ADMIN)
        assert response.status_code == 202
        session = response.json()["session"]
        assert session["purpose"] == "identify"

        busy = client.post("/api/scan/start", json=body, headers=ADMIN)
        assert busy.status_code == 409
        assert busy.json()["error"]["code"] == 1002

        stopped = client.post(f"/api/scan/{session['sessionId']}/stop", headers=ADMIN).json()
        assert stopped["stopped"] is True
        assert stopped["session"]["state"] == "stopped"

        again = client.post(f"/api/scan/{session['sessionId']}/stop", headers=ADMIN).json()
        assert again["stopped"] is False

        status = client.get(f"/api/scan/{session['sessionId']}", headers=ADMIN).json()
        assert status["session"]["state"] == "stopped"

    def test_unknown_session(self, client):
        response = client.get("/api/scan/nope", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == 5003

    def test_scan_start_requires_purpose_scope(self, client):
        key = create_key(client, ["scan", "identify"])
        response = client.post("/api/scan/start",
                               json={"purpose": "enroll", "deviceId": "sim-1", "userId": "eve"},
                               headers={"X-API-Key": key["apiKey"]})
        assert response.status_code == 403


class TestUsersAndAdmin:

    def test_list_and_delete_users(self, client):
        enroll(client, "carol", "finger-carol")

        users = client.get("/api/users", headers=ADMIN).json()
        assert users["total"] == 1
        assert users["users"][0]["userId"] == "carol"

        response = client.delete("/api/users/carol", headers=ADMIN)
        assert response.status_code == 200
        assert client.get("/api/users/carol", headers=ADMIN).status_code == 404
        assert client.delete("/api/users/carol", headers=ADMIN).status_code == 404

    def test_stats_and_audit(self, client):
        enroll(client, "dave", "finger-dave")

        stats = client.get("/api/admin/stats", headers=ADMIN).json()
        assert stats["num_users"] == 1
        assert stats["devices"] == 2
        assert stats["num_api_keys"] == 1

        logs = client.get("/api/admin/audit", headers=ADMIN).json()["logs"]
        assert any(entry["action"] == "FINGERPRINT_ENROLLED" for entry in logs)

    def test_sessions_listing(self, client):
        client.post("/api/identify", json={"deviceId": "sim-1", "timeoutMs": 50}, headers=ADMIN)
        sessions = client.get("/api/admin/sessions", headers=ADMIN).json()
        assert sessions["total"] == 1
        assert sessions["sessions"][0]["state"] == "timeout"


class TestWebSocket:

    def test_rejects_missing_key(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 4401

    def test_scan_over_websocket(self, client):
        touch(client, "sim-1", "finger-erin", count=3)

        with client.websocket_connect(f"/ws?api_key={ADMIN_KEY}") as ws:
            ws.send_json({"type": "scan:start", "purpose": "enroll", "deviceId": "sim-1", "userId": "erin"})

            session_id = None
            received = []
            for _ in range(200):
                message = ws.receive_json()
                if message["type"] == "ack":
                    session_id = message["session"]["sessionId"]
                    continue
                received.append(message)
                if message["type"] == "scan:complete":
                    break

        assert session_id is not None
        session_events = [m for m in received if m["sessionId"] == session_id]
        types = [m["type"] for m in session_events]
        assert types[0] == "scan:started"
        assert types[-1] == "scan:complete"
        assert "scan:quality" in types
        sequences = [m["sequence"] for m in session_events]
        assert sequences == sorted(sequences)
        assert session_events[-1]["data"]["result"]["userId"] == "erin"

        assert client.get("/api/users/erin", headers=ADMIN).status_code == 200

    def test_bad_messages_get_error_replies(self, client):
        with client.websocket_connect("/ws", headers=ADMIN) as ws:
            ws.send_text("not json")
            assert ws.receive_json()["error"]["code"] == 5004

            ws.send_json({"type": "subscribe"})
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert reply["request"] == "subscribe"

            ws.send_json({"type": "subscribe", "sessionId": "abc"})
            assert ws.receive_json() == {"type": "ack", "request": "subscribe", "sessionId": "abc"}

            ws.send_json({"type": "scan:stop", "sessionId": "missing"})
            assert ws.receive_json()["error"]["code"] == 5003

            ws.send_json({"type": "dance"})
            assert ws.receive_json()["error"]["code"] == 5004


def test_outbox_drops_client_that_falls_behind():
    async def fill():
        outbox = websocket.Outbox(maxsize=2)
        accepted = [outbox.offer({"sequence": n}) for n in range(1, 5)]
        return outbox, accepted

    outbox, accepted = asyncio.run(fill())

    assert accepted == [True, True, False, False]
    assert outbox.overflowed.is_set()
    assert outbox.dropped == 2
    assert outbox.queue.qsize() == 2
    assert outbox.queue.get_nowait() == {"sequence": 1}
