"""Test the REST API and WebSocket feed"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from config import CHUNK_SIZE
from conftest import chunked, make_file
from main import create_app
from transfer.channel import MemoryChunkTransport
from transfer.manager import SessionManager


@pytest.fixture
def client(policy):
    manager = SessionManager(transport=MemoryChunkTransport(window=16), policy=policy)
    with TestClient(create_app(manager)) as client:
        yield client


def create(client, size=3000, name="photo.png"):
    file, data = make_file(size, name=name)
    r = client.post("/api/sessions", json=file.model_dump())
    assert r.status_code == 201
    return r.json(), data


def join(client, code):
    return client.post("/api/sessions/join", json={"code": code})


class TestUpload:
    """Test session creation"""

    def test_create_session(self, client):
        body, _ = create(client)
        assert len(body["code"]) == 6
        assert body["handle"]["role"] == "sender"
        assert body["handle"]["token"]
        assert body["status"]["state"] == "pending"
        assert body["status"]["progress"] == 0.0

    @pytest.mark.parametrize("payload", [
        {"name": "a.bin", "total_size": 0, "checksum": "0" * 64},
        {"name": "a.bin", "total_size": 10, "checksum": "xyz"},
        {"name": "", "total_size": 10, "checksum": "0" * 64},
    ])
    def test_invalid_metadata(self, client, payload):
        r = client.post("/api/sessions", json=payload)
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_file"

    def test_capacity(self, client, policy):
        for i in range(policy.max_active_sessions):
            create(client, name=f"{i}.bin")
        file, _ = make_file(10)
        r = client.post("/api/sessions", json=file.model_dump())
        assert r.status_code == 503
        assert r.json()["error"] == "capacity_exhausted"

    def test_push_before_join(self, client):
        body, data = create(client)
        token = body["handle"]["token"]
        r = client.put(f"/api/sessions/{token}/chunks", content=data[:100])
        assert r.status_code == 409
        assert r.json()["error"] == "session_not_active"

    def test_oversized_chunk(self, client):
        body, _ = create(client)
        token = body["handle"]["token"]
        join(client, body["code"])
        r = client.put(f"/api/sessions/{token}/chunks", content=b"x" * (CHUNK_SIZE + 1))
        assert r.status_code == 413

    def test_wait_times_out(self, client):
        body, _ = create(client)
        token = body["handle"]["token"]
        r = client.post(f"/api/sessions/{token}/wait", params={"timeout": 0.05})
        assert r.status_code == 408


class TestDownload:
    """Test the receiver side"""

    def test_full_transfer(self, client):
        body, data = create(client, size=2500)
        sender = body["handle"]["token"]

        r = join(client, body["code"].lower())
        assert r.status_code == 200
        joined = r.json()
        receiver = joined["handle"]["token"]
        assert joined["file"]["name"] == "photo.png"
        assert joined["file"]["total_size"] == 2500
        assert joined["handle"]["role"] == "receiver"

        for chunk in chunked(data, 1000):
            r = client.put(f"/api/sessions/{sender}/chunks", content=chunk)
            assert r.status_code == 200
        # Not completed until the receiver has the bytes
        assert r.json()["state"] == "active"
        assert r.json()["progress"] < 1.0

        r = client.get(f"/api/sessions/{receiver}/download")
        assert r.status_code == 200
        assert r.content == data
        assert r.headers["x-checksum-sha256"] == joined["file"]["checksum"]
        assert "photo.png" in r.headers["content-disposition"]

        status = client.get(f"/api/sessions/{sender}").json()
        assert status["state"] == "completed"
        assert status["progress"] == 1.0

    def test_unknown_code(self, client):
        r = join(client, "ZZZZZZ")
        assert r.status_code == 404
        assert r.json()["error"] == "code_not_found"

    def test_second_join(self, client):
        body, _ = create(client)
        assert join(client, body["code"]).status_code == 200
        r = join(client, body["code"])
        assert r.status_code == 409
        assert r.json()["error"] == "session_already_joined"

    def test_download_needs_receiver_token(self, client):
        body, _ = create(client)
        join(client, body["code"])
        r = client.get(f"/api/sessions/{body['handle']['token']}/download")
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_role"


class TestAccess:
    """Test that a handle's role comes from its token"""

    def test_codes_are_not_listed(self, client):
        body, _ = create(client)
        r = client.get("/api/sessions")
        assert r.status_code != 200
        assert body["code"] not in r.text
        assert body["handle"]["session_id"] not in r.text

    def test_session_id_is_not_a_credential(self, client):
        body, _ = create(client)
        r = client.get(f"/api/sessions/{body['handle']['session_id']}")
        assert r.status_code == 404

    def test_receiver_cannot_push_chunks(self, client):
        body, data = create(client)
        receiver = join(client, body["code"]).json()["handle"]
        assert receiver["token"] != body["handle"]["token"]

        r = client.put(f"/api/sessions/{receiver['token']}/chunks", content=data[:100])
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_role"
        assert client.get(f"/api/sessions/{body['handle']['token']}").json()["state"] == "pending"

    def test_receiver_cannot_cancel_as_sender(self, client):
        body, _ = create(client)
        receiver = join(client, body["code"]).json()["handle"]

        r = client.post(f"/api/sessions/{receiver['token']}/cancel", params={"role": "sender"})
        assert r.status_code == 200
        assert r.json()["error_message"] == "Cancelled by receiver"


class TestStatus:
    """Test status queries and control"""

    def test_status_and_health(self, client):
        body, _ = create(client)
        token = body["handle"]["token"]

        r = client.get(f"/api/sessions/{token}")
        assert r.status_code == 200
        assert r.json()["code"] == body["code"]
        assert r.json()["total_size"] == 3000

        health = client.get("/api/health").json()
        assert health == {"status": "ok", "active_sessions": 1}

    def test_unknown_session(self, client):
        r = client.get("/api/sessions/nope")
        assert r.status_code == 404
        assert r.json()["error"] == "session_not_found"

    def test_cancel_then_join(self, client):
        body, _ = create(client)
        token = body["handle"]["token"]

        r = client.post(f"/api/sessions/{token}/cancel")
        assert r.status_code == 200
        assert r.json()["state"] == "cancelled"
        assert r.json()["error_message"] == "Cancelled by sender"

        r = join(client, body["code"])
        assert r.status_code == 410
        assert r.json()["error"] == "code_expired"


class TestWebSocket:
    """Test the per-session event feed"""

    def test_snapshot_and_events(self, client):
        body, _ = create(client)
        token = body["handle"]["token"]

        with client.websocket_connect(f"/ws/{token}") as ws:
            first = ws.receive_json()
            assert first["event"] == "session_state"
            assert first["data"]["state"] == "pending"

            receiver = join(client, body["code"]).json()["handle"]["token"]
            assert ws.receive_json()["data"]["receiver_joined"] is True

            client.post(f"/api/sessions/{receiver}/cancel")
            event = ws.receive_json()
            assert event["data"]["state"] == "cancelled"
            assert event["data"]["error_message"] == "Cancelled by receiver"

    def test_unknown_session_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/nope") as ws:
                ws.receive_json()
