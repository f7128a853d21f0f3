import pytest
from unittest.mock import AsyncMock
from fastapi import WebSocketDisconnect, status
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.main import create_app

PASSWORD = "Str0ng!pass"

def make_settings(tmp_path, **overrides):
    values = dict(
        STORE_BACKEND="memory",
        REALTIME_BACKEND="memory",
        METRICS_ENABLED=False,
        OTEL_ENABLED=False,
        RATE_LIMIT_ENABLED=False,
        TYPING_PURGE_ENABLED=False,
        UPLOAD_DIR=str(tmp_path),
    )
    values.update(overrides)
    return Settings(**values)

@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(make_settings(tmp_path))) as test_client:
        yield test_client

def signup(client, username):
    response = client.post("/api/auth/signup", json={"username": username, "password": PASSWORD})
    assert response.status_code == 201, response.text
    return {"Authorization": f"Bearer {response.json()['data']['accessToken']}"}

def create_room(client, headers, **body):
    response = client.post("/api/rooms", json=body or None, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]

def test_health(client):
    assert client.get("/livez").json() == {"status": "ok"}
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"

def test_signup_login_and_me(client):
    signup(client, "nebula42")

    login = client.post("/api/auth/login", data={"username": "nebula42", "password": PASSWORD})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["username"] == "nebula42"

def test_bad_login_and_missing_token(client):
    signup(client, "nebula42")

    login = client.post("/api/auth/login", data={"username": "nebula42", "password": "Wr0ng!pass"})
    assert login.status_code == 401
    assert "error" in login.json()
    assert client.get("/api/rooms").status_code == 401

def test_signup_validation_and_conflict(client):
    weak = client.post("/api/auth/signup", json={"username": "nebula42", "password": "weak"})
    assert weak.status_code == 400
    assert "error" in weak.json()

    signup(client, "nebula42")
    duplicate = client.post("/api/auth/signup", json={"username": "nebula42", "password": PASSWORD})
    assert duplicate.status_code == 409

def test_room_lifecycle(client):
    # Arrange
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")

    # Act: create and join
    credentials = create_room(client, owner, name="Lobby")
    room_id = credentials["roomId"]
    join = client.post(
        f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest
    )

    # Assert
    assert join.status_code == 200
    assert join.json()["data"]["name"] == "Lobby"
    assert client.get(f"/api/rooms/{room_id}/admin", headers=owner).json()["data"]["isAdmin"] is True
    assert client.get(f"/api/rooms/{room_id}/admin", headers=guest).json()["data"]["isAdmin"] is False

    participants = client.get(f"/api/rooms/{room_id}/participants", headers=guest).json()["data"]
    assert {p["username"] for p in participants} == {"owner001", "guest001"}

    rooms = client.get("/api/rooms", headers=owner).json()["data"]
    assert rooms[0]["participantCount"] == 2
    assert rooms[0]["accessSecret"] == credentials["accessSecret"]

def test_join_with_wrong_password(client):
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    room_id = create_room(client, owner)["roomId"]

    response = client.post(f"/api/rooms/{room_id}/join", json={"password": "nope123"}, headers=guest)

    assert response.status_code == 401
    assert response.json() == {"error": "Failed to join room. Invalid room ID or password."}

def test_update_and_delete_require_admin(client):
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    credentials = create_room(client, owner, name="Lobby")
    room_id = credentials["roomId"]
    client.post(f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest)

    forbidden = client.put(f"/api/rooms/{room_id}", json={"name": "Mine"}, headers=guest)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "You do not have permission to update this room"

    updated = client.put(f"/api/rooms/{room_id}", json={"description": "General chat"}, headers=owner)
    assert updated.json()["data"]["name"] == "Lobby"
    assert updated.json()["data"]["description"] == "General chat"

    assert client.delete(f"/api/rooms/{room_id}", headers=guest).status_code == 403
    assert client.delete(f"/api/rooms/{room_id}", headers=owner).json() == {"data": True}
    assert client.get(f"/api/rooms/{room_id}", headers=owner).status_code == 404

def test_messages_with_reply(client):
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    credentials = create_room(client, owner)
    room_id = credentials["roomId"]

    outsider = client.post(f"/api/rooms/{room_id}/messages", json={"content": "hi"}, headers=guest)
    assert outsider.status_code == 403

    client.post(f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest)
    first = client.post(f"/api/rooms/{room_id}/messages", json={"content": "hello"}, headers=owner)
    assert first.status_code == 201
    first_id = first.json()["data"]["id"]
    client.post(
        f"/api/rooms/{room_id}/messages",
        json={"content": "hey", "replyToId": first_id},
        headers=guest,
    )

    history = client.get(f"/api/rooms/{room_id}/messages", headers=guest).json()["data"]
    assert [m["content"] for m in history] == ["hello", "hey"]
    assert history[1]["replyToMessage"]["username"] == "owner001"
    assert history[1]["replyToMessage"]["content"] == "hello"

    blank = client.post(f"/api/rooms/{room_id}/messages", json={"content": "  "}, headers=owner)
    assert blank.status_code == 400

def test_typing_endpoints(client):
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    credentials = create_room(client, owner)
    room_id = credentials["roomId"]
    client.post(f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest)

    assert client.put(f"/api/rooms/{room_id}/typing", json={"isTyping": True}, headers=guest).status_code == 200

    assert client.get(f"/api/rooms/{room_id}/typing", headers=owner).json()["data"] == ["guest001"]
    assert client.get(f"/api/rooms/{room_id}/typing", headers=guest).json()["data"] == []

def test_attachment_upload(client):
    owner = signup(client, "owner001")
    room_id = create_room(client, owner)["roomId"]

    ok = client.post(
        f"/api/rooms/{room_id}/attachments",
        files={"file": ("cat.png", b"\x89PNG\r\n\x1a\n" + b"\x00" * 16, "image/png")},
        headers=owner,
    )
    rejected = client.post(
        f"/api/rooms/{room_id}/attachments",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=owner,
    )

    assert ok.status_code == 201
    url = ok.json()["data"]["url"]
    assert url.startswith(f"/uploads/room-{room_id}/")
    assert client.get(url).status_code == 200
    assert rejected.status_code == 400

def test_websocket_pushes_messages_and_typing(client):
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    credentials = create_room(client, owner)
    room_id = credentials["roomId"]
    client.post(f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest)
    token = owner["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/rooms/{room_id}?token={token}") as websocket:
        assert websocket.receive_json() == {"type": "typing", "payload": {"usernames": []}}

        client.put(f"/api/rooms/{room_id}/typing", json={"isTyping": True}, headers=guest)
        assert websocket.receive_json() == {"type": "typing", "payload": {"usernames": ["guest001"]}}

        websocket.send_json({"type": "message", "payload": {"content": "from socket"}})
        frame = websocket.receive_json()
        assert frame["type"] == "message"
        assert frame["payload"]["content"] == "from socket"
        assert frame["payload"]["username"] == "owner001"

def test_websocket_rejects_bad_token(client):
    owner = signup(client, "owner001")
    room_id = create_room(client, owner)["roomId"]

    with pytest.raises(Exception):
        with client.websocket_connect(f"/ws/rooms/{room_id}?token=garbage") as websocket:
            websocket.receive_json()

def test_oversize_attachment_rejected(client):
    owner = signup(client, "owner001")
    room_id = create_room(client, owner)["roomId"]
    too_big = b"\x89PNG\r\n\x1a\n" + b"\x00" * (5 * 1024 * 1024)

    response = client.post(
        f"/api/rooms/{room_id}/attachments",
        files={"file": ("huge.png", too_big, "image/png")},
        headers=owner,
    )

    assert response.status_code == 400
    assert response.json() == {"error": "File too large (max 5MB)"}

def test_publish_failure_after_commit_still_succeeds(client):
    # Arrange
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    credentials = create_room(client, owner)
    room_id = credentials["roomId"]
    client.app.state.channel.publish = AsyncMock(side_effect=ConnectionError("pub/sub unavailable"))

    # Act
    join = client.post(
        f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest
    )
    sent = client.post(f"/api/rooms/{room_id}/messages", json={"content": "hello"}, headers=guest)

    # Assert
    assert join.status_code == 200
    assert sent.status_code == 201
    assert len(client.get(f"/api/rooms/{room_id}/participants", headers=owner).json()["data"]) == 2
    assert client.app.state.channel.publish.await_count >= 2

def test_unhandled_error_returns_json_500(tmp_path):
    app = create_app(make_settings(tmp_path))

    with TestClient(app, raise_server_exceptions=False) as client:
        owner = signup(client, "owner001")
        client.app.state.store.list_rooms_for_user = AsyncMock(side_effect=RuntimeError("boom"))

        response = client.get("/api/rooms", headers=owner)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}

def user_id_of(client, headers):
    return client.get("/api/auth/me", headers=headers).json()["data"]["id"]

def receive_until_closed(websocket):
    while True:
        try:
            websocket.receive_json()
        except WebSocketDisconnect as e:
            return e.code

def test_websocket_closed_when_participant_removed(client):
    # Arrange
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    bystander = signup(client, "guest002")
    credentials = create_room(client, owner)
    room_id = credentials["roomId"]
    for headers in (guest, bystander):
        client.post(f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=headers)
    token = guest["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/rooms/{room_id}?token={token}") as websocket:
        assert websocket.receive_json()["type"] == "typing"

        # Removing someone else leaves the socket open
        client.delete(f"/api/rooms/{room_id}/participants/{user_id_of(client, bystander)}", headers=owner)
        client.post(f"/api/rooms/{room_id}/messages", json={"content": "still here"}, headers=owner)
        assert websocket.receive_json()["payload"]["content"] == "still here"

        # Act
        removed = client.delete(f"/api/rooms/{room_id}/participants/{user_id_of(client, guest)}", headers=owner)

        # Assert
        assert removed.status_code == 200
        assert receive_until_closed(websocket) == status.WS_1008_POLICY_VIOLATION

def test_websocket_closed_when_room_deleted(client):
    owner = signup(client, "owner001")
    guest = signup(client, "guest001")
    credentials = create_room(client, owner)
    room_id = credentials["roomId"]
    client.post(f"/api/rooms/{room_id}/join", json={"password": credentials["accessSecret"]}, headers=guest)
    token = guest["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/rooms/{room_id}?token={token}") as websocket:
        assert websocket.receive_json()["type"] == "typing"

        assert client.delete(f"/api/rooms/{room_id}", headers=owner).status_code == 200

        assert receive_until_closed(websocket) == status.WS_1008_POLICY_VIOLATION

def test_rate_limit_skips_openapi_schema(tmp_path):
    settings = make_settings(tmp_path, RATE_LIMIT_ENABLED=True, RATE_LIMIT_PER_MINUTE=1)

    with TestClient(create_app(settings)) as client:
        schema = [client.get("/api/openapi.json").status_code for _ in range(3)]
        limited = [client.get("/api/rooms").status_code for _ in range(2)]

    assert schema == [200, 200, 200]
    assert limited == [401, 429]
