import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from server.file_server import FileStore
from server.session_manager import SessionManager
from server.web_app import WebApp


@pytest.fixture
def file_store(tmp_path) -> FileStore:
    return FileStore(tmp_path / "uploads", max_upload_bytes=1024)


@pytest.fixture
def session_manager(file_store) -> SessionManager:
    return SessionManager(capacity=2, session_timeout=0.3, on_session_expired=file_store.clear)


@pytest.fixture
def client(tmp_path, session_manager, file_store):
    static = tmp_path / "public"
    static.mkdir()
    (static / "index.html").write_text("<h1>LAN File Share</h1>")
    web_app = WebApp(session_manager, file_store, static_root=static)
    with TestClient(web_app.app) as test_client:
        yield test_client


def join(websocket, name: str) -> dict:
    websocket.send_json({"type": "join", "name": name})
    joined = websocket.receive_json()
    assert joined["type"] == "joined"
    assert websocket.receive_json()["type"] == "users_update"
    return joined


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_server_info_for_empty_room(client) -> None:
    response = client.get("/api/server-info")

    assert response.status_code == 200
    assert response.json() == {"name": "LAN File Share", "users": 0, "maxUsers": 2, "canJoin": True}
    assert client.get("/api/users").json() == {"users": [], "maxUsers": 2, "canJoin": True}
    assert client.get("/api/health").json()["status"] == "ok"


def test_upload_list_download_delete(client) -> None:
    response = client.post(
        "/api/upload",
        files={"file": ("hello.txt", b"hello world", "text/plain")},
        data={"senderName": "alice"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["filename"] == "hello.txt"
    assert body["originalName"] == "hello.txt"
    assert body["size"] == 11
    assert body["sender"] == "alice"

    files = client.get("/api/files").json()
    assert [(item["name"], item["size"], item["sender"]) for item in files] == [("hello.txt", 11, "alice")]

    download = client.get("/api/download/hello.txt")
    assert download.status_code == 200
    assert download.content == b"hello world"
    assert "attachment" in download.headers["content-disposition"]

    deleted = client.delete("/api/files/hello.txt")
    assert deleted.json() == {"success": True, "message": "File deleted"}
    assert client.delete("/api/files/hello.txt").status_code == 404
    assert client.get("/api/download/hello.txt").status_code == 404
    assert client.get("/api/files").json() == []


def test_upload_name_collision_gets_unique_name(client) -> None:
    first = client.post("/api/upload", files={"file": ("notes.md", b"one")}).json()
    second = client.post("/api/upload", files={"file": ("notes.md", b"two")}).json()

    assert first["filename"] == "notes.md"
    assert second["filename"] != "notes.md"
    assert second["filename"].startswith("notes_") and second["filename"].endswith(".md")
    assert second["sender"] == "Unknown"
    assert len(client.get("/api/files").json()) == 2


def test_upload_errors(client) -> None:
    assert client.post("/api/upload", data={"senderName": "alice"}).status_code == 400
    assert client.post("/api/upload", files={"file": ("big.bin", b"x" * 2048)}).status_code == 413
    assert client.get("/api/files").json() == []
    assert client.get("/api/download/.hidden").status_code == 404


def test_static_index_is_served(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert "LAN File Share" in response.text


def test_join_over_websocket_updates_users(client) -> None:
    with client.websocket_connect("/ws") as alice:
        joined = join(alice, "alice")
        assert joined["sessionStarted"] is False
        assert joined["timeRemaining"] is None

        users = client.get("/api/users").json()
        assert [user["name"] for user in users["users"]] == ["alice"]
        assert users["users"][0]["id"] == joined["userId"]

    wait_until(lambda: client.get("/api/users").json()["users"] == [])
    assert client.get("/api/users").json()["users"] == []


def test_websocket_is_also_served_at_root(client) -> None:
    with client.websocket_connect("/") as alice:
        join(alice, "alice")


def test_third_connection_is_rejected(client) -> None:
    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
        join(alice, "alice")
        join(bob, "bob")
        assert alice.receive_json()["type"] == "users_update"

        with client.websocket_connect("/ws") as carol:
            carol.send_json({"type": "join", "name": "carol"})
            assert carol.receive_json() == {"type": "error", "message": "Room is full (max 2 users)"}
            with pytest.raises(WebSocketDisconnect) as excinfo:
                carol.receive_json()
            assert excinfo.value.code == 1008

        info = client.get("/api/server-info").json()
        assert info["users"] == 2
        assert info["canJoin"] is False


def test_malformed_frames_keep_connection_open(client) -> None:
    with client.websocket_connect("/ws") as alice:
        alice.send_text("definitely not json")
        alice.send_json({"type": "teleport"})
        alice.send_json({"type": "start_session"})
        joined = join(alice, "alice")
        assert joined["sessionStarted"] is False


def test_upload_is_announced_to_peers(client) -> None:
    with client.websocket_connect("/ws") as alice:
        join(alice, "alice")
        client.post("/api/upload", files={"file": ("photo.jpg", b"jpeg")}, data={"senderName": "alice"})
        assert alice.receive_json() == {"type": "file_added", "filename": "photo.jpg", "sender": "alice"}

        client.delete("/api/files/photo.jpg")
        assert alice.receive_json() == {"type": "file_deleted", "filename": "photo.jpg"}


def test_session_expiry_disconnects_everyone_and_purges_files(client) -> None:
    client.post("/api/upload", files={"file": ("shared.txt", b"data")})

    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
        join(alice, "alice")
        join(bob, "bob")
        assert alice.receive_json()["type"] == "users_update"

        alice.send_json({"type": "start_session"})
        for peer in (alice, bob):
            started = peer.receive_json()
            assert started["type"] == "session_started"
            assert started["timeout"] == 300
            expired = peer.receive_json()
            assert expired["type"] == "session_expired"
            with pytest.raises(WebSocketDisconnect) as excinfo:
                peer.receive_json()
            assert excinfo.value.code == 1000

    assert wait_until(lambda: client.get("/api/files").json() == [])
    info = client.get("/api/server-info").json()
    assert info["users"] == 0
    assert info["canJoin"] is True


def test_state_endpoint_reports_snapshot(client) -> None:
    with client.websocket_connect("/ws") as alice:
        join(alice, "alice")
        state = client.get("/api/state").json()

    assert state["state"] == "idle"
    assert state["participant_count"] == 1
    assert state["capacity"] == 2
    assert "log_tail" in state
    assert any(event["type"] == "user_joined" for event in state["events"])


def test_deeply_nested_frame_is_dropped_and_peer_stays_joined(client) -> None:
    with client.websocket_connect("/ws") as alice:
        join(alice, "alice")
        alice.send_text("[" * 100_000)
        alice.send_json({"type": "start_session"})

        started = alice.receive_json()
        assert started["type"] == "session_started"
        assert client.get("/api/server-info").json()["users"] == 1


def test_repeated_join_on_one_connection_is_ignored(client) -> None:
    with client.websocket_connect("/ws") as alice:
        first = join(alice, "alice")
        alice.send_json({"type": "join", "name": "alice again"})
        alice.send_json({"type": "start_session"})

        # The next event is the session start, not a second joined reply.
        assert alice.receive_json()["type"] == "session_started"
        users = client.get("/api/users").json()["users"]
        assert [(user["id"], user["name"]) for user in users] == [(first["userId"], "alice")]
        assert client.get("/api/server-info").json()["users"] == 1
