import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.main import create_app
from tests.fakes import FakeBackend, FakeSummarizer

FRAME = b"\x01\x00" * 320


@pytest.fixture
def backend():
    return FakeBackend({0: [("partial", "good mor", "spk_0")], 1: [("final", "good morning class", "spk_0")]})


@pytest.fixture
def client(tmp_path, backend):
    app = create_app(cwd=str(tmp_path), backend=backend, summarizer=FakeSummarizer(), configure_logs=False)
    with TestClient(app) as client:
        yield client


def receive_until_final(ws) -> list[dict]:
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["type"] == "final":
            return messages


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["activeSessions"] == 0


def test_full_session_over_websocket(client, backend, tmp_path):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Physics", "dateISO": "2024-03-03"})
        assert ws.receive_json()["text"] == "Initializing transcription..."
        assert ws.receive_json()["text"] == "Transcription connected. Start speaking..."

        ws.send_bytes(FRAME)
        ws.send_bytes(FRAME)
        ws.send_json({"type": "stop"})
        messages = receive_until_final(ws)

    transcripts = [(m["text"], m["partial"]) for m in messages if m["type"] == "transcript"]
    assert transcripts == [("good mor", True), ("good morning class", False)]
    notes = next(m for m in messages if m["type"] == "notes")
    assert notes["notes"]["introduction"] == ["Lecture: Physics"]
    final = messages[-1]
    assert final["transcriptPath"].startswith("transcripts/demo-user-")
    assert "exportUrl" not in final

    saved = (tmp_path / "data" / final["transcriptPath"]).read_text(encoding="utf-8")
    assert saved == "spk_0: good morning class"
    assert len(backend.streams[0].received) == 2


def test_aliases_are_accepted(client, backend):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_json({"type": "init", "identityToken": "demo-token", "sessionLabel": "Art", "date": "2024-01-09"})
        ws.receive_json()
        ws.receive_json()
        ws.send_json({"type": "stop"})
        receive_until_final(ws)

    sessions = list(client.app.state.store.list_sessions())
    assert sessions[0]["classTitle"] == "Art"
    assert sessions[0]["dateISO"] == "2024-01-09"


def test_invalid_json_keeps_connection_open(client):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_text("{not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}

        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Math", "dateISO": "2024-01-01"})
        assert ws.receive_json()["speaker"] == "System"


def test_audio_before_init_closes_with_error(client):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_bytes(FRAME)
        message = ws.receive_json()
        assert message == {"type": "error", "message": "Audio received before init"}
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_second_init_is_refused_but_session_continues(client):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Law", "dateISO": "2024-01-01"})
        ws.receive_json()
        ws.receive_json()

        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Again", "dateISO": "2024-01-01"})
        assert ws.receive_json() == {"type": "error", "message": "A session is already active on this connection"}

        ws.send_bytes(FRAME)
        ws.send_json({"type": "stop"})
        messages = receive_until_final(ws)

    assert any(m.get("text") == "good mor" for m in messages)


def test_odd_frame_is_reported_as_warning(client):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Art", "dateISO": "2024-01-01"})
        ws.receive_json()
        ws.receive_json()
        ws.send_bytes(b"\x00\x00\x00")
        warning = ws.receive_json()
        assert warning["type"] == "warning"
        assert "16-bit" in warning["message"]
        ws.send_json({"type": "stop"})
        receive_until_final(ws)


def test_live_sessions_endpoint_lists_sessions(client):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Music", "dateISO": "2024-01-01"})
        ws.receive_json()
        ws.receive_json()

        body = client.get("/api/live/sessions").json()
        assert body["active"] == 1
        assert body["sessions"][0]["classTitle"] == "Music"
        assert body["sessions"][0]["state"] == "streaming"

        ws.send_json({"type": "stop"})
        receive_until_final(ws)

    assert client.get("/api/live/sessions").json()["active"] == 0


def test_empty_keepalive_frames_are_ignored(client, backend):
    with client.websocket_connect("/ws/audio") as ws:
        ws.send_json({"type": "init", "token": "demo-token", "classTitle": "Art", "dateISO": "2024-01-01"})
        ws.receive_json()
        ws.receive_json()
        ws.send_bytes(b"")
        ws.send_bytes(FRAME)
        ws.send_json({"type": "stop"})
        messages = receive_until_final(ws)

    assert "warning" not in [m["type"] for m in messages]
    assert backend.streams[0].received == [FRAME]
