from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import ai_analyzer
import main
from gestures import StabilizerConfig


class _FakeDB:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.chats: dict[str, list[str]] = {}

    def is_connected(self) -> bool:
        return self.connected

    def create_chat(self) -> str:
        chat_id = f"chat-{len(self.chats) + 1}"
        self.chats[chat_id] = []
        return chat_id

    def append_history(self, chat_id: str, lines: list[str]) -> bool:
        if chat_id not in self.chats:
            return False
        self.chats[chat_id].extend(lines)
        return True

    def get_history(self, chat_id: str):
        history = self.chats.get(chat_id)
        return list(history) if history is not None else None

    def list_chats(self, limit: int = 50) -> list[dict]:
        return [{"chatId": k, "turns": len(v)} for k, v in self.chats.items()][:limit]

    def delete_chat(self, chat_id: str) -> bool:
        return self.chats.pop(chat_id, None) is not None


@pytest.fixture()
def fake_db(monkeypatch) -> _FakeDB:
    db = _FakeDB()
    monkeypatch.setattr(main, "db_manager", db)
    monkeypatch.setattr(main.session_manager, "config", StabilizerConfig())
    return db


@pytest.fixture()
def client(fake_db) -> TestClient:
    return TestClient(main.app)


@pytest.fixture()
def sentences(monkeypatch) -> list[tuple]:
    calls: list[tuple] = []

    def _fake_generate(words, history):
        calls.append((list(words), list(history)))
        return "Hello there."

    monkeypatch.setattr(ai_analyzer, "generate_sentence", _fake_generate)
    return calls


def _post_samples(client: TestClient, session_id: str, label, confidence: float,
                  count: int, start: float) -> tuple[list[dict], float]:
    responses = []
    t = start
    for _ in range(count):
        r = client.post(
            f"/sessions/{session_id}/samples",
            json={"label": label, "confidence": confidence, "timestamp": t},
        )
        assert r.status_code == 200
        responses.append(r.json())
        t += 33.0
    return responses, t


def test_chat_flow(client: TestClient, fake_db: _FakeDB, sentences) -> None:
    chat_id = client.post("/api/chat/new").json()["chatId"]

    r = client.post("/api/chat/speak", json={"transcript": "How are you?", "chatId": chat_id})
    assert r.status_code == 200

    r = client.post(
        "/api/chat/generate",
        json={"words": ["I", "FINE"], "history": ["Other Person (spoke): How are you?"], "chatId": chat_id},
    )
    assert r.status_code == 200
    assert r.json() == {"fullSentence": "Hello there."}
    assert sentences == [(["I", "FINE"], ["Other Person (spoke): How are you?"])]

    history = client.get(f"/api/chat/{chat_id}").json()["history"]
    assert history == [
        "Other Person (spoke): How are you?",
        "User (signed): I FINE",
        "AI (generated): Hello there.",
    ]


def test_generate_validation(client: TestClient, sentences) -> None:
    r = client.post("/api/chat/generate", json={"words": ["HI"], "chatId": "chat-1"})
    assert r.status_code == 400
    r = client.post("/api/chat/speak", json={"chatId": "chat-1"})
    assert r.status_code == 400
    r = client.post("/api/chat/generate", json={"words": ["HI"], "history": [], "chatId": "missing"})
    assert r.status_code == 404


def test_generate_failure_maps_to_502(client: TestClient, fake_db: _FakeDB, monkeypatch) -> None:
    def _boom(words, history):
        raise ai_analyzer.SentenceGenerationError("quota")

    monkeypatch.setattr(ai_analyzer, "generate_sentence", _boom)
    chat_id = fake_db.create_chat()
    r = client.post("/api/chat/generate", json={"words": ["HI"], "history": [], "chatId": chat_id})
    assert r.status_code == 502
    assert fake_db.chats[chat_id] == []


def test_database_unavailable(client: TestClient, fake_db: _FakeDB) -> None:
    fake_db.connected = False
    assert client.post("/api/chat/new").status_code == 503
    assert client.get("/api/chats").status_code == 503


def test_session_samples_and_commands(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    assert client.post(f"/sessions/{session_id}/recording/start").json() == {"recording": True}

    responses, t = _post_samples(client, session_id, "A", 0.9, 10, 0.0)
    assert [r["committed"] for r in responses] == [None] * 9 + ["A"]
    assert responses[-1]["text"] == "A"

    _, t = _post_samples(client, session_id, "", 0.1, 1, t)
    responses, t = _post_samples(client, session_id, "B", 0.9, 10, t)
    assert responses[-1]["text"] == "AB"

    assert client.post(f"/sessions/{session_id}/commands/space").json() == {"text": "AB "}
    assert client.post(f"/sessions/{session_id}/commands/backspace").json() == {"text": "AB"}
    assert client.post(f"/sessions/{session_id}/commands/undo").status_code == 400

    transcript = client.get(f"/sessions/{session_id}/transcript").json()
    assert transcript == {"text": "AB", "words": ["AB"], "recording": True}

    stopped = client.post(f"/sessions/{session_id}/recording/stop").json()
    assert stopped == {"recording": False, "text": "AB"}


def test_samples_ignored_until_recording(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    responses, _ = _post_samples(client, session_id, "A", 0.9, 12, 0.0)
    assert all(r["committed"] is None for r in responses)
    assert responses[-1]["text"] == ""


def test_malformed_sample_is_not_rejected(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    client.post(f"/sessions/{session_id}/recording/start")
    r = client.post(f"/sessions/{session_id}/samples", json={"label": "A", "confidence": "high"})
    assert r.status_code == 200
    assert r.json()["committed"] is None


def test_unknown_session(client: TestClient) -> None:
    assert client.post("/sessions/nope/recording/start").status_code == 404
    assert client.get("/sessions/nope/transcript").status_code == 404
    assert client.delete("/sessions/nope").status_code == 404


def test_generate_from_session(client: TestClient, fake_db: _FakeDB, sentences) -> None:
    chat_id = fake_db.create_chat()
    fake_db.append_history(chat_id, ["Other Person (spoke): Hi"])
    session_id = client.post("/sessions").json()["session_id"]

    r = client.post(f"/sessions/{session_id}/generate", json={"chatId": chat_id})
    assert r.status_code == 400

    main.session_manager.get_session(session_id).transcript.committed_text = "HI THERE "
    r = client.post(f"/sessions/{session_id}/generate", json={"chatId": chat_id})
    assert r.status_code == 200
    assert r.json() == {"fullSentence": "Hello there.", "words": ["HI", "THERE"]}
    assert sentences == [(["HI", "THERE"], ["Other Person (spoke): Hi"])]
    assert fake_db.chats[chat_id][-2:] == ["User (signed): HI THERE", "AI (generated): Hello there."]
    assert client.get(f"/sessions/{session_id}/transcript").json()["text"] == ""


def test_websocket_session(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]

    with client.websocket_connect(f"/ws/{session_id}") as ws:
        ws.send_json({"type": "start"})
        assert ws.receive_json()["type"] == "transcript_update"

        for i in range(10):
            ws.send_json({"type": "sample", "label": "L", "confidence": 0.95, "timestamp": i * 33.0})
            message = ws.receive_json()
        assert message["committed"] == "L"
        assert message["text"] == "L"

        ws.send_json({"type": "command", "command": "space"})
        assert ws.receive_json()["text"] == "L "

        ws.send_json({"type": "command", "command": "undo"})
        assert ws.receive_json()["type"] == "error"

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "detail": "Invalid JSON"}


def test_websocket_unknown_session(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/nope"):
            pass


def test_non_string_label_is_no_detection(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    client.post(f"/sessions/{session_id}/recording/start")
    responses, t = _post_samples(client, session_id, 7, 0.9, 10, 0.0)
    assert all(r["committed"] is None for r in responses)

    responses, _ = _post_samples(client, session_id, "A", 0.9, 10, t)
    assert responses[-1]["text"] == "A"
    assert [e.label for e in main.session_manager.get_session(session_id).commits] == ["A"]


def test_websocket_survives_non_string_labels(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]

    with client.websocket_connect(f"/ws/{session_id}") as ws:
        ws.send_json({"type": "start"})
        ws.receive_json()
        for i in range(10):
            ws.send_json({"type": "sample", "label": ["A"], "confidence": 0.95, "timestamp": i * 33.0})
            assert ws.receive_json()["committed"] is None

        ws.send_json({"type": "command", "command": "space"})
        assert ws.receive_json()["text"] == " "


def test_overflowing_timestamp_falls_back_to_server_clock(client: TestClient) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    client.post(f"/sessions/{session_id}/recording/start")

    r = client.post(f"/sessions/{session_id}/samples",
                    json={"label": "B", "confidence": 0.9, "timestamp": "1e400"})
    assert r.status_code == 200
    for _ in range(9):
        r = client.post(f"/sessions/{session_id}/samples", json={"label": "B", "confidence": 0.9})
    assert r.json()["committed"] == "B"
    assert r.json()["text"] == "B"


def test_websocket_deregistered_after_handler_error(fake_db) -> None:
    session = main.session_manager.create_session()

    class _BrokenSocket:
        async def accept(self) -> None:
            return None

        async def receive_text(self) -> str:
            raise RuntimeError("transport closed")

        async def send_text(self, message: str) -> None:
            return None

    socket = _BrokenSocket()
    with pytest.raises(RuntimeError):
        asyncio.run(main.websocket_endpoint(socket, session.session_id))
    assert socket not in main.session_manager.session_websockets[session.session_id]
