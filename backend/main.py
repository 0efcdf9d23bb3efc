import json
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

import ai_analyzer
from database import db_manager, generated_line, signed_line, spoken_line
from gestures import ClassificationSample
from session_manager import COMMANDS, session_manager

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_manager.connect()
    yield


app = FastAPI(lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_db():
    if not db_manager.is_connected():
        raise HTTPException(status_code=503, detail="Database not connected")


def _require_session(session_id: str):
    session = session_manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _transcript_update(session, event=None) -> dict:
    return {
        "type": "transcript_update",
        "text": session.get_text(),
        "committed": event.label if event else None,
        "progress": session.stabilizer.progress(),
    }


def _generate_and_save(chat_id: str, words, history) -> str:
    try:
        full_sentence = ai_analyzer.generate_sentence(words, history)
    except ai_analyzer.SentenceGenerationError as e:
        raise HTTPException(status_code=502, detail=f"Failed to generate sentence: {e}")

    saved = db_manager.append_history(
        chat_id, [signed_line(" ".join(words)), generated_line(full_sentence)]
    )
    if not saved:
        raise HTTPException(status_code=404, detail="Chat not found")
    return full_sentence


@app.get("/")
async def read_root():
    return {"message": "SignBridge Backend API"}


@app.get("/health")
async def health():
    return {"database": db_manager.is_connected(), "ai": ai_analyzer.is_available()}


# ── conversation history ─────────────────────────────────────

@app.post("/api/chat/new", status_code=201)
async def new_chat():
    _require_db()
    return {"chatId": db_manager.create_chat()}


@app.post("/api/chat/generate")
async def generate(data: dict = Body(...)):
    words = data.get("words")
    history = data.get("history")
    chat_id = data.get("chatId")
    if words is None or history is None or not chat_id:
        raise HTTPException(status_code=400, detail="Missing words, history, or chatId")
    if not isinstance(words, list) or not isinstance(history, list):
        raise HTTPException(status_code=400, detail="words and history must be lists")

    _require_db()
    return {"fullSentence": _generate_and_save(chat_id, [str(w) for w in words], history)}


@app.post("/api/chat/speak")
async def speak(data: dict = Body(...)):
    transcript = data.get("transcript")
    chat_id = data.get("chatId")
    if not transcript or not chat_id:
        raise HTTPException(status_code=400, detail="Missing transcript or chatId")

    _require_db()
    if not db_manager.append_history(chat_id, [spoken_line(transcript)]):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"message": "Spoken text saved"}


@app.get("/api/chat/{chat_id}")
async def get_chat(chat_id: str):
    _require_db()
    history = db_manager.get_history(chat_id)
    if history is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"chatId": chat_id, "history": history}


@app.get("/api/chats")
async def list_chats(limit: int = 50):
    _require_db()
    return {"chats": db_manager.list_chats(limit)}


@app.delete("/api/chat/{chat_id}")
async def delete_chat(chat_id: str):
    _require_db()
    if not db_manager.delete_chat(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"message": "Chat deleted"}


# ── recording sessions ───────────────────────────────────────

@app.post("/sessions", status_code=201)
async def create_session():
    session = session_manager.create_session()
    return {"session_id": session.session_id}


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    if not session_manager.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": f"Session {session_id} deleted"}


@app.post("/sessions/{session_id}/recording/start")
async def start_recording(session_id: str):
    session = _require_session(session_id)
    session.start_recording()
    return {"recording": True}


@app.post("/sessions/{session_id}/recording/stop")
async def stop_recording(session_id: str):
    session = _require_session(session_id)
    session.stop_recording()
    return {"recording": False, "text": session.get_text()}


@app.post("/sessions/{session_id}/samples")
async def post_sample(session_id: str, data: dict = Body(...)):
    session = _require_session(session_id)
    event = session.observe_sample(ClassificationSample.from_payload(data))
    update = _transcript_update(session, event)
    if event is not None:
        await session_manager.broadcast_to_session(session_id, json.dumps(update))
    return update


@app.post("/sessions/{session_id}/commands/{command}")
async def post_command(session_id: str, command: str):
    session = _require_session(session_id)
    if command not in COMMANDS:
        raise HTTPException(status_code=400, detail=f"Unknown command: {command}")
    text = session.apply_command(command)
    await session_manager.broadcast_to_session(session_id, json.dumps(_transcript_update(session)))
    return {"text": text}


@app.get("/sessions/{session_id}/transcript")
async def get_transcript(session_id: str):
    session = _require_session(session_id)
    return {
        "text": session.get_text(),
        "words": session.finalized_words(),
        "recording": session.recording,
    }


@app.post("/sessions/{session_id}/generate")
async def generate_from_session(session_id: str, data: dict = Body(...)):
    session = _require_session(session_id)
    chat_id = data.get("chatId")
    if not chat_id:
        raise HTTPException(status_code=400, detail="Missing chatId")
    words = session.finalized_words()
    if not words:
        raise HTTPException(status_code=400, detail="Transcript is empty")

    _require_db()
    history = db_manager.get_history(chat_id)
    if history is None:
        raise HTTPException(status_code=404, detail="Chat not found")

    full_sentence = _generate_and_save(chat_id, words, history)
    session.apply_command("clear")
    await session_manager.broadcast_to_session(session_id, json.dumps(_transcript_update(session)))
    return {"fullSentence": full_sentence, "words": words}


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    session = session_manager.get_session(session_id)
    if session is None:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    session_manager.add_websocket(session_id, websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                data_json = json.loads(data)
            except json.JSONDecodeError:
                data_json = None
            if not isinstance(data_json, dict):
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid JSON"}))
                continue

            msg_type = data_json.get("type")
            event = None

            if msg_type == "sample":
                event = session.observe_sample(ClassificationSample.from_payload(data_json))
                # only the sender needs per-frame progress
                if event is None:
                    await websocket.send_text(json.dumps(_transcript_update(session)))
                    continue
            elif msg_type == "command":
                command = data_json.get("command")
                if command not in COMMANDS:
                    await websocket.send_text(json.dumps({"type": "error", "detail": f"Unknown command: {command}"}))
                    continue
                session.apply_command(command)
            elif msg_type == "start":
                session.start_recording()
            elif msg_type == "stop":
                session.stop_recording()
            else:
                await websocket.send_text(json.dumps({"type": "error", "detail": f"Unknown message type: {msg_type}"}))
                continue

            await session_manager.broadcast_to_session(
                session_id, json.dumps(_transcript_update(session, event))
            )

    except WebSocketDisconnect:
        logger.info("🔌 Websocket left session %s", session_id)
    finally:
        session_manager.remove_websocket(session_id, websocket)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host=host, port=port)
