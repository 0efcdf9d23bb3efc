import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Set

from gestures import ClassificationSample, CommitEvent, GestureStabilizer, StabilizerConfig
from transcript import TranscriptBuffer

logger = logging.getLogger(__name__)

COMMANDS = ("space", "backspace", "delete-word", "clear")


class RecordingSession:
    """One signer's stabilizer and transcript, wired together."""

    def __init__(self, session_id: str, config: Optional[StabilizerConfig] = None):
        self.session_id = session_id
        self.config = config or StabilizerConfig()
        self.stabilizer = GestureStabilizer(self.config)
        self.transcript = TranscriptBuffer(self.config.space_token)
        self.recording = False
        self.server_timed: Optional[bool] = None
        self.commits: List[CommitEvent] = []

    def start_recording(self):
        self.stabilizer.reset()
        self.server_timed = None
        self.recording = True

    def stop_recording(self):
        # stabilizer state is dropped, the transcript stays
        self.recording = False
        self.server_timed = None
        self.stabilizer.reset()

    def observe(self, label, confidence, now: float) -> Optional[CommitEvent]:
        if not self.recording:
            return None
        event = self.stabilizer.observe(label, confidence, now)
        if event is not None:
            self.commits.append(event)
            self.transcript.commit_letter(event.label)
        return event

    def observe_sample(self, sample: ClassificationSample) -> Optional[CommitEvent]:
        # the first sample of a recording picks the clock, mixed samples are dropped
        if not self.recording:
            return None
        if self.server_timed is None:
            self.server_timed = sample.server_timed
        elif sample.server_timed != self.server_timed:
            logger.debug("Session %s: dropping sample timed by the other clock", self.session_id)
            return None
        return self.observe(sample.label, sample.confidence, sample.timestamp)

    def apply_command(self, command: str) -> str:
        if command == "space":
            self.transcript.add_space()
        elif command == "backspace":
            self.transcript.delete_last_character()
        elif command == "delete-word":
            self.transcript.delete_last_word()
        elif command == "clear":
            self.transcript.clear()
            self.stabilizer.reset()
            self.server_timed = None
        else:
            raise ValueError(f"Unknown command: {command}")
        return self.transcript.get_text()

    def finalized_words(self) -> List[str]:
        return self.transcript.words()

    def get_text(self) -> str:
        return self.transcript.get_text()


class SessionManager:
    def __init__(self, config: Optional[StabilizerConfig] = None):
        self.config = config
        self.sessions: Dict[str, RecordingSession] = {}
        self.session_websockets: Dict[str, Set] = {}

    def create_session(self) -> RecordingSession:
        session_id = str(uuid.uuid4())[:8]
        config = self.config or StabilizerConfig.from_env()
        session = RecordingSession(session_id, config)
        self.sessions[session_id] = session
        self.session_websockets[session_id] = set()
        logger.info("✅ Session created: %s", session_id)
        return session

    def get_session(self, session_id: str) -> Optional[RecordingSession]:
        return self.sessions.get(session_id)

    def session_exists(self, session_id: str) -> bool:
        return session_id in self.sessions

    def delete_session(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        self.session_websockets.pop(session_id, None)
        if session is None:
            return False
        session.stop_recording()
        logger.info("🗑️ Session deleted: %s", session_id)
        return True

    def add_websocket(self, session_id: str, websocket):
        if session_id not in self.session_websockets:
            self.session_websockets[session_id] = set()
        self.session_websockets[session_id].add(websocket)

    def remove_websocket(self, session_id: str, websocket):
        if session_id in self.session_websockets:
            self.session_websockets[session_id].discard(websocket)

    async def broadcast_to_session(self, session_id: str, message: str):
        websockets = list(self.session_websockets.get(session_id, ()))
        results = await asyncio.gather(
            *(ws.send_text(message) for ws in websockets), return_exceptions=True
        )
        for websocket, result in zip(websockets, results):
            if isinstance(result, Exception):
                logger.warning("⚠️ Dropping websocket for session %s: %s", session_id, result)
                self.remove_websocket(session_id, websocket)


session_manager = SessionManager()
