# gestures.py
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SPACE_TOKEN = "space"


def monotonic_ms() -> float:
    """Server-side clock used when a client does not send its own timestamp."""
    return time.monotonic() * 1000.0


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("⚠️ Invalid value for %s=%r, using %r", name, raw, default)
        return default


@dataclass(frozen=True)
class StabilizerConfig:
    confidence_threshold: float = 0.85
    stability_frames: int = 10
    cooldown_ms: float = 3500.0
    no_detection_reset_ms: float = 2000.0
    space_token: str = SPACE_TOKEN

    @classmethod
    def from_env(cls) -> "StabilizerConfig":
        return cls(
            confidence_threshold=_env_number("SIGN_CONFIDENCE_THRESHOLD", cls.confidence_threshold, float),
            stability_frames=_env_number("SIGN_STABILITY_FRAMES", cls.stability_frames, int),
            cooldown_ms=_env_number("LETTER_COOLDOWN_MS", cls.cooldown_ms, float),
            no_detection_reset_ms=_env_number("NO_DETECTION_RESET_MS", cls.no_detection_reset_ms, float),
            space_token=os.getenv("SPACE_TOKEN") or SPACE_TOKEN,
        )


@dataclass(frozen=True)
class ClassificationSample:
    label: Optional[str]
    confidence: float
    timestamp: float
    server_timed: bool = False

    @classmethod
    def from_payload(cls, data: dict) -> "ClassificationSample":
        """
        Client message -> sample. Bad labels and confidences are left for the
        stabilizer to reject.

        A missing or non-finite timestamp is replaced by the server's
        monotonic clock and the sample is marked `server_timed`. The two
        clocks have different epochs, so a session must stick to one of
        them (see RecordingSession.observe_sample).
        """
        timestamp = data.get("timestamp")
        try:
            timestamp = float(timestamp)
        except (TypeError, ValueError):
            timestamp = None
        if timestamp is None or not math.isfinite(timestamp):
            return cls(
                label=data.get("label"),
                confidence=data.get("confidence"),
                timestamp=monotonic_ms(),
                server_timed=True,
            )
        return cls(label=data.get("label"), confidence=data.get("confidence"), timestamp=timestamp)


@dataclass(frozen=True)
class CommitEvent:
    label: str
    timestamp: float


@dataclass(frozen=True)
class StabilizerState:
    last_observed_label: str = ""
    consecutive_count: int = 0
    last_label_change_time: float = 0.0
    last_committed_label: str = ""
    last_committed_time: float = 0.0
    last_no_detection_time: Optional[float] = None


class GestureStabilizer:
    """
    Turns a flickering per-frame classifier stream into discrete commit events.

    A label is committed once it has been seen on exactly `stability_frames`
    consecutive qualifying samples, unless the same label was committed less
    than `cooldown_ms` ago. Timestamps are supplied by the caller (ms).
    """

    def __init__(self, config: Optional[StabilizerConfig] = None):
        self.config = config or StabilizerConfig()
        self.reset()

    def reset(self):
        self.last_observed_label = ""
        self.consecutive_count = 0
        self.last_label_change_time = 0.0
        self.last_committed_label = ""
        self.last_committed_time = 0.0
        self.last_no_detection_time: Optional[float] = None
        self.last_sample_time: Optional[float] = None

    @property
    def state(self) -> StabilizerState:
        return StabilizerState(
            last_observed_label=self.last_observed_label,
            consecutive_count=self.consecutive_count,
            last_label_change_time=self.last_label_change_time,
            last_committed_label=self.last_committed_label,
            last_committed_time=self.last_committed_time,
            last_no_detection_time=self.last_no_detection_time,
        )

    def progress(self) -> float:
        """Fraction of the current run towards a commit, 0.0 to 1.0."""
        if not self.last_observed_label:
            return 0.0
        return min(1.0, self.consecutive_count / self.config.stability_frames)

    def _qualifies(self, label, confidence) -> bool:
        if not isinstance(label, str) or not label:
            return False
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            return False
        if math.isnan(confidence) or confidence < 0.0 or confidence > 1.0:
            return False
        return confidence >= self.config.confidence_threshold

    def observe(self, label, confidence, now: float) -> Optional[CommitEvent]:
        if not math.isfinite(now):
            logger.debug("Ignoring sample with non-finite time %s", now)
            return None
        if self.last_sample_time is not None and now < self.last_sample_time:
            logger.debug("Ignoring out-of-order sample at %s (last %s)", now, self.last_sample_time)
            return None
        self.last_sample_time = now

        if not self._qualifies(label, confidence):
            if self.last_no_detection_time is None:
                self.last_no_detection_time = now
            if now - self.last_no_detection_time > self.config.no_detection_reset_ms:
                self.consecutive_count = 0
                self.last_observed_label = ""
            return None

        self.last_no_detection_time = None

        if label == self.last_observed_label:
            self.consecutive_count += 1
        else:
            self.last_observed_label = label
            self.consecutive_count = 1
            self.last_label_change_time = now

        # edge-triggered: fires once per run, never on the frames after
        if self.consecutive_count != self.config.stability_frames:
            return None

        # counter restarts whether or not the commit goes through
        self.consecutive_count = 0

        if (
            label == self.last_committed_label
            and now - self.last_committed_time < self.config.cooldown_ms
        ):
            logger.debug("Cooldown active for %r, commit suppressed", label)
            return None

        self.last_committed_label = label
        self.last_committed_time = now
        logger.info("✋ Committed sign: %s", label)
        return CommitEvent(label=label, timestamp=now)
