from enum import Enum
from typing import Literal, Optional

from pydantic import Field

from jarvis_voice.app.config.command_types import MediaKey
from jarvis_voice.app.events.base_event import BaseEvent, EventPriority


class SessionState(str, Enum):
    """Session lifecycle states. Exactly one is current at any time."""

    START = "START"
    READY = "READY"
    CALIBRATING = "CALIBRATING"
    LISTENING = "LISTENING"
    DONE = "DONE"
    ERROR = "ERROR"


# Recognizer -> controller


class RecognitionEvent(BaseEvent):
    """Base for every callback delivered by the speech recognizer.

    Consumed exactly once by the session controller and never stored.
    """


class PartialResultEvent(RecognitionEvent):
    """Interim hypothesis emitted while the speaker is still talking.

    Attributes:
        hypothesis: Raw hypothesis payload (JSON object text from the engine).
    """

    hypothesis: Optional[str] = None
    priority: EventPriority = EventPriority.HIGH


class FinalResultEvent(RecognitionEvent):
    """Hypothesis the recognizer considers complete for an utterance.

    Attributes:
        hypothesis: Raw hypothesis payload (JSON object text from the engine).
    """

    hypothesis: Optional[str] = None
    priority: EventPriority = EventPriority.HIGH


class RecognizerErrorEvent(RecognitionEvent):
    """Engine-reported failure. Always forces listening to stop.

    Attributes:
        cause: Exception text reported by the engine.
    """

    cause: str
    priority: EventPriority = EventPriority.CRITICAL


class RecognizerTimeoutEvent(RecognitionEvent):
    """Liveness signal: no utterance completed within the configured interval."""

    priority: EventPriority = EventPriority.NORMAL


# Controller -> subscribers


class SessionStateChangedEvent(BaseEvent):
    """Published on every session state transition.

    Attributes:
        previous: State before the transition.
        current: State after the transition.
        cause: Human-readable cause, set when entering ERROR.
    """

    previous: SessionState
    current: SessionState
    cause: Optional[str] = None
    priority: EventPriority = EventPriority.CRITICAL


class ListeningStatusEvent(BaseEvent):
    """Status line shown while listening (current partial text, or paused)."""

    status: str
    priority: EventPriority = EventPriority.NORMAL


class TranscriptLineEvent(BaseEvent):
    """One line appended to the recognition transcript.

    Attributes:
        kind: What produced the line.
        text: Line text, already prefixed for display.
    """

    kind: Literal["final", "command", "timeout"]
    text: str
    priority: EventPriority = EventPriority.HIGH


class CommandMatchedEvent(BaseEvent):
    """A partial hypothesis matched a voice command.

    Attributes:
        phrase: Partial hypothesis text that triggered the command.
        response: Spoken response.
        media_key: Media key dispatched, if any.
    """

    phrase: str
    response: str
    media_key: Optional[MediaKey] = None
    priority: EventPriority = EventPriority.HIGH


class CalibrationCompletedEvent(BaseEvent):
    """Published when a calibration run finishes, successfully or not.

    Attributes:
        rms: Averaged ambient RMS metric, or -1.0 when no usable calibration exists.
        valid: Whether the value is usable.
        samples_used: Number of blocks above the noise floor.
        error: Capture failure text when the run aborted early.
    """

    rms: float
    valid: bool
    samples_used: int = Field(default=0, ge=0)
    error: Optional[str] = None
    priority: EventPriority = EventPriority.HIGH
