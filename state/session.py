"""Playback session data model and its state machine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from audio.tts import SpeechOptions


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    PLAYING = "playing"
    LOOPING = "looping"
    STOPPING = "stopping"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.STARTING}),
    SessionState.STARTING: frozenset(
        {SessionState.PLAYING, SessionState.LOOPING, SessionState.IDLE, SessionState.STOPPING, SessionState.ERROR}
    ),
    SessionState.PLAYING: frozenset(
        {SessionState.PLAYING, SessionState.LOOPING, SessionState.IDLE, SessionState.STOPPING, SessionState.ERROR}
    ),
    SessionState.LOOPING: frozenset({SessionState.STARTING, SessionState.STOPPING}),
    SessionState.STOPPING: frozenset({SessionState.IDLE}),
    SessionState.ERROR: frozenset({SessionState.IDLE}),
}


def can_transition(current: SessionState, next_state: SessionState) -> bool:
    return next_state in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class TextContent:
    """Text spoken by the local synthesis adapter."""

    text: str
    options: SpeechOptions = field(default_factory=SpeechOptions)

    def is_empty(self) -> bool:
        return not self.text.strip()

    def describe(self) -> dict[str, Any]:
        return {"kind": "text", "text": self.text, "options": self.options.to_payload()}


@dataclass(frozen=True)
class AudioContent:
    """Pre-rendered audio (base64) played by the surrogate."""

    encoded_audio: str
    duration_hint_s: float = 0.0
    text: str | None = None
    speed: float = 1.0

    def is_empty(self) -> bool:
        return not self.encoded_audio.strip()

    def describe(self) -> dict[str, Any]:
        return {
            "kind": "audio",
            "text": self.text,
            "durationHint": self.duration_hint_s,
            "encodedLength": len(self.encoded_audio),
        }


PlaybackContent = Union[TextContent, AudioContent]


@dataclass
class PlaybackSession:
    """The single active playback attempt, owned by the session controller."""

    content: PlaybackContent
    loop_enabled: bool
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: SessionState = SessionState.IDLE
    iteration_count: int = 0
    estimated_duration_s: float = 0.0
    start_timestamp: float = 0.0
    started_at_wall: float = 0.0
    completion_in_flight: bool = False
    utterance_id: str | None = None

    def transition_to(self, next_state: SessionState) -> SessionState:
        if not can_transition(self.state, next_state):
            raise ValueError(f"illegal session transition {self.state.value} -> {next_state.value}")
        self.state = next_state
        return self.state

    def next_utterance_id(self) -> str:
        self.utterance_id = f"{self.session_id}:{self.iteration_count}"
        return self.utterance_id


@dataclass(frozen=True)
class PlaybackStatus:
    """Synchronous view of the controller state for pollers."""

    is_playing: bool
    loop_enabled: bool
    state: SessionState = SessionState.IDLE
    iteration_count: int = 0
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "isPlaying": self.is_playing,
            "shouldLoop": self.loop_enabled,
            "state": self.state.value,
            "iterationCount": self.iteration_count,
            "error": self.error,
        }
