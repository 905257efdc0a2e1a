"""Synthesis adapter: canonical lifecycle events over a local text-to-speech engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from infra.errors import SynthesisError
from infra.logging import log_event

logger = logging.getLogger("speakflow.adapter")

MIN_RATE = 0.1
MAX_RATE = 10.0

STARTED_UTTERANCE = "started-utterance"
FINISHED_UTTERANCE = "finished-utterance"
ENGINE_ERROR = "error"


class SpeechEventKind(str, Enum):
    START = "start"
    END = "end"
    ERROR = "error"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SpeechEvent:
    """One canonical lifecycle notification, optionally tagged with its utterance."""

    kind: SpeechEventKind
    utterance_id: str | None = None
    detail: str | None = None
    fatal: bool = False


@dataclass(frozen=True)
class SpeechOptions:
    """Voice options for one utterance; ``rate`` is a speed multiplier."""

    lang: str = ""
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    voice: str | None = None
    engine: str = "local"
    remote_voice: str | None = None
    remote_model: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "SpeechOptions":
        payload = payload or {}
        engine = str(payload.get("engine", "local"))
        if engine not in {"local", "remote"}:
            raise ValueError("engine must be 'local' or 'remote'")
        return cls(
            lang=str(payload.get("lang", "")),
            rate=clamp_rate(float(payload.get("rate", 1.0))),
            pitch=float(payload.get("pitch", 1.0)),
            volume=float(payload.get("volume", 1.0)),
            voice=payload.get("voiceName") or payload.get("voice"),
            engine=engine,
            remote_voice=payload.get("remoteVoice"),
            remote_model=payload.get("remoteModel"),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "lang": self.lang,
            "rate": self.rate,
            "pitch": self.pitch,
            "volume": self.volume,
            "engine": self.engine,
        }
        if self.voice:
            payload["voiceName"] = self.voice
        if self.remote_voice:
            payload["remoteVoice"] = self.remote_voice
        if self.remote_model:
            payload["remoteModel"] = self.remote_model
        return payload


def clamp_rate(rate: float) -> float:
    return max(MIN_RATE, min(MAX_RATE, rate))


EventListener = Callable[[SpeechEvent], None]


class SpeechEngine(Protocol):
    """Local text-to-speech primitive with pyttsx3-style raw notifications.

    Raw topics: ``started-utterance(name)``, ``finished-utterance(name, completed)``
    and ``error(name, exception)``.
    """

    def connect(self, topic: str, callback: Callable[..., None]) -> object: ...

    def disconnect(self, token: object) -> None: ...

    def say(self, text: str, options: SpeechOptions, name: str) -> None: ...

    def stop(self) -> None: ...


class SynthesisAdapter:
    """Translates raw engine notifications into :class:`SpeechEvent` values."""

    def __init__(self, engine: SpeechEngine) -> None:
        self._engine = engine
        self._listener: EventListener | None = None
        self._tokens: list[object] = []
        self._halted: set[str] = set()
        self._current: str | None = None

    @property
    def current_utterance(self) -> str | None:
        return self._current

    def register_listener(self, listener: EventListener) -> None:
        """(Re)attach the listener; earlier engine subscriptions are dropped first."""
        self._listener = listener
        for token in self._tokens:
            try:
                self._engine.disconnect(token)
            except (KeyError, ValueError):
                continue
        self._tokens = [
            self._engine.connect(STARTED_UTTERANCE, self._on_started),
            self._engine.connect(FINISHED_UTTERANCE, self._on_finished),
            self._engine.connect(ENGINE_ERROR, self._on_error),
        ]

    def speak(self, text: str, options: SpeechOptions, utterance_id: str) -> None:
        """Start one utterance. Raises :class:`SynthesisError` if the engine refuses it."""
        if self._listener is None:
            raise SynthesisError("no listener registered before speak()")
        self.register_listener(self._listener)
        self._current = utterance_id
        try:
            self._engine.say(text, options, utterance_id)
        except SynthesisError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SynthesisError(f"speech engine rejected utterance: {exc}") from exc

    def halt(self) -> None:
        """Best-effort stop of the current utterance."""
        if self._current is not None:
            self._halted.add(self._current)
        try:
            self._engine.stop()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "speech engine stop failed", event_type="adapter_halt_failed", error=str(exc))
        self._current = None

    def _emit(self, event: SpeechEvent) -> None:
        if self._listener is None:
            return
        self._listener(event)

    def _on_started(self, name: str | None = None) -> None:
        self._emit(SpeechEvent(SpeechEventKind.START, utterance_id=name))

    def _on_finished(self, name: str | None = None, completed: bool = True) -> None:
        if completed:
            kind = SpeechEventKind.END
        elif name is not None and name in self._halted:
            kind = SpeechEventKind.CANCELLED
        else:
            kind = SpeechEventKind.INTERRUPTED
        if name is not None:
            self._halted.discard(name)
        self._emit(SpeechEvent(kind, utterance_id=name))

    def _on_error(self, name: str | None = None, exception: BaseException | None = None) -> None:
        self._emit(SpeechEvent(SpeechEventKind.ERROR, utterance_id=name, detail=str(exception) if exception else None))


@dataclass
class InMemorySpeechEngine:
    """Test engine that records utterances and lets tests fire raw notifications."""

    spoken: list[tuple[str, SpeechOptions, str]] = field(default_factory=list)
    stops: int = 0
    fail_next_say: bool = False
    _subscribers: dict[int, tuple[str, Callable[..., None]]] = field(default_factory=dict)
    _next_token: int = 0

    def connect(self, topic: str, callback: Callable[..., None]) -> object:
        self._next_token += 1
        self._subscribers[self._next_token] = (topic, callback)
        return self._next_token

    def disconnect(self, token: object) -> None:
        self._subscribers.pop(token, None)  # type: ignore[arg-type]

    def say(self, text: str, options: SpeechOptions, name: str) -> None:
        if self.fail_next_say:
            self.fail_next_say = False
            raise RuntimeError("engine unavailable")
        self.spoken.append((text, options, name))

    def stop(self) -> None:
        self.stops += 1

    def fire(self, topic: str, *args: Any) -> None:
        for subscribed_topic, callback in list(self._subscribers.values()):
            if subscribed_topic == topic:
                callback(*args)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def last_name(self) -> str:
        return self.spoken[-1][2]
