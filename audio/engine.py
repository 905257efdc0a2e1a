"""pyttsx3-backed local speech engine hosted on its own worker thread."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

import pyttsx3

from audio.tts import ENGINE_ERROR, FINISHED_UTTERANCE, STARTED_UTTERANCE, SpeechOptions
from infra.errors import SynthesisError
from infra.logging import log_event

logger = logging.getLogger("speakflow.engine")

Poster = Callable[[Callable[[], None]], None]

_TOPICS = (STARTED_UTTERANCE, FINISHED_UTTERANCE, ENGINE_ERROR)


class Pyttsx3Engine:
    """Owns a pyttsx3 engine on a dedicated thread.

    Every pyttsx3 call happens on the worker thread. Raw notifications are
    handed to ``post`` (typically ``loop.call_soon_threadsafe``) so subscribers
    run on the caller's event loop.
    """

    def __init__(
        self,
        *,
        post: Poster,
        base_rate: int = 200,
        driver_name: str | None = None,
        poll_seconds: float = 0.05,
    ) -> None:
        self._post = post
        self._base_rate = base_rate
        self._driver_name = driver_name
        self._poll_seconds = poll_seconds
        self._commands: queue.Queue[Callable[[Any], None] | None] = queue.Queue()
        self._subscribers: dict[int, tuple[str, Callable[..., None]]] = {}
        self._next_token = 0
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._init_error: BaseException | None = None

    def start(self, timeout_s: float = 5.0) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="speakflow-tts", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout_s):
            raise SynthesisError("speech engine did not start in time")
        if self._init_error is not None:
            raise SynthesisError(f"speech engine failed to initialise: {self._init_error}") from self._init_error

    def close(self) -> None:
        if self._thread is None:
            return
        self._commands.put(None)
        self._thread.join(timeout=2.0)
        self._thread = None

    def connect(self, topic: str, callback: Callable[..., None]) -> object:
        self._next_token += 1
        self._subscribers[self._next_token] = (topic, callback)
        return self._next_token

    def disconnect(self, token: object) -> None:
        self._subscribers.pop(token, None)  # type: ignore[arg-type]

    def say(self, text: str, options: SpeechOptions, name: str) -> None:
        if self._thread is None:
            raise SynthesisError("speech engine is not running")

        def command(engine: Any) -> None:
            engine.setProperty("rate", int(self._base_rate * options.rate))
            engine.setProperty("volume", max(0.0, min(1.0, options.volume)))
            voice_id = _pick_voice(engine, options)
            if voice_id:
                engine.setProperty("voice", voice_id)
            engine.say(text, name)

        self._commands.put(command)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._commands.put(lambda engine: engine.stop())

    def _run(self) -> None:
        try:
            engine = pyttsx3.init(self._driver_name)
            for topic in _TOPICS:
                engine.connect(topic, self._relay(topic))
            engine.startLoop(False)
        except Exception as exc:  # noqa: BLE001
            self._init_error = exc
            self._ready.set()
            return
        self._ready.set()

        try:
            while True:
                try:
                    command = self._commands.get(timeout=self._poll_seconds)
                except queue.Empty:
                    engine.iterate()
                    continue
                if command is None:
                    break
                try:
                    command(engine)
                except Exception as exc:  # noqa: BLE001
                    self._post(lambda exc=exc: self._deliver(ENGINE_ERROR, {"name": None, "exception": exc}))
                engine.iterate()
        finally:
            engine.endLoop()
            log_event(logger, logging.INFO, "speech engine stopped", event_type="engine_closed")

    def _relay(self, topic: str) -> Callable[..., None]:
        def relay(**kwargs: Any) -> None:
            self._post(lambda: self._deliver(topic, kwargs))

        return relay

    def _deliver(self, topic: str, kwargs: dict[str, Any]) -> None:
        for subscribed_topic, callback in list(self._subscribers.values()):
            if subscribed_topic == topic:
                callback(**kwargs)


def _pick_voice(engine: Any, options: SpeechOptions) -> str | None:
    voices = engine.getProperty("voices") or []
    if options.voice:
        wanted = options.voice.lower()
        for voice in voices:
            if wanted in (voice.id or "").lower() or wanted in (voice.name or "").lower():
                return voice.id
    if options.lang:
        prefix = options.lang.lower().split("-")[0]
        for voice in voices:
            languages = [
                lang.decode(errors="ignore") if isinstance(lang, bytes) else str(lang)
                for lang in (getattr(voice, "languages", None) or [])
            ]
            if any(prefix in lang.lower() for lang in languages):
                return voice.id
    return None
