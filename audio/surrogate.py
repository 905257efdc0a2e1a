"""Audio surrogate: an isolated context that decodes and plays pre-rendered audio."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Callable, Sequence

from audio.output import AudioOutput
from audio.tts import SpeechEventKind
from bus import commands
from bus.message_bus import Envelope
from infra.errors import DecodeError, PlaybackDeviceError
from infra.logging import log_event

logger = logging.getLogger("speakflow.surrogate")

EventSink = Callable[[Envelope], object]


class AudioSurrogate:
    """Plays audio on request, reachable only through bus messages.

    Outputs are tried in order; the first one that decodes and starts wins.
    Lifecycle notifications go to ``events`` on a best-effort basis.
    """

    def __init__(
        self,
        outputs: Sequence[AudioOutput],
        *,
        grace_seconds: float = 0.3,
        events: EventSink | None = None,
        native_loop: bool = True,
    ) -> None:
        if not outputs:
            raise ValueError("at least one audio output is required")
        self._outputs = list(outputs)
        self._grace_seconds = grace_seconds
        self._events = events
        self._native_loop = native_loop
        self._output: AudioOutput | None = None
        self._looping = False
        self._native = False
        self._playback_id: str | None = None
        self._generation = 0
        self._restart_task: asyncio.Task | None = None
        self.iterations = 0

    @property
    def looping(self) -> bool:
        return self._looping

    @property
    def active_output(self) -> str | None:
        return None if self._output is None else self._output.name

    async def handle(self, envelope: Envelope) -> dict[str, Any]:
        if envelope.type == commands.PLAY_AUDIO:
            payload = envelope.payload
            return await self.play_audio(
                str(payload.get("encodedAudio") or ""),
                bool(payload.get("shouldLoop", False)),
                playback_id=payload.get("playbackId"),
            )
        if envelope.type == commands.STOP_AUDIO:
            return self.stop_audio()
        if envelope.type == commands.GET_AUDIO_STATUS:
            return self.get_audio_status()
        return commands.unknown_type(envelope)

    async def play_audio(self, encoded_audio: str, loop_enabled: bool, *, playback_id: str | None = None) -> dict[str, Any]:
        self.stop_audio()
        if not encoded_audio.strip():
            return {"success": False, "error": "audio payload is empty"}
        try:
            data = base64.b64decode(encoded_audio, validate=True)
        except (binascii.Error, ValueError) as exc:
            self._emit(SpeechEventKind.ERROR, playback_id, f"invalid base64 audio: {exc}", fatal=True)
            return {"success": False, "error": f"invalid base64 audio: {exc}"}

        self._generation += 1
        generation = self._generation
        self._playback_id = playback_id
        self._looping = loop_enabled
        self.iterations = 0
        failures: list[str] = []
        for output in self._outputs:
            native = loop_enabled and self._native_loop and output.supports_native_loop
            try:
                output.prepare(data)
                await output.play(loop=native, on_finished=self._finished_handler(generation, output))
            except (DecodeError, PlaybackDeviceError) as exc:
                output.release()
                failures.append(f"{output.name}: {exc}")
                log_event(
                    logger,
                    logging.WARNING,
                    "audio output failed; trying next",
                    event_type="output_fallback",
                    output=output.name,
                    error=str(exc),
                )
                continue
            if generation != self._generation:
                output.release()
                return {"success": False, "error": "superseded by a newer command"}
            self._output = output
            self._native = native
            log_event(
                logger,
                logging.INFO,
                "audio playback started",
                event_type="audio_started",
                output=output.name,
                loop=loop_enabled,
                native_loop=native,
                playback_id=playback_id,
            )
            self._emit(SpeechEventKind.START, playback_id)
            return {"success": True, "output": output.name}

        self._looping = False
        message = "; ".join(failures)
        log_event(logger, logging.ERROR, "no audio output could play", event_type="audio_failed", error=message)
        self._emit(SpeechEventKind.ERROR, playback_id, message, fatal=True)
        return {"success": False, "error": message}

    def stop_audio(self) -> dict[str, Any]:
        # The loop flag goes first so an in-flight completion cannot restart playback.
        self._looping = False
        self._generation += 1
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done():
            task.cancel()
        output, self._output = self._output, None
        if output is not None:
            output.stop()
            output.release()
            log_event(logger, logging.INFO, "audio playback stopped", event_type="audio_stopped", output=output.name)
        return {"success": True}

    def get_audio_status(self) -> dict[str, Any]:
        output = self._output
        playing = output is not None and (output.is_active() or self._looping)
        return {"isPlaying": playing}

    def _finished_handler(self, generation: int, output: AudioOutput) -> Callable[[str | None], None]:
        def on_finished(error: str | None) -> None:
            self._on_finished(generation, output, error)

        return on_finished

    def _on_finished(self, generation: int, output: AudioOutput, error: str | None) -> None:
        if generation != self._generation or output is not self._output:
            return
        if error is not None:
            log_event(logger, logging.ERROR, "audio playback failed", event_type="audio_failed", error=error)
            self._emit(SpeechEventKind.ERROR, self._playback_id, error)
            self._teardown()
            return
        if self._looping and not self._native:
            self.iterations += 1
            self._restart_task = asyncio.get_running_loop().create_task(self._restart_after_grace(generation, output))
            return
        self._emit(SpeechEventKind.END, self._playback_id)
        self._teardown()

    async def _restart_after_grace(self, generation: int, output: AudioOutput) -> None:
        # _restart_task stays set until play returns so stop_audio can cancel a restart mid-open.
        try:
            await asyncio.sleep(self._grace_seconds)
            if generation != self._generation or not self._looping:
                return
            try:
                await output.play(loop=False, on_finished=self._finished_handler(generation, output))
            except asyncio.CancelledError:
                output.stop()
                output.release()
                raise
            except PlaybackDeviceError as exc:
                if generation != self._generation:
                    return
                log_event(logger, logging.ERROR, "loop restart failed", event_type="audio_failed", error=str(exc))
                self._emit(SpeechEventKind.ERROR, self._playback_id, str(exc))
                self._teardown()
                return
        finally:
            if self._restart_task is asyncio.current_task():
                self._restart_task = None
        if generation != self._generation or output is not self._output:
            output.stop()
            output.release()
            return
        log_event(
            logger,
            logging.INFO,
            "audio loop restarted",
            event_type="audio_loop",
            iteration=self.iterations,
            playback_id=self._playback_id,
        )

    def _teardown(self) -> None:
        self._looping = False
        output, self._output = self._output, None
        if output is not None:
            output.release()

    def _emit(
        self,
        kind: SpeechEventKind,
        playback_id: str | None,
        detail: str | None = None,
        *,
        fatal: bool = False,
    ) -> None:
        if self._events is None:
            return
        self._events(commands.audio_event(kind, playback_id, detail, fatal=fatal))
