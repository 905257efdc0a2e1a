"""Command vocabulary exchanged over the message bus."""

from __future__ import annotations

from typing import Any

from audio.tts import SpeechEventKind, SpeechOptions, clamp_rate
from bus.message_bus import Envelope

CONTROLLER = "controller"
SURROGATE = "surrogate"

PLAY = "play"
STOP = "stop"
GET_STATUS = "getStatus"
PLAY_AUDIO = "playAudio"
STOP_AUDIO = "stopAudio"
GET_AUDIO_STATUS = "getAudioStatus"
AUDIO_EVENT = "audioEvent"


def play_text(text: str, options: SpeechOptions, should_loop: bool) -> Envelope:
    payload = options.to_payload()
    payload["rate"] = clamp_rate(options.rate)
    return Envelope(PLAY, {"text": text, "options": payload, "shouldLoop": should_loop})


def play_encoded(encoded_audio: str, should_loop: bool, duration_hint_s: float = 0.0) -> Envelope:
    return Envelope(
        PLAY,
        {"encodedAudio": encoded_audio, "durationHint": duration_hint_s, "shouldLoop": should_loop},
    )


def stop() -> Envelope:
    return Envelope(STOP)


def get_status() -> Envelope:
    return Envelope(GET_STATUS)


def play_audio(encoded_audio: str, should_loop: bool, playback_id: str | None = None) -> Envelope:
    payload: dict[str, Any] = {"encodedAudio": encoded_audio, "shouldLoop": should_loop}
    if playback_id is not None:
        payload["playbackId"] = playback_id
    return Envelope(PLAY_AUDIO, payload)


def stop_audio() -> Envelope:
    return Envelope(STOP_AUDIO)


def get_audio_status() -> Envelope:
    return Envelope(GET_AUDIO_STATUS)


def audio_event(
    kind: SpeechEventKind,
    playback_id: str | None,
    detail: str | None = None,
    *,
    fatal: bool = False,
) -> Envelope:
    """Lifecycle notification from the surrogate; ``fatal`` marks audio that can never play."""
    payload: dict[str, Any] = {"event": kind.value, "playbackId": playback_id}
    if detail:
        payload["detail"] = detail
    if fatal:
        payload["fatal"] = True
    return Envelope(AUDIO_EVENT, payload)


def unknown_type(envelope: Envelope) -> dict[str, Any]:
    return {"success": False, "error": f"Unknown message type: {envelope.type}"}
