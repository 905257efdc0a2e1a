"""Remote speech synthesis through the OpenAI audio API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import openai
from openai import OpenAI

from audio.output import audio_duration
from audio.tts import SpeechOptions
from infra.errors import DecodeError, RemoteSynthesisError
from infra.logging import log_event

logger = logging.getLogger("speakflow.remote")

MIN_SPEED = 0.25
MAX_SPEED = 4.0
DEFAULT_MODEL = "tts-1"
DEFAULT_VOICE = "alloy"


@dataclass(frozen=True)
class RemoteVoice:
    id: str
    name: str
    gender: str


VOICES = (
    RemoteVoice("alloy", "Alloy", "neutral"),
    RemoteVoice("echo", "Echo", "male"),
    RemoteVoice("fable", "Fable", "neutral"),
    RemoteVoice("onyx", "Onyx", "male"),
    RemoteVoice("nova", "Nova", "female"),
    RemoteVoice("shimmer", "Shimmer", "female"),
)

_LANGUAGE_VOICES = {"zh": "nova", "ja": "shimmer", "ko": "shimmer"}


def recommended_voice(lang: str) -> str:
    prefix = lang.lower().split("-")[0]
    return _LANGUAGE_VOICES.get(prefix, DEFAULT_VOICE)


def clamp_speed(speed: float) -> float:
    return max(MIN_SPEED, min(MAX_SPEED, speed))


@dataclass(frozen=True)
class SynthesizedAudio:
    data: bytes
    duration_s: float
    voice: str
    model: str


class RemoteSynthesizer:
    """Generates WAV audio for a text; errors surface as :class:`RemoteSynthesisError`."""

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        voice: str = DEFAULT_VOICE,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.voice = voice
        self._api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def generate_speech(self, text: str, *, voice: str | None = None, model: str | None = None, speed: float = 1.0) -> bytes:
        if not self.configured:
            raise RemoteSynthesisError("OpenAI API key is not set")
        client = self._client_or_create()
        voice = voice or self.voice
        model = model or self.model
        speed = clamp_speed(speed)
        log_event(
            logger,
            logging.INFO,
            "remote synthesis requested",
            event_type="remote_request",
            chars=len(text),
            voice=voice,
            model=model,
            speed=speed,
        )
        try:
            response = client.audio.speech.create(
                model=model,
                voice=voice,
                input=text,
                speed=speed,
                response_format="wav",
            )
        except openai.AuthenticationError as exc:
            raise RemoteSynthesisError("API key is invalid or expired; check the OpenAI API key") from exc
        except openai.RateLimitError as exc:
            raise RemoteSynthesisError("API rate limit or quota exceeded; try again later") from exc
        except openai.BadRequestError as exc:
            raise RemoteSynthesisError(f"invalid request parameters: {exc}") from exc
        except openai.APIError as exc:
            raise RemoteSynthesisError(f"OpenAI API error: {exc}") from exc
        data = response.content
        log_event(logger, logging.INFO, "remote synthesis finished", event_type="remote_done", size=len(data))
        return data

    async def synthesize(self, text: str, options: SpeechOptions) -> SynthesizedAudio:
        voice = options.remote_voice or (recommended_voice(options.lang) if options.lang else self.voice)
        model = options.remote_model or self.model
        data = await asyncio.to_thread(self.generate_speech, text, voice=voice, model=model, speed=options.rate)
        try:
            duration = audio_duration(data)
        except DecodeError:
            duration = 0.0
        return SynthesizedAudio(data=data, duration_s=duration, voice=voice, model=model)

    def validate_api_key(self, api_key: str) -> tuple[bool, str | None]:
        """Check a key with a tiny synthesis request."""
        if not api_key or not api_key.strip():
            return False, "API key must not be empty"
        probe = RemoteSynthesizer(api_key=api_key.strip(), model=DEFAULT_MODEL, voice=DEFAULT_VOICE)
        try:
            probe.generate_speech("test")
        except RemoteSynthesisError as exc:
            return False, str(exc)
        return True, None

    def _client_or_create(self) -> Any:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client
