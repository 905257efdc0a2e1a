"""Client side of the controller endpoint, as used by a UI or a CLI."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from audio.tts import SpeechOptions
from bus import commands
from bus.message_bus import Envelope, MessageBus
from infra.errors import SurrogateCommunicationError
from infra.logging import log_event

logger = logging.getLogger("speakflow.client")


@dataclass(frozen=True)
class CommandResult:
    success: bool
    error: str | None = None
    confirmed: bool = True


class PlaybackClient:
    """Sends play/stop/getStatus and reconciles the view by polling."""

    def __init__(self, bus: MessageBus, *, target: str = commands.CONTROLLER, poll_interval_s: float = 2.0) -> None:
        self._bus = bus
        self._target = target
        self.poll_interval_s = poll_interval_s

    async def play(self, text: str, options: SpeechOptions | None = None, *, loop: bool = False) -> CommandResult:
        if not text.strip():
            return CommandResult(success=False, error="text is empty")
        envelope = commands.play_text(text.strip(), options or SpeechOptions(), loop)
        return await self._send(envelope)

    async def play_audio(self, encoded_audio: str, *, loop: bool = False, duration_hint_s: float = 0.0) -> CommandResult:
        return await self._send(commands.play_encoded(encoded_audio, loop, duration_hint_s))

    async def stop(self) -> CommandResult:
        result = await self._send(commands.stop())
        if not result.confirmed:
            # The local view is reset anyway; the next poll reconciles.
            return CommandResult(success=True, error=result.error, confirmed=False)
        return result

    async def get_status(self) -> dict[str, Any] | None:
        try:
            return await self._bus.request(self._target, commands.get_status())
        except SurrogateCommunicationError as exc:
            log_event(logger, logging.WARNING, "status poll failed", event_type="status_unavailable", error=str(exc))
            return None

    async def toggle(self, text: str, options: SpeechOptions | None = None, *, loop: bool = False) -> CommandResult:
        """Stop when something is playing, otherwise start ``text``."""
        status = await self.get_status()
        if status and status.get("isPlaying"):
            return await self.stop()
        return await self.play(text, options, loop=loop)

    async def watch_status(
        self,
        on_change: Callable[[dict[str, Any]], None],
        *,
        max_polls: int | None = None,
    ) -> None:
        """Poll getStatus and report each change; unreachable polls are skipped."""
        last: dict[str, Any] | None = None
        polls = 0
        while max_polls is None or polls < max_polls:
            status = await self.get_status()
            polls += 1
            if status is not None and status != last:
                last = status
                on_change(status)
            if max_polls is not None and polls >= max_polls:
                break
            await asyncio.sleep(self.poll_interval_s)

    async def _send(self, envelope: Envelope) -> CommandResult:
        try:
            response = await self._bus.request(self._target, envelope)
        except SurrogateCommunicationError as exc:
            log_event(
                logger,
                logging.WARNING,
                "command not confirmed",
                event_type="command_unconfirmed",
                message_type=envelope.type,
                error=str(exc),
            )
            return CommandResult(success=False, error=str(exc), confirmed=False)
        return CommandResult(success=bool(response.get("success")), error=response.get("error"))
