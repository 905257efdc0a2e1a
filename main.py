"""SpeakFlow entry point: health checks, runtime wiring and a small CLI."""

from __future__ import annotations

import argparse
import asyncio
import base64
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from audio.engine import Pyttsx3Engine
from audio.output import AudioOutput, SoundDeviceOutput, SubprocessOutput, audio_duration, default_player_command
from audio.remote import RemoteSynthesizer
from audio.surrogate import AudioSurrogate
from audio.tts import SpeechOptions, SynthesisAdapter
from bus import commands
from bus.client import PlaybackClient
from bus.message_bus import MessageBus
from infra.config import Settings, load_dotenv, load_settings
from infra.errors import DecodeError, HealthCheckFailed, SynthesisError
from infra.logging import get_logger
from infra.storage import JsonFileSnapshotStore
from infra.time_utils import LoopScheduler
from state.controller import SessionController


@dataclass
class Runtime:
    """Everything wired together on one event loop."""

    settings: Settings
    bus: MessageBus
    engine: Pyttsx3Engine
    surrogate: AudioSurrogate
    controller: SessionController
    client: PlaybackClient

    async def close(self) -> None:
        self.controller.stop()
        self.surrogate.stop_audio()
        await self.bus.close()
        self.engine.close()


def run_startup_health_checks() -> tuple[bool, dict[str, bool]]:
    """Run lightweight startup checks for configuration, logging and audio output."""
    checks = {"config_loadable": False, "logger_writable": False, "audio_output": False}
    try:
        load_dotenv()
        settings = load_settings()
        checks["config_loadable"] = True
        logger = get_logger(primary_path=settings.log_path)
        checks["audio_output"] = SoundDeviceOutput.probe() or default_player_command(settings.system_audio_player) is not None
        logger.info("startup health checks completed", extra={"event_type": "health_check", "metadata": checks})
        checks["logger_writable"] = True
    except Exception:
        return False, checks
    return all(checks.values()), checks


def build_outputs(settings: Settings) -> list[AudioOutput]:
    return [SoundDeviceOutput(), SubprocessOutput(default_player_command(settings.system_audio_player))]


async def build_runtime(settings: Settings) -> Runtime:
    loop = asyncio.get_running_loop()
    bus = MessageBus(request_timeout_s=settings.request_timeout_seconds)
    scheduler = LoopScheduler(loop)

    engine = Pyttsx3Engine(post=loop.call_soon_threadsafe, base_rate=settings.local_tts_base_rate)
    try:
        engine.start()
    except SynthesisError as exc:
        raise HealthCheckFailed(f"local speech engine unavailable: {exc}") from exc

    surrogate = AudioSurrogate(
        build_outputs(settings),
        grace_seconds=settings.loop_grace_seconds,
        events=lambda envelope: bus.notify(commands.CONTROLLER, envelope),
    )
    synthesizer = None
    if settings.openai_api_key:
        synthesizer = RemoteSynthesizer(
            api_key=settings.openai_api_key,
            model=settings.openai_tts_model,
            voice=settings.openai_tts_voice,
        )
    controller = SessionController(
        settings=settings,
        adapter=SynthesisAdapter(engine),
        bus=bus,
        store=JsonFileSnapshotStore(settings.snapshot_path),
        scheduler=scheduler,
        synthesizer=synthesizer,
    )
    bus.register(commands.SURROGATE, surrogate.handle)
    bus.register(commands.CONTROLLER, controller.handle_message)
    controller.restore_diagnostics()

    client = PlaybackClient(bus, poll_interval_s=settings.status_poll_interval_seconds)
    return Runtime(settings=settings, bus=bus, engine=engine, surrogate=surrogate, controller=controller, client=client)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="speakflow", description="Speak text once or on a loop.")
    parser.add_argument("text", nargs="?", default="", help="text to speak")
    parser.add_argument("--audio-file", help="play a pre-rendered audio file instead of text")
    parser.add_argument("--loop", action="store_true", help="repeat until interrupted")
    parser.add_argument("--rate", type=float, default=1.0, help="speed multiplier (0.1 to 10)")
    parser.add_argument("--lang", default="", help="language tag used to pick a voice")
    parser.add_argument("--voice", default=None, help="local voice name or id")
    parser.add_argument("--remote", action="store_true", help="synthesize with the OpenAI speech API")
    parser.add_argument("--remote-voice", default=None, help="remote voice id")
    parser.add_argument("--duration", type=float, default=None, help="stop after this many seconds")
    return parser


async def run_cli(args: argparse.Namespace, settings: Settings) -> int:
    logger = get_logger()
    runtime = await build_runtime(settings)
    try:
        if args.audio_file:
            data = Path(args.audio_file).read_bytes()
            try:
                hint = audio_duration(data)
            except DecodeError:
                hint = 0.0
            result = await runtime.client.play_audio(base64.b64encode(data).decode("ascii"), loop=args.loop, duration_hint_s=hint)
        else:
            options = SpeechOptions(
                lang=args.lang,
                rate=args.rate,
                voice=args.voice,
                engine="remote" if args.remote else "local",
                remote_voice=args.remote_voice,
            )
            result = await runtime.client.play(args.text, options, loop=args.loop)
        if not result.success:
            logger.error("play rejected", extra={"event_type": "cli_error", "metadata": {"error": result.error}})
            print(f"error: {result.error}")
            return 1

        deadline = None if args.duration is None else asyncio.get_running_loop().time() + args.duration
        while True:
            await asyncio.sleep(runtime.client.poll_interval_s)
            status = await runtime.client.get_status()
            if status is not None and not status.get("isPlaying"):
                if status.get("error"):
                    print(f"error: {status['error']}")
                    return 1
                return 0
            if deadline is not None and asyncio.get_running_loop().time() >= deadline:
                await runtime.client.stop()
                return 0
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    ok, checks = run_startup_health_checks()
    logger = get_logger()
    if not ok:
        logger.error("startup health checks failed", extra={"event_type": "health_check", "metadata": checks})
        return 1
    if not args.text and not args.audio_file:
        logger.info("speakflow initialized", extra={"event_type": "startup", "metadata": checks})
        return 0

    settings = load_settings()
    try:
        return asyncio.run(run_cli(args, settings))
    except HealthCheckFailed as exc:
        logger.error("runtime failed to start", extra={"event_type": "startup_failed", "metadata": {"error": str(exc)}})
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
