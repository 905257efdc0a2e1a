import asyncio

import pytest

from audio.remote import SynthesizedAudio
from audio.tts import ENGINE_ERROR, FINISHED_UTTERANCE, STARTED_UTTERANCE, SpeechEvent, SpeechEventKind, SpeechOptions
from bus import commands
from bus.message_bus import Envelope
from infra.config import Settings
from infra.errors import RemoteSynthesisError, StartupError
from state.heartbeat import HeartbeatSnapshot
from state.session import AudioContent, SessionState, TextContent
from state.watchdog import WatchdogKind


def hello(rate: float = 1.0) -> TextContent:
    return TextContent(text="Hello world", options=SpeechOptions(rate=rate))


def test_play_start_then_end_goes_idle_without_later_watchdog(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=False)
    assert session.state == SessionState.STARTING
    name = harness.engine.last_name

    harness.engine.fire(STARTED_UTTERANCE, name)
    assert session.state == SessionState.PLAYING

    harness.engine.fire(FINISHED_UTTERANCE, name, True)
    assert session.state == SessionState.IDLE
    assert harness.controller.session is None

    harness.scheduler.advance(30.0)
    assert harness.scheduler.pending() == []
    assert len(harness.engine.spoken) == 1
    assert harness.controller.get_status().is_playing is False


def test_non_looping_session_has_only_fallback_watchdog(harness) -> None:
    harness.controller.play(hello(), loop_enabled=False)
    assert harness.controller.watchdogs.armed_kinds == {WatchdogKind.FALLBACK}


def test_looping_session_arms_both_watchdogs(harness) -> None:
    harness.controller.play(hello(), loop_enabled=True)
    assert harness.controller.watchdogs.armed_kinds == {WatchdogKind.FALLBACK, WatchdogKind.LOOP_PROTECTION}


def test_missing_end_event_completes_non_looping_session_by_fallback(harness) -> None:
    harness.controller.play(hello(), loop_enabled=False)
    harness.scheduler.advance(4.4)
    assert harness.controller.session is not None

    harness.scheduler.advance(0.2)
    assert harness.controller.session is None
    assert harness.controller.get_status().state == SessionState.IDLE


def test_loop_without_end_restarts_via_fallback_watchdog(make_harness) -> None:
    h = make_harness(Settings(loop_protection_multiplier=2.0))
    session = h.controller.play(hello(), loop_enabled=True)

    h.scheduler.advance(4.6)
    assert session.iteration_count == 1
    assert session.state == SessionState.LOOPING

    h.scheduler.advance(0.3)
    assert session.state == SessionState.STARTING
    assert len(h.engine.spoken) == 2
    assert h.engine.last_name == f"{session.session_id}:1"

    # The first iteration's loop-protection timer would have fired at 6.0.
    h.scheduler.advance(1.2)
    assert session.iteration_count == 1


def test_loop_protection_completes_first_when_looping(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=True)
    harness.scheduler.advance(3.35)
    assert session.iteration_count == 1
    harness.scheduler.advance(1.5)
    assert session.iteration_count == 1
    assert len(harness.engine.spoken) == 2


def test_end_event_after_watchdog_completion_is_dropped(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=True)
    first = harness.engine.last_name
    harness.scheduler.advance(3.35)
    assert session.completion_in_flight is True

    harness.engine.fire(FINISHED_UTTERANCE, first, True)
    assert session.iteration_count == 1

    harness.scheduler.advance(0.3)
    harness.engine.fire(FINISHED_UTTERANCE, first, True)
    assert session.iteration_count == 1
    assert session.state == SessionState.STARTING


def test_n_completion_triggers_count_n_iterations(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=True)
    for _ in range(3):
        name = harness.engine.last_name
        harness.engine.fire(STARTED_UTTERANCE, name)
        harness.engine.fire(FINISHED_UTTERANCE, name, True)
        harness.scheduler.advance(0.31)

    assert session.iteration_count == 3
    assert len(harness.engine.spoken) == 4
    assert harness.controller.get_status().is_playing is True


def test_back_to_back_play_leaves_no_orphan_timers(harness) -> None:
    first = harness.controller.play(hello(), loop_enabled=True)
    first_timers = list(harness.scheduler.pending())
    second = harness.controller.play(TextContent("Another sentence to repeat"), loop_enabled=True)

    assert all(timer.cancelled for timer in first_timers)
    assert first.state == SessionState.IDLE
    assert harness.engine.stops == 1

    harness.scheduler.advance(3.35)
    assert first.iteration_count == 0
    assert second.iteration_count == 1
    assert harness.controller.session is second


def test_start_event_rearms_watchdogs_from_actual_start(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=False)
    harness.scheduler.advance(2.0)
    harness.engine.fire(STARTED_UTTERANCE, harness.engine.last_name)

    harness.scheduler.advance(4.4)
    assert harness.controller.session is session
    harness.scheduler.advance(0.2)
    assert harness.controller.session is None


def test_watchdog_repolls_until_threshold(make_harness) -> None:
    h = make_harness(Settings(fallback_watchdog_multiplier=0.5))
    h.controller.play(hello(), loop_enabled=False)

    h.scheduler.advance(2.4)
    watchdog = h.controller.watchdogs.get(WatchdogKind.FALLBACK)
    assert h.controller.session is not None
    assert watchdog is not None and watchdog.repolls == 3

    h.scheduler.advance(0.2)
    assert h.controller.session is None


def test_stop_from_any_state_reports_not_playing(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=True)
    harness.engine.fire(STARTED_UTTERANCE, harness.engine.last_name)
    harness.controller.stop()

    status = harness.controller.get_status()
    assert status.is_playing is False
    assert status.state == SessionState.IDLE
    assert session.state == SessionState.IDLE
    assert harness.scheduler.pending() == []
    assert harness.store.current is None


def test_stop_during_loop_grace_prevents_restart(harness) -> None:
    harness.controller.play(hello(), loop_enabled=True)
    harness.scheduler.advance(3.35)
    harness.controller.stop()
    harness.scheduler.advance(5.0)
    assert len(harness.engine.spoken) == 1


def test_stop_without_session_is_noop(harness) -> None:
    harness.controller.stop()
    assert harness.controller.get_status().is_playing is False
    assert harness.engine.stops == 0


def test_cancelled_event_after_stop_is_ignored(harness) -> None:
    harness.controller.play(hello(), loop_enabled=False)
    name = harness.engine.last_name
    harness.controller.stop()
    harness.engine.fire(FINISHED_UTTERANCE, name, False)
    assert harness.controller.get_status().state == SessionState.IDLE


def test_empty_content_raises_startup_error(harness) -> None:
    with pytest.raises(StartupError):
        harness.controller.play(TextContent("   "), loop_enabled=False)
    assert harness.controller.session is None


def test_engine_error_ends_non_looping_session_with_error_status(harness) -> None:
    harness.controller.play(hello(), loop_enabled=False)
    harness.engine.fire(ENGINE_ERROR, harness.engine.last_name, RuntimeError("voice missing"))

    status = harness.controller.get_status()
    assert status.is_playing is False
    assert status.state == SessionState.ERROR
    assert status.error == "voice missing"
    assert harness.scheduler.pending() == []


def test_engine_error_while_looping_is_tolerated(harness) -> None:
    session = harness.controller.play(hello(), loop_enabled=True)
    harness.engine.fire(ENGINE_ERROR, harness.engine.last_name, RuntimeError("glitch"))
    assert harness.controller.session is session

    harness.scheduler.advance(3.35)
    assert session.iteration_count == 1


def test_speak_rejection_fails_non_looping_session(harness) -> None:
    harness.engine.fail_next_say = True
    harness.controller.play(hello(), loop_enabled=False)
    status = harness.controller.get_status()
    assert status.state == SessionState.ERROR
    assert "engine unavailable" in status.error


def test_new_play_clears_previous_error(harness) -> None:
    harness.engine.fail_next_say = True
    harness.controller.play(hello(), loop_enabled=False)
    harness.controller.play(hello(), loop_enabled=False)
    assert harness.controller.get_status().error is None


def test_audio_content_goes_through_surrogate(harness) -> None:
    session = harness.controller.play(AudioContent("UklGRg==", duration_hint_s=5.0), loop_enabled=True)
    target, envelope = harness.channel.sent[-1]
    assert target == commands.SURROGATE
    assert envelope.type == commands.PLAY_AUDIO
    assert envelope.payload["shouldLoop"] is False
    assert envelope.payload["playbackId"] == f"{session.session_id}:0"
    assert session.estimated_duration_s == 5.0

    harness.controller.handle_event(SpeechEvent(SpeechEventKind.END, utterance_id=f"{session.session_id}:0"))
    harness.scheduler.advance(0.31)
    assert session.iteration_count == 1
    assert harness.channel.sent[-1][1].payload["playbackId"] == f"{session.session_id}:1"

    harness.controller.stop()
    assert harness.channel.types()[-1] == commands.STOP_AUDIO


def test_heartbeat_writes_while_active_and_clears_on_stop(harness) -> None:
    harness.controller.play(hello(), loop_enabled=True)
    assert len(harness.store.writes) == 1
    harness.scheduler.advance(10.5)
    assert len(harness.store.writes) == 2
    assert harness.store.writes[-1]["shouldLoop"] is True
    assert harness.store.writes[-1]["content"]["text"] == "Hello world"

    harness.controller.stop()
    assert harness.store.current is None
    harness.scheduler.advance(30.0)
    assert len(harness.store.writes) == 2


def test_restore_diagnostics_reads_and_clears_without_resuming(harness) -> None:
    snapshot = HeartbeatSnapshot(
        is_playing=True,
        should_loop=True,
        content={"kind": "text", "text": "hi"},
        estimated_duration=3.0,
        timestamp=1_699_999_000.0,
    )
    harness.store.save(snapshot.to_payload())

    restored = harness.controller.restore_diagnostics()
    assert restored == snapshot
    assert harness.controller.recovered_snapshot == snapshot
    assert harness.store.current is None
    assert harness.controller.session is None
    assert harness.engine.spoken == []


def test_restore_diagnostics_survives_snapshot_delete_failure(harness, monkeypatch) -> None:
    snapshot = HeartbeatSnapshot(
        is_playing=True,
        should_loop=False,
        content={"kind": "text", "text": "hi"},
        estimated_duration=3.0,
        timestamp=1_699_999_000.0,
    )
    harness.store.save(snapshot.to_payload())

    def read_only_clear() -> None:
        raise OSError("read-only file system")

    monkeypatch.setattr(harness.store, "clear", read_only_clear)
    assert harness.controller.restore_diagnostics() == snapshot
    assert harness.controller.session is None


def test_handle_message_play_and_status(harness) -> None:
    async def scenario():
        played = await harness.controller.handle_message(commands.play_text("Hi there", SpeechOptions(), True))
        status = await harness.controller.handle_message(commands.get_status())
        stopped = await harness.controller.handle_message(commands.stop())
        after = await harness.controller.handle_message(commands.get_status())
        return played, status, stopped, after

    played, status, stopped, after = asyncio.run(scenario())
    assert played == {"success": True}
    assert status["isPlaying"] is True
    assert status["shouldLoop"] is True
    assert status["state"] == "starting"
    assert stopped == {"success": True}
    assert after["isPlaying"] is False


def test_handle_message_rejects_empty_text_and_unknown_type(harness) -> None:
    async def scenario():
        empty = await harness.controller.handle_message(Envelope(commands.PLAY, {"text": "  "}))
        unknown = await harness.controller.handle_message(Envelope("rewind"))
        return empty, unknown

    empty, unknown = asyncio.run(scenario())
    assert empty["success"] is False
    assert unknown == {"success": False, "error": "Unknown message type: rewind"}


def test_audio_event_message_drives_completion(harness) -> None:
    session = harness.controller.play(AudioContent("UklGRg=="), loop_enabled=False)
    playback_id = harness.channel.sent[-1][1].payload["playbackId"]

    async def scenario():
        await harness.controller.handle_message(commands.audio_event(SpeechEventKind.START, playback_id))
        await harness.controller.handle_message(commands.audio_event(SpeechEventKind.END, playback_id))

    asyncio.run(scenario())
    assert session.state == SessionState.IDLE
    assert harness.controller.session is None


def test_undecodable_audio_ends_looping_session(harness) -> None:
    session = harness.controller.play(AudioContent("UklGRg==", duration_hint_s=5.0), loop_enabled=True)
    playback_id = harness.channel.sent[-1][1].payload["playbackId"]

    async def scenario():
        await harness.controller.handle_message(
            commands.audio_event(SpeechEventKind.ERROR, playback_id, "cannot decode", fatal=True)
        )

    asyncio.run(scenario())
    harness.scheduler.advance(20.0)
    assert session.state == SessionState.ERROR
    assert harness.controller.session is None
    status = harness.controller.get_status()
    assert status.is_playing is False
    assert status.error == "cannot decode"
    assert harness.channel.types().count(commands.PLAY_AUDIO) == 1
    assert harness.scheduler.pending() == []


def test_playback_error_without_fatal_flag_keeps_loop_alive(harness) -> None:
    session = harness.controller.play(AudioContent("UklGRg==", duration_hint_s=5.0), loop_enabled=True)
    playback_id = harness.channel.sent[-1][1].payload["playbackId"]

    async def scenario():
        await harness.controller.handle_message(commands.audio_event(SpeechEventKind.ERROR, playback_id, "underflow"))

    asyncio.run(scenario())
    harness.scheduler.advance(5.6)
    assert harness.controller.session is session
    assert session.iteration_count == 1


class FakeSynthesizer:
    def __init__(self, *, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.error = error
        self.gate = gate
        self.calls: list[str] = []
        self.configured = True

    async def synthesize(self, text: str, options: SpeechOptions) -> SynthesizedAudio:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SynthesizedAudio(data=b"RIFF0000WAVE", duration_s=4.0, voice="alloy", model="tts-1")


def test_remote_play_synthesizes_then_plays_audio(make_harness) -> None:
    h = make_harness(synthesizer=FakeSynthesizer())

    async def scenario():
        task = h.controller.play_remote("Hello", SpeechOptions(engine="remote"), loop_enabled=True)
        synthesizing = h.controller.get_status()
        await task
        return synthesizing

    synthesizing = asyncio.run(scenario())
    assert synthesizing.is_playing is True
    session = h.controller.session
    assert isinstance(session.content, AudioContent)
    assert session.estimated_duration_s == 4.0
    assert h.channel.types()[-1] == commands.PLAY_AUDIO


def test_stop_during_remote_synthesis_discards_result(make_harness) -> None:
    async def scenario():
        gate = asyncio.Event()
        h = make_harness(synthesizer=FakeSynthesizer(gate=gate))
        task = h.controller.play_remote("Hello", SpeechOptions(engine="remote"), loop_enabled=False)
        await asyncio.sleep(0)
        h.controller.stop()
        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        return h

    h = asyncio.run(scenario())
    assert h.controller.session is None
    assert commands.PLAY_AUDIO not in h.channel.types()
    assert h.controller.get_status().is_playing is False


def test_status_during_remote_synthesis_reports_requested_loop(make_harness) -> None:
    async def scenario():
        gate = asyncio.Event()
        h = make_harness(synthesizer=FakeSynthesizer(gate=gate))
        task = h.controller.play_remote("Hello", SpeechOptions(engine="remote"), loop_enabled=True)
        await asyncio.sleep(0)
        pending = h.controller.get_status()
        gate.set()
        await task
        return pending

    pending = asyncio.run(scenario())
    assert pending.is_playing is True
    assert pending.loop_enabled is True
    assert pending.state == SessionState.STARTING


def test_remote_failure_surfaces_as_error_status(make_harness) -> None:
    h = make_harness(synthesizer=FakeSynthesizer(error=RemoteSynthesisError("quota exceeded")))

    async def scenario():
        await h.controller.play_remote("Hello", SpeechOptions(engine="remote"), loop_enabled=False)

    asyncio.run(scenario())
    status = h.controller.get_status()
    assert status.state == SessionState.ERROR
    assert status.error == "quota exceeded"


def test_remote_play_without_synthesizer_is_rejected(harness) -> None:
    async def scenario():
        return await harness.controller.handle_message(
            commands.play_text("Hello", SpeechOptions(engine="remote"), False)
        )

    response = asyncio.run(scenario())
    assert response["success"] is False
    assert "not configured" in response["error"]
