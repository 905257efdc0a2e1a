"""Session controller: owns the active playback session and keeps it going."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Callable

from audio.remote import RemoteSynthesizer
from audio.tts import SpeechEvent, SpeechEventKind, SpeechOptions, SynthesisAdapter
from bus import commands
from bus.message_bus import CommandChannel, Envelope
from infra.config import Settings
from infra.errors import (
    RemoteSynthesisError,
    StartupError,
    SynthesisError,
    SynthesisFatalError,
    SynthesisTransientError,
)
from infra.logging import log_event
from infra.recovery import BackoffPolicy, is_soft_failure, repoll_delay
from infra.storage import SnapshotStore
from infra.time_utils import Scheduler, TimerHandle, wall_clock_seconds
from state.estimate import DurationEstimator
from state.heartbeat import Heartbeat, HeartbeatSnapshot, read_recovery_hint
from state.session import (
    AudioContent,
    PlaybackContent,
    PlaybackSession,
    PlaybackStatus,
    SessionState,
    TextContent,
)
from state.watchdog import Watchdog, WatchdogDecision, WatchdogSet, decide

logger = logging.getLogger("speakflow.controller")

_FAILURE_EVENTS = {SpeechEventKind.ERROR, SpeechEventKind.INTERRUPTED, SpeechEventKind.CANCELLED}


class SessionController:
    """Orchestrates one playback session at a time.

    Completion can be signalled by an ``end`` event or by either watchdog;
    ``completion_in_flight`` lets exactly one of them win per iteration. All
    methods run on the controller's event loop and never block.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        adapter: SynthesisAdapter,
        bus: CommandChannel,
        store: SnapshotStore,
        scheduler: Scheduler,
        synthesizer: RemoteSynthesizer | None = None,
        surrogate: str = commands.SURROGATE,
        wall_clock: Callable[[], float] = wall_clock_seconds,
    ) -> None:
        self._settings = settings
        self._adapter = adapter
        self._bus = bus
        self._store = store
        self._scheduler = scheduler
        self._synthesizer = synthesizer
        self._surrogate = surrogate
        self._wall_clock = wall_clock
        self._estimator = DurationEstimator.from_settings(settings)
        self._repoll = BackoffPolicy(
            base_seconds=settings.watchdog_repoll_base_seconds,
            max_seconds=settings.watchdog_repoll_max_seconds,
        )
        self._watchdogs = WatchdogSet(scheduler=scheduler, tuning=settings.watchdog, on_fire=self._on_watchdog)
        self._heartbeat = Heartbeat(
            scheduler=scheduler,
            store=store,
            interval_s=settings.heartbeat_interval_seconds,
            snapshot=self._snapshot,
        )
        self._session: PlaybackSession | None = None
        self._rearm: TimerHandle | None = None
        self._last_error: str | None = None
        self._generation = 0
        self._pending_synthesis: asyncio.Task | None = None
        self._pending_loop = False
        self.recovered_snapshot: HeartbeatSnapshot | None = None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @property
    def session(self) -> PlaybackSession | None:
        return self._session

    @property
    def watchdogs(self) -> WatchdogSet:
        return self._watchdogs

    @property
    def heartbeat(self) -> Heartbeat:
        return self._heartbeat

    def play(self, content: PlaybackContent, *, loop_enabled: bool) -> PlaybackSession:
        if content is None or content.is_empty():
            raise StartupError("nothing to play: content is empty")
        self.stop()
        session = PlaybackSession(content=content, loop_enabled=loop_enabled, started_at_wall=self._wall_clock())
        self._session = session
        self._last_error = None
        self._log(logging.INFO, "session created", "session_created", session, loop=loop_enabled, kind=content.describe()["kind"])
        self._start_iteration(session)
        if self._session is session:
            self._heartbeat.start()
        return session

    def stop(self) -> None:
        self._generation += 1
        self._cancel_pending_synthesis()
        session = self._session
        if session is None:
            return
        self._last_error = None
        session.transition_to(SessionState.STOPPING)
        self._log(logging.INFO, "stopping session", "session_stopping", session)
        self._teardown(session, halt_backend=True)
        session.transition_to(SessionState.IDLE)

    def get_status(self) -> PlaybackStatus:
        session = self._session
        if session is not None:
            return PlaybackStatus(
                is_playing=True,
                loop_enabled=session.loop_enabled,
                state=session.state,
                iteration_count=session.iteration_count,
            )
        if self._pending_synthesis is not None:
            return PlaybackStatus(is_playing=True, loop_enabled=self._pending_loop, state=SessionState.STARTING)
        if self._last_error is not None:
            return PlaybackStatus(is_playing=False, loop_enabled=False, state=SessionState.ERROR, error=self._last_error)
        return PlaybackStatus(is_playing=False, loop_enabled=False)

    def handle_event(self, event: SpeechEvent) -> None:
        session = self._session
        if session is None:
            log_event(logger, logging.DEBUG, "event without session ignored", event_type="event_ignored", kind=event.kind.value)
            return
        if event.utterance_id is not None and event.utterance_id != session.utterance_id:
            self._log(logging.INFO, "stale event dropped", "event_stale", session, kind=event.kind.value, utterance=event.utterance_id)
            return
        if session.completion_in_flight:
            self._log(logging.INFO, "event during completion dropped", "event_dropped", session, kind=event.kind.value)
            return

        if event.kind is SpeechEventKind.START:
            session.start_timestamp = self._scheduler.now()
            session.transition_to(SessionState.PLAYING)
            self._arm_watchdogs(session)
            self._log(logging.INFO, "playback started", "playback_started", session, iteration=session.iteration_count)
        elif event.kind is SpeechEventKind.END:
            self._watchdogs.cancel_all()
            self._complete(session, source="end")
        elif event.kind in _FAILURE_EVENTS:
            self._on_failure(session, event)

    async def handle_message(self, envelope: Envelope) -> dict[str, Any]:
        """Bus handler for the controller endpoint."""
        if envelope.type == commands.PLAY:
            return self._handle_play(envelope.payload)
        if envelope.type == commands.STOP:
            self.stop()
            return {"success": True}
        if envelope.type == commands.GET_STATUS:
            return self.get_status().to_payload()
        if envelope.type == commands.AUDIO_EVENT:
            try:
                kind = SpeechEventKind(envelope.payload.get("event"))
            except ValueError:
                return {"success": False, "error": f"unknown audio event {envelope.payload.get('event')!r}"}
            self.handle_event(
                SpeechEvent(
                    kind,
                    utterance_id=envelope.payload.get("playbackId"),
                    detail=envelope.payload.get("detail"),
                    fatal=bool(envelope.payload.get("fatal", False)),
                )
            )
            return {"success": True}
        return commands.unknown_type(envelope)

    def play_remote(self, text: str, options: SpeechOptions, *, loop_enabled: bool) -> asyncio.Task:
        """Synthesize remotely, then play the audio. A stop() meanwhile discards the result."""
        if not text.strip():
            raise StartupError("nothing to play: text is empty")
        if self._synthesizer is None or not self._synthesizer.configured:
            raise StartupError("remote synthesis is not configured")
        self.stop()
        generation = self._generation
        task = asyncio.get_running_loop().create_task(self._synthesize_and_play(generation, text, options, loop_enabled))
        self._pending_synthesis = task
        self._pending_loop = loop_enabled
        return task

    def restore_diagnostics(self) -> HeartbeatSnapshot | None:
        """Read the snapshot left by a previous process. Audio is never resumed from it."""
        snapshot = read_recovery_hint(self._store)
        self.recovered_snapshot = snapshot
        if snapshot is not None:
            log_event(
                logger,
                logging.WARNING,
                "previous session ended without stop",
                event_type="recovery_hint",
                should_loop=snapshot.should_loop,
                age_s=round(snapshot.age_seconds(self._wall_clock()), 1),
                content=snapshot.content,
            )
            self._clear_snapshot()
        return snapshot

    # ------------------------------------------------------------------
    # Iterations and completion
    # ------------------------------------------------------------------

    def _start_iteration(self, session: PlaybackSession) -> None:
        session.estimated_duration_s = self._estimator.estimate(session.content)
        session.start_timestamp = self._scheduler.now()
        session.transition_to(SessionState.STARTING)
        self._arm_watchdogs(session)
        session.completion_in_flight = False
        self._issue_start(session)

    def _issue_start(self, session: PlaybackSession) -> None:
        utterance_id = session.next_utterance_id()
        content = session.content
        self._log(
            logging.INFO,
            "start command issued",
            "start_issued",
            session,
            iteration=session.iteration_count,
            estimated_s=round(session.estimated_duration_s, 2),
        )
        if isinstance(content, TextContent):
            try:
                self._adapter.register_listener(self.handle_event)
                self._adapter.speak(content.text, content.options, utterance_id)
            except SynthesisError as exc:
                self._on_failure(session, SpeechEvent(SpeechEventKind.ERROR, utterance_id=utterance_id, detail=str(exc)))
            return
        self._bus.notify(self._surrogate, commands.play_audio(content.encoded_audio, False, playback_id=utterance_id))

    def _complete(self, session: PlaybackSession, *, source: str) -> bool:
        if session.completion_in_flight:
            self._log(logging.INFO, "duplicate completion dropped", "completion_duplicate", session, source=source)
            return False
        session.completion_in_flight = True
        self._watchdogs.cancel_all()

        if session.loop_enabled and not session.content.is_empty():
            session.iteration_count += 1
            session.transition_to(SessionState.LOOPING)
            self._log(logging.INFO, "iteration complete; looping", "iteration_complete", session, source=source, iteration=session.iteration_count)
            self._rearm = self._scheduler.call_later(self._settings.loop_grace_seconds, lambda: self._next_iteration(session))
            return True

        session.transition_to(SessionState.IDLE)
        self._log(logging.INFO, "session complete", "session_complete", session, source=source)
        self._teardown(session, halt_backend=False)
        return True

    def _next_iteration(self, session: PlaybackSession) -> None:
        self._rearm = None
        if self._session is not session:
            return
        self._start_iteration(session)

    def _on_failure(self, session: PlaybackSession, event: SpeechEvent) -> None:
        detail = event.detail or event.kind.value
        transient = session.loop_enabled and not event.fatal
        error: SynthesisError = SynthesisTransientError(detail) if transient else SynthesisFatalError(detail)
        if is_soft_failure(error):
            # Looping sessions ride out failures; the watchdogs finish the iteration.
            self._log(logging.WARNING, "transient synthesis failure while looping", "synthesis_transient", session, kind=event.kind.value, error=detail)
            return
        self._log(logging.ERROR, "synthesis failure ends session", "synthesis_fatal", session, kind=event.kind.value, error=detail)
        session.transition_to(SessionState.ERROR)
        self._teardown(session, halt_backend=True)
        self._last_error = str(error)

    # ------------------------------------------------------------------
    # Watchdogs
    # ------------------------------------------------------------------

    def _arm_watchdogs(self, session: PlaybackSession) -> None:
        self._watchdogs.arm(
            session_id=session.session_id,
            iteration=session.iteration_count,
            estimated_duration_s=session.estimated_duration_s,
            loop_enabled=session.loop_enabled,
        )

    def _on_watchdog(self, watchdog: Watchdog) -> None:
        session = self._session
        if (
            session is None
            or watchdog.session_id != session.session_id
            or watchdog.iteration != session.iteration_count
            or not self._watchdogs.is_current(watchdog)
        ):
            log_event(logger, logging.INFO, "orphan watchdog ignored", event_type="watchdog_orphan", kind=watchdog.kind.value)
            return

        elapsed = self._scheduler.now() - session.start_timestamp
        threshold = self._settings.completion_ratio_threshold
        decision = decide(elapsed, session.estimated_duration_s, threshold)
        self._log(
            logging.INFO,
            "watchdog fired",
            "watchdog_fired",
            session,
            kind=watchdog.kind.value,
            elapsed_s=round(elapsed, 2),
            estimated_s=round(session.estimated_duration_s, 2),
            decision=decision.value,
        )
        if decision is WatchdogDecision.COMPLETE:
            self._complete(session, source=watchdog.kind.value)
            return
        remaining = threshold * session.estimated_duration_s - elapsed
        watchdog.reschedule(repoll_delay(self._repoll, watchdog.repolls + 1, remaining))

    # ------------------------------------------------------------------
    # Teardown, backends and persistence
    # ------------------------------------------------------------------

    def _teardown(self, session: PlaybackSession, *, halt_backend: bool) -> None:
        self._watchdogs.cancel_all()
        if self._rearm is not None:
            self._rearm.cancel()
            self._rearm = None
        self._heartbeat.stop()
        if halt_backend:
            self._halt(session)
        if self._session is session:
            self._session = None
        self._clear_snapshot()

    def _clear_snapshot(self) -> None:
        try:
            self._store.clear()
        except OSError as exc:
            log_event(logger, logging.WARNING, "snapshot delete failed", event_type="snapshot_clear_failed", error=str(exc))

    def _halt(self, session: PlaybackSession) -> None:
        if isinstance(session.content, TextContent):
            self._adapter.halt()
        else:
            self._bus.notify(self._surrogate, commands.stop_audio())

    def _snapshot(self) -> HeartbeatSnapshot | None:
        session = self._session
        if session is None:
            return None
        return HeartbeatSnapshot(
            is_playing=True,
            should_loop=session.loop_enabled,
            content=session.content.describe(),
            estimated_duration=session.estimated_duration_s,
            timestamp=self._wall_clock(),
        )

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------

    def _handle_play(self, payload: dict[str, Any]) -> dict[str, Any]:
        should_loop = bool(payload.get("shouldLoop", False))
        try:
            if payload.get("encodedAudio"):
                content: PlaybackContent = AudioContent(
                    encoded_audio=str(payload["encodedAudio"]),
                    duration_hint_s=float(payload.get("durationHint") or 0.0),
                    text=payload.get("text"),
                )
                self.play(content, loop_enabled=should_loop)
                return {"success": True}
            text = str(payload.get("text") or "").strip()
            options = SpeechOptions.from_payload(payload.get("options"))
            if options.engine == "remote":
                self.play_remote(text, options, loop_enabled=should_loop)
            else:
                self.play(TextContent(text=text, options=options), loop_enabled=should_loop)
        except (StartupError, ValueError, TypeError) as exc:
            log_event(logger, logging.WARNING, "play rejected", event_type="play_rejected", error=str(exc))
            return {"success": False, "error": str(exc)}
        return {"success": True}

    async def _synthesize_and_play(self, generation: int, text: str, options: SpeechOptions, loop_enabled: bool) -> None:
        assert self._synthesizer is not None
        try:
            audio = await self._synthesizer.synthesize(text, options)
        except RemoteSynthesisError as exc:
            if generation == self._generation:
                self._pending_synthesis = None
                self._last_error = str(exc)
                log_event(logger, logging.ERROR, "remote synthesis failed", event_type="remote_failed", error=str(exc))
            return
        if generation != self._generation:
            log_event(logger, logging.INFO, "remote audio discarded after stop", event_type="remote_discarded")
            return
        self._pending_synthesis = None
        content = AudioContent(
            encoded_audio=base64.b64encode(audio.data).decode("ascii"),
            duration_hint_s=audio.duration_s,
            text=text,
            speed=options.rate,
        )
        try:
            self.play(content, loop_enabled=loop_enabled)
        except StartupError as exc:
            self._last_error = str(exc)
            log_event(logger, logging.ERROR, "remote audio could not start", event_type="remote_failed", error=str(exc))

    def _cancel_pending_synthesis(self) -> None:
        task, self._pending_synthesis = self._pending_synthesis, None
        if task is not None and not task.done():
            task.cancel()

    def _log(self, level: int, message: str, event_type: str, session: PlaybackSession, **metadata: Any) -> None:
        log_event(
            logger,
            level,
            message,
            event_type=event_type,
            state=session.state.value,
            session_id=session.session_id,
            **metadata,
        )
