from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

import pytest

from audio.tts import InMemorySpeechEngine, SynthesisAdapter
from bus.message_bus import Envelope
from infra.config import Settings
from infra.storage import InMemorySnapshotStore
from state.controller import SessionController


@dataclass
class ManualTimer:
    when: float
    callback: Callable[[], None]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler: time moves only when a test calls advance()."""

    def __init__(self) -> None:
        self.time = 0.0
        self.timers: list[ManualTimer] = []

    def now(self) -> float:
        return self.time

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(when=self.time + max(0.0, delay_s), callback=callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    def advance(self, seconds: float) -> None:
        target = self.time + seconds
        while True:
            due = [timer for timer in self.pending() if timer.when <= target]
            if not due:
                break
            timer = min(due, key=lambda item: item.when)
            self.time = timer.when
            timer.fired = True
            timer.callback()
        self.time = target


@dataclass
class RecordingChannel:
    sent: list[tuple[str, Envelope]] = field(default_factory=list)
    deliver: bool = True

    def notify(self, target: str, envelope: Envelope) -> bool:
        self.sent.append((target, envelope))
        return self.deliver

    def types(self) -> list[str]:
        return [envelope.type for _, envelope in self.sent]


@dataclass
class ControllerHarness:
    controller: SessionController
    scheduler: ManualScheduler
    engine: InMemorySpeechEngine
    channel: RecordingChannel
    store: InMemorySnapshotStore


def build_harness(settings: Settings | None = None, synthesizer=None) -> ControllerHarness:
    scheduler = ManualScheduler()
    engine = InMemorySpeechEngine()
    channel = RecordingChannel()
    store = InMemorySnapshotStore()
    controller = SessionController(
        settings=settings or Settings(),
        adapter=SynthesisAdapter(engine),
        bus=channel,
        store=store,
        scheduler=scheduler,
        synthesizer=synthesizer,
        wall_clock=lambda: 1_700_000_000.0 + scheduler.now(),
    )
    return ControllerHarness(controller, scheduler, engine, channel, store)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def harness() -> ControllerHarness:
    return build_harness()


@pytest.fixture
def make_harness() -> Callable[..., ControllerHarness]:
    return build_harness
