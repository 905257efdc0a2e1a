"""Watchdog timers that re-verify playback completion by elapsed time."""

from __future__ import annotations

import math
from enum import Enum
from typing import Callable

from infra.config import WatchdogTuning
from infra.time_utils import Scheduler, TimerHandle


class WatchdogKind(str, Enum):
    FALLBACK = "fallback"
    LOOP_PROTECTION = "loop_protection"


class WatchdogDecision(str, Enum):
    COMPLETE = "complete"
    REPOLL = "repoll"


def elapsed_ratio(elapsed_s: float, estimated_duration_s: float) -> float:
    if estimated_duration_s <= 0:
        return float("inf")
    return elapsed_s / estimated_duration_s


def decide(elapsed_s: float, estimated_duration_s: float, threshold: float) -> WatchdogDecision:
    """Treat the iteration as finished once enough of the estimate has elapsed."""
    ratio = elapsed_ratio(elapsed_s, estimated_duration_s)
    if ratio >= threshold or math.isclose(ratio, threshold):
        return WatchdogDecision.COMPLETE
    return WatchdogDecision.REPOLL


class Watchdog:
    """One timer bound to exactly one session iteration."""

    def __init__(
        self,
        *,
        kind: WatchdogKind,
        session_id: str,
        iteration: int,
        scheduler: Scheduler,
        on_fire: Callable[["Watchdog"], None],
    ) -> None:
        self.kind = kind
        self.session_id = session_id
        self.iteration = iteration
        self.repolls = 0
        self._scheduler = scheduler
        self._on_fire = on_fire
        self._handle: TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay_s: float) -> None:
        self.cancel()
        self._handle = self._scheduler.call_later(delay_s, self._fire)

    def reschedule(self, delay_s: float) -> None:
        self.repolls += 1
        self.arm(delay_s)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._on_fire(self)


class WatchdogSet:
    """The fallback and loop-protection watchdogs of the current iteration."""

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        tuning: WatchdogTuning,
        on_fire: Callable[[Watchdog], None],
    ) -> None:
        self._scheduler = scheduler
        self._tuning = tuning
        self._on_fire = on_fire
        self._active: dict[WatchdogKind, Watchdog] = {}

    def arm(self, *, session_id: str, iteration: int, estimated_duration_s: float, loop_enabled: bool) -> None:
        self.cancel_all()
        fallback = self._new(WatchdogKind.FALLBACK, session_id, iteration)
        fallback.arm(self._tuning.fallback_delay(estimated_duration_s))
        if loop_enabled:
            protection = self._new(WatchdogKind.LOOP_PROTECTION, session_id, iteration)
            protection.arm(self._tuning.loop_protection_delay(estimated_duration_s))

    def cancel_all(self) -> None:
        for watchdog in self._active.values():
            watchdog.cancel()
        self._active.clear()

    def get(self, kind: WatchdogKind) -> Watchdog | None:
        return self._active.get(kind)

    def is_current(self, watchdog: Watchdog) -> bool:
        return self._active.get(watchdog.kind) is watchdog

    @property
    def armed_kinds(self) -> set[WatchdogKind]:
        return {kind for kind, watchdog in self._active.items() if watchdog.armed}

    def _new(self, kind: WatchdogKind, session_id: str, iteration: int) -> Watchdog:
        watchdog = Watchdog(
            kind=kind,
            session_id=session_id,
            iteration=iteration,
            scheduler=self._scheduler,
            on_fire=self._on_fire,
        )
        self._active[kind] = watchdog
        return watchdog
