"""Time helpers and timer scheduling used by state and instrumentation logic."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol


def monotonic_seconds() -> float:
    """Return monotonic time in seconds."""
    return time.monotonic()


def wall_clock_seconds() -> float:
    """Return wall-clock epoch time in seconds."""
    return time.time()


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Timer source for one execution context.

    Callbacks run on the owning context and never preempt each other.
    """

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...


class LoopScheduler:
    """Scheduler backed by an asyncio event loop and the monotonic clock."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(max(0.0, delay_s), callback)

    def now(self) -> float:
        return monotonic_seconds()
