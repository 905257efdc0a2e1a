"""Periodic heartbeat snapshots and cold-start recovery hints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from infra.logging import log_event
from infra.storage import SnapshotStore
from infra.time_utils import Scheduler, TimerHandle

logger = logging.getLogger("speakflow.heartbeat")


@dataclass(frozen=True)
class HeartbeatSnapshot:
    """Diagnostic record of an active session. Never used to resume audio."""

    is_playing: bool
    should_loop: bool
    content: dict[str, Any]
    estimated_duration: float
    timestamp: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "isPlaying": self.is_playing,
            "shouldLoop": self.should_loop,
            "content": self.content,
            "estimatedDuration": self.estimated_duration,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "HeartbeatSnapshot | None":
        try:
            return cls(
                is_playing=bool(payload["isPlaying"]),
                should_loop=bool(payload.get("shouldLoop", False)),
                content=dict(payload.get("content") or {}),
                estimated_duration=float(payload.get("estimatedDuration", 0.0)),
                timestamp=float(payload["timestamp"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def age_seconds(self, now_wall_s: float) -> float:
        return max(0.0, now_wall_s - self.timestamp)


class Heartbeat:
    """Writes a snapshot immediately on start and then on a fixed cadence."""

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        store: SnapshotStore,
        interval_s: float,
        snapshot: Callable[[], HeartbeatSnapshot | None],
    ) -> None:
        self._scheduler = scheduler
        self._store = store
        self._interval_s = interval_s
        self._snapshot = snapshot
        self._handle: TimerHandle | None = None
        self.beats = 0

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self.running:
            return
        self._beat()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _beat(self) -> None:
        self._handle = None
        snapshot = self._snapshot()
        if snapshot is None:
            return
        try:
            self._store.save(snapshot.to_payload())
        except OSError as exc:
            log_event(logger, logging.WARNING, "heartbeat write failed", event_type="heartbeat_failed", error=str(exc))
        self.beats += 1
        self._handle = self._scheduler.call_later(self._interval_s, self._beat)


def read_recovery_hint(store: SnapshotStore) -> HeartbeatSnapshot | None:
    payload = store.load()
    if not payload:
        return None
    snapshot = HeartbeatSnapshot.from_payload(payload)
    if snapshot is None or not snapshot.is_playing:
        return None
    return snapshot
