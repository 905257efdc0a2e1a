"""Durable key-value storage for heartbeat snapshots."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol


class SnapshotStore(Protocol):
    """Storage for the single persisted heartbeat snapshot."""

    def save(self, snapshot: dict[str, Any]) -> None: ...

    def load(self) -> dict[str, Any] | None: ...

    def clear(self) -> None: ...


class JsonFileSnapshotStore:
    """Stores the snapshot as one JSON document, replaced atomically on every write."""

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser()

    def save(self, snapshot: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return payload if isinstance(payload, dict) else None

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return None


@dataclass
class InMemorySnapshotStore:
    """Test store that records every write."""

    current: dict[str, Any] | None = None
    writes: list[dict[str, Any]] = field(default_factory=list)
    clears: int = 0

    def save(self, snapshot: dict[str, Any]) -> None:
        self.current = dict(snapshot)
        self.writes.append(dict(snapshot))

    def load(self) -> dict[str, Any] | None:
        return None if self.current is None else dict(self.current)

    def clear(self) -> None:
        self.current = None
        self.clears += 1
