"""Structured logging utilities for SpeakFlow."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class JsonFormatter(logging.Formatter):
    """Emit logs as JSON objects with a stable schema."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "event_type": getattr(record, "event_type", "log"),
            "state": getattr(record, "state", None),
            "session_id": getattr(record, "session_id", None),
            "message": record.getMessage(),
            "metadata": getattr(record, "metadata", {}),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def get_logger(name: str = "speakflow", primary_path: str = "/var/log/speakflow.log") -> logging.Logger:
    """Configure and return a structured application logger.

    Child loggers (``speakflow.controller`` and so on) propagate to the
    configured ``speakflow`` logger and are returned without handlers of their own.
    """
    root_name = name.split(".", 1)[0]
    root = logging.getLogger(root_name)
    root.setLevel(logging.INFO)

    if not root.handlers:
        formatter = JsonFormatter()
        try:
            Path(primary_path).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(primary_path)
        except (OSError, PermissionError):
            fallback = "/tmp/speakflow.log"
            print(f"[speakflow] warning: cannot open {primary_path}; falling back to {fallback}")
            Path(fallback).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(fallback)

        handler.setFormatter(formatter)
        root.addHandler(handler)

    return logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    event_type: str,
    state: str | None = None,
    session_id: str | None = None,
    **metadata: Any,
) -> None:
    """Log one structured event with the fields JsonFormatter understands."""
    logger.log(
        level,
        message,
        extra={"event_type": event_type, "state": state, "session_id": session_id, "metadata": metadata},
    )
