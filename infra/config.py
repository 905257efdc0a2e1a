"""Configuration loading and validation for SpeakFlow."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


@dataclass(frozen=True)
class WatchdogTuning:
    """Heuristic timing knobs for the watchdog timers."""

    fallback_multiplier: float
    loop_protection_multiplier: float
    completion_ratio_threshold: float

    def fallback_delay(self, estimated_duration_s: float) -> float:
        return estimated_duration_s * self.fallback_multiplier

    def loop_protection_delay(self, estimated_duration_s: float) -> float:
        return estimated_duration_s * self.loop_protection_multiplier


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables."""

    fallback_watchdog_multiplier: float = 1.5
    loop_protection_multiplier: float = 1.1
    completion_ratio_threshold: float = 0.8
    min_duration_seconds: float = 3.0
    latin_chars_per_second: float = 12.5
    cjk_chars_per_second: float = 6.5
    loop_grace_seconds: float = 0.3
    heartbeat_interval_seconds: float = 10.0
    status_poll_interval_seconds: float = 2.0
    request_timeout_seconds: float = 1.0
    watchdog_repoll_base_seconds: float = 0.25
    watchdog_repoll_max_seconds: float = 2.0
    snapshot_path: str = str(Path.home() / ".speakflow" / "heartbeat.json")
    log_path: str = "/var/log/speakflow.log"
    local_tts_base_rate: int = 200
    openai_api_key: str = ""
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    system_audio_player: str = "auto"

    @property
    def watchdog(self) -> WatchdogTuning:
        return WatchdogTuning(
            fallback_multiplier=self.fallback_watchdog_multiplier,
            loop_protection_multiplier=self.loop_protection_multiplier,
            completion_ratio_threshold=self.completion_ratio_threshold,
        )


def load_dotenv(path: str = ".env") -> None:
    """Load .env key-value pairs into environment without overriding existing values."""
    env_path = Path(path)
    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Load and validate application settings from environment."""
    source = os.environ if env is None else env
    defaults = Settings()
    settings = Settings(
        fallback_watchdog_multiplier=float(source.get("FALLBACK_WATCHDOG_MULTIPLIER", 1.5)),
        loop_protection_multiplier=float(source.get("LOOP_PROTECTION_MULTIPLIER", 1.1)),
        completion_ratio_threshold=float(source.get("COMPLETION_RATIO_THRESHOLD", 0.8)),
        min_duration_seconds=float(source.get("MIN_DURATION_SECONDS", 3.0)),
        latin_chars_per_second=float(source.get("LATIN_CHARS_PER_SECOND", 12.5)),
        cjk_chars_per_second=float(source.get("CJK_CHARS_PER_SECOND", 6.5)),
        loop_grace_seconds=float(source.get("LOOP_GRACE_SECONDS", 0.3)),
        heartbeat_interval_seconds=float(source.get("HEARTBEAT_INTERVAL_SECONDS", 10.0)),
        status_poll_interval_seconds=float(source.get("STATUS_POLL_INTERVAL_SECONDS", 2.0)),
        request_timeout_seconds=float(source.get("REQUEST_TIMEOUT_SECONDS", 1.0)),
        watchdog_repoll_base_seconds=float(source.get("WATCHDOG_REPOLL_BASE_SECONDS", 0.25)),
        watchdog_repoll_max_seconds=float(source.get("WATCHDOG_REPOLL_MAX_SECONDS", 2.0)),
        snapshot_path=source.get("SNAPSHOT_PATH", defaults.snapshot_path),
        log_path=source.get("LOG_PATH", defaults.log_path),
        local_tts_base_rate=int(source.get("LOCAL_TTS_BASE_RATE", 200)),
        openai_api_key=source.get("OPENAI_API_KEY", ""),
        openai_tts_model=source.get("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=source.get("OPENAI_TTS_VOICE", "alloy"),
        system_audio_player=source.get("SYSTEM_AUDIO_PLAYER", "auto"),
    )
    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    if settings.fallback_watchdog_multiplier <= 0:
        raise ValueError("FALLBACK_WATCHDOG_MULTIPLIER must be positive")
    if settings.loop_protection_multiplier <= 0:
        raise ValueError("LOOP_PROTECTION_MULTIPLIER must be positive")
    if not 0.0 < settings.completion_ratio_threshold <= 1.0:
        raise ValueError("COMPLETION_RATIO_THRESHOLD must be in (0, 1]")
    if settings.min_duration_seconds <= 0:
        raise ValueError("MIN_DURATION_SECONDS must be positive")
    if settings.latin_chars_per_second <= 0 or settings.cjk_chars_per_second <= 0:
        raise ValueError("LATIN_CHARS_PER_SECOND and CJK_CHARS_PER_SECOND must be positive")
    if settings.loop_grace_seconds < 0:
        raise ValueError("LOOP_GRACE_SECONDS must not be negative")
    if settings.heartbeat_interval_seconds <= 0:
        raise ValueError("HEARTBEAT_INTERVAL_SECONDS must be positive")
    if settings.status_poll_interval_seconds <= 0:
        raise ValueError("STATUS_POLL_INTERVAL_SECONDS must be positive")
    if settings.request_timeout_seconds <= 0:
        raise ValueError("REQUEST_TIMEOUT_SECONDS must be positive")
    if settings.watchdog_repoll_base_seconds <= 0:
        raise ValueError("WATCHDOG_REPOLL_BASE_SECONDS must be positive")
    if settings.watchdog_repoll_max_seconds < settings.watchdog_repoll_base_seconds:
        raise ValueError("WATCHDOG_REPOLL_MAX_SECONDS must be >= WATCHDOG_REPOLL_BASE_SECONDS")
    if settings.local_tts_base_rate <= 0:
        raise ValueError("LOCAL_TTS_BASE_RATE must be positive")
    if not settings.snapshot_path:
        raise ValueError("SNAPSHOT_PATH must not be empty")
