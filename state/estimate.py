"""Playback duration estimates used to size the watchdog timers."""

from __future__ import annotations

from dataclasses import dataclass

from infra.config import Settings
from state.session import AudioContent, PlaybackContent, TextContent

CJK_RANGES = (
    (0x1100, 0x11FF),  # Hangul Jamo
    (0x3000, 0x303F),  # CJK punctuation
    (0x3040, 0x309F),  # Hiragana
    (0x30A0, 0x30FF),  # Katakana
    (0x3130, 0x318F),  # Hangul compatibility Jamo
    (0x3400, 0x4DBF),  # CJK extension A
    (0x4E00, 0x9FFF),  # CJK unified ideographs
    (0xAC00, 0xD7AF),  # Hangul syllables
    (0xF900, 0xFAFF),  # CJK compatibility ideographs
    (0xFF00, 0xFFEF),  # Full-width forms
)


def is_cjk_char(char: str) -> bool:
    code = ord(char)
    return any(low <= code <= high for low, high in CJK_RANGES)


def is_cjk_text(text: str) -> bool:
    """True when CJK characters make up at least half of the non-whitespace text."""
    chars = [char for char in text if not char.isspace()]
    if not chars:
        return False
    cjk = sum(1 for char in chars if is_cjk_char(char))
    return cjk * 2 >= len(chars)


@dataclass(frozen=True)
class DurationEstimator:
    latin_chars_per_second: float = 12.5
    cjk_chars_per_second: float = 6.5
    min_duration_seconds: float = 3.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "DurationEstimator":
        return cls(
            latin_chars_per_second=settings.latin_chars_per_second,
            cjk_chars_per_second=settings.cjk_chars_per_second,
            min_duration_seconds=settings.min_duration_seconds,
        )

    def for_text(self, text: str, speed: float = 1.0) -> float:
        chars_per_second = self.cjk_chars_per_second if is_cjk_text(text) else self.latin_chars_per_second
        multiplier = speed if speed > 0 else 1.0
        return max(self.min_duration_seconds, len(text) / chars_per_second / multiplier)

    def estimate(self, content: PlaybackContent) -> float:
        if isinstance(content, TextContent):
            return self.for_text(content.text, content.options.rate)
        if isinstance(content, AudioContent):
            if content.duration_hint_s > 0:
                return max(self.min_duration_seconds, content.duration_hint_s)
            if content.text:
                return self.for_text(content.text, content.speed)
            return self.min_duration_seconds
        raise TypeError(f"unsupported content type {type(content).__name__}")
