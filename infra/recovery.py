"""Resilience primitives: watchdog repoll backoff and soft-failure classification."""

from __future__ import annotations

from dataclasses import dataclass

from infra.errors import SurrogateCommunicationError, SynthesisTransientError


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 0.25
    factor: float = 2.0
    max_seconds: float = 2.0

    def delay_for_attempt(self, attempt: int) -> float:
        delay = self.base_seconds * (self.factor ** max(0, attempt - 1))
        return min(delay, self.max_seconds)


def repoll_delay(policy: BackoffPolicy, attempt: int, remaining_s: float) -> float:
    """Delay before a watchdog polls again.

    Never waits longer than the time left until the completion threshold, and
    never less than the base delay, so a poll always makes progress.
    """
    delay = policy.delay_for_attempt(attempt)
    if remaining_s > 0:
        delay = min(delay, remaining_s)
    return max(delay, policy.base_seconds)


SOFT_FAILURES = (SurrogateCommunicationError, SynthesisTransientError)


def is_soft_failure(exc: Exception) -> bool:
    """Soft failures are logged and absorbed; they never change session state."""
    return isinstance(exc, SOFT_FAILURES)
