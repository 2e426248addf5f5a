"""Exponential backoff for listener reconnects; the attempt cutoff also bounds queue retries."""

from __future__ import annotations

from dataclasses import dataclass

from teamsync.config.settings import QueueSettings, SubscriptionSettings


@dataclass(frozen=True)
class BackoffPolicy:
    """delay(attempt) = min(base_delay * 2**attempt, max_delay).

    `attempt` counts consecutive failures starting at 0; callers reset it to
    0 on any success. `exhausted(attempt)` is the shared max-attempts cutoff.
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        return min(self.base_delay * (2**attempt), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    @classmethod
    def for_queue(cls, settings: QueueSettings) -> BackoffPolicy:
        # Queue retries are trigger-driven; only the attempt cutoff applies.
        return cls(max_attempts=settings.max_retries)

    @classmethod
    def for_subscriptions(cls, settings: SubscriptionSettings) -> BackoffPolicy:
        return cls(
            base_delay=settings.base_delay_s,
            max_delay=settings.max_delay_s,
            max_attempts=settings.max_reconnection_attempts,
        )
