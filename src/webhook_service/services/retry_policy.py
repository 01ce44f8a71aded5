"""Exponential backoff with jitter for failed deliveries."""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta

_MAX_EXPONENT = 30


@dataclass(frozen=True)
class RetryPolicy:
    """Retry constants; ``backoff(n) = min(base * 2**n, cap)`` scaled by ±``jitter``."""

    max_attempts: int = 5
    base_seconds: float = 30.0
    cap_seconds: float = 3600.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_seconds <= 0 or self.cap_seconds <= 0:
            raise ValueError("backoff base and cap must be positive")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be within [0, 1)")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.webhook_max_attempts,
            base_seconds=settings.webhook_backoff_base_seconds,
            cap_seconds=settings.webhook_backoff_cap_seconds,
            jitter=settings.webhook_backoff_jitter,
        )

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay in seconds after ``attempt`` attempts (1-based)."""
        exponent = min(max(attempt, 0), _MAX_EXPONENT)
        return min(self.base_seconds * (2 ** exponent), self.cap_seconds)

    def backoff(self, attempt: int, rng: random.Random | None = None) -> timedelta:
        delay = self.base_delay(attempt)
        if self.jitter:
            delay *= 1 + (rng or random).uniform(-self.jitter, self.jitter)
        return timedelta(seconds=delay)

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
