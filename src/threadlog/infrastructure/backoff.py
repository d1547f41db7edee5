"""Exponential backoff with symmetric jitter for push retries.

Jitter desynchronizes executions on different keys that finish together and
would otherwise retry in lockstep against the same remote.

Formula: base = initial * factor^(attempt-1), capped at max; then scaled by a
random factor in [1 - jitter, 1 + jitter].

Example:
    >>> policy = BackoffPolicy(initial_seconds=1.0, max_seconds=16.0, jitter=0.25)
    >>> compute_backoff(policy, attempt=3)  # ~4s +/- 1s
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from threadlog.config.models import SyncConfig


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Delays in seconds between push attempts."""

    initial_seconds: float = 1.0
    max_seconds: float = 16.0
    factor: float = 2.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.initial_seconds <= 0:
            raise ValueError("initial_seconds must be positive")
        if self.max_seconds < self.initial_seconds:
            raise ValueError("max_seconds must be >= initial_seconds")
        if self.factor < 1.0:
            raise ValueError("factor must be >= 1.0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")

    @classmethod
    def from_config(cls, config: SyncConfig) -> BackoffPolicy:
        return cls(
            initial_seconds=config.initial_delay_seconds,
            max_seconds=config.max_delay_seconds,
            factor=config.factor,
            jitter=config.jitter,
        )


def base_delay(policy: BackoffPolicy, attempt: int) -> float:
    """Delay before jitter for a 1-indexed attempt."""
    exponent = max(attempt - 1, 0)
    return min(policy.max_seconds, policy.initial_seconds * (policy.factor ** exponent))


def compute_backoff(
    policy: BackoffPolicy,
    attempt: int,
    rng: random.Random | None = None,
) -> float:
    """Jittered delay in seconds for a 1-indexed attempt."""
    rng = rng or random
    base = base_delay(policy, attempt)
    return max(0.0, base * (1.0 + policy.jitter * rng.uniform(-1.0, 1.0)))


def compute_backoff_sequence(policy: BackoffPolicy, max_attempts: int) -> list[float]:
    """Un-jittered delays for attempts 1..max_attempts, for logging expected behavior."""
    return [base_delay(policy, attempt) for attempt in range(1, max_attempts + 1)]
