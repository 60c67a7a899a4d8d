"""
Retry backoff — exponential with bounded additive jitter.

    backoff(n) = min(max_delay, base_delay * 2^(n-1)) + jitter
    jitter     ∈ [0, jitter_ratio * raw], result clamped to max_delay

The jitter is additive only, and the clamp happens after it, so for
jitter_ratio <= 1 successive delays of the same row never decrease:
the smallest value for attempt n (2 * raw(n-1)) is at least the largest
value for attempt n-1 ((1 + ratio) * raw(n-1)), and once capped every
delay equals max_delay.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from models.schemas import utcnow


@dataclass
class BackoffPolicy:
    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter_ratio: float = 0.2
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be within [0, 1]")

    def raw_delay(self, attempt: int) -> float:
        """Deterministic part for the given retry number (1-based)."""
        if attempt < 1:
            return 0.0
        # cap the exponent before multiplying, 2**1000 is not a useful delay
        exponent = min(attempt - 1, 64)
        return min(self.max_delay, self.base_delay * (2 ** exponent))

    def delay(self, attempt: int) -> float:
        raw = self.raw_delay(attempt)
        if raw == 0.0:
            return 0.0
        jitter = self.rng.uniform(0, self.jitter_ratio * raw) if self.jitter_ratio else 0.0
        return min(self.max_delay, raw + jitter)

    def next_run_at(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.delay(attempt))

    @classmethod
    def from_config(cls, config) -> BackoffPolicy:
        return cls(
            base_delay=config.backoff_base_seconds,
            max_delay=config.backoff_max_seconds,
            jitter_ratio=config.backoff_jitter_ratio,
        )
