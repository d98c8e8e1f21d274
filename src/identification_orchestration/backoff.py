"""Retry delay policy with exponential backoff."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import List, Optional

# Exponent bound; larger powers overflow the float conversion
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff ``base * 2 ** attempt`` capped at ``max_seconds``.

    With ``jitter`` enabled each delay is scaled into ``[0.5, 1.0)`` of its
    nominal value using ``rng`` (a seeded ``random.Random`` keeps it
    reproducible). Without jitter the policy is pure and deterministic.
    """

    base_seconds: float = 1.0
    max_seconds: float = 10.0
    jitter: bool = False
    rng: Optional[random.Random] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")

    def delay(self, attempt: int) -> float:
        """Return the delay in seconds to wait after failed attempt ``attempt``."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        delay = min(self.base_seconds * (2 ** min(attempt, _MAX_EXPONENT)), self.max_seconds)
        if self.jitter:
            source = self.rng if self.rng is not None else random
            delay = delay * (0.5 + source.random() * 0.5)
        return delay

    def delays(self, retries: int) -> List[float]:
        """Delay sequence for a call allowed ``retries`` retries."""
        return [self.delay(attempt) for attempt in range(max(0, retries))]
