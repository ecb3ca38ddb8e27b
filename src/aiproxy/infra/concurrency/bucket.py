"""Token bucket arithmetic shared by the bucket stores."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass
class TokenBucket:
    """Continuously refilled token bucket.

    ``tokens`` stays within ``[0, capacity]``; refill is real-valued, so
    half a second at one token per second adds exactly half a token.
    """

    tokens: float
    last_refill: float

    @classmethod
    def full(cls, capacity: int, now: float) -> TokenBucket:
        return cls(tokens=float(capacity), last_refill=now)

    def refill(self, now: float, capacity: int, rate: float) -> float:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(capacity), self.tokens + elapsed * rate)
            self.last_refill = now
        return self.tokens

    def try_consume(self) -> bool:
        if self.tokens < 1:
            return False
        self.tokens -= 1
        return True


def retry_after_seconds(tokens: float, rate: float) -> int:
    """Whole seconds until the bucket holds one token again (rounded up)."""
    return max(1, math.ceil((1 - tokens) / rate))
