"""Backoff policy for transient upstream failures."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from aiproxy.configs.system import RetryConfig

TOO_MANY_REQUESTS = 429


def is_retryable_status(status_code: int) -> bool:
    """429 and every 5xx are worth another attempt."""
    return status_code == TOO_MANY_REQUESTS or status_code >= 500


def parse_retry_after(
    value: str | None, now: datetime | None = None
) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date).

    Returns seconds to wait, or ``None`` when absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with additive jitter.

    The delay after failed attempt ``n`` (0-based) is
    ``base_delay * 2**n + U(0, jitter)`` seconds.  An upstream
    ``Retry-After`` replaces the exponential part, capped at
    ``max_retry_after``.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    jitter: float = 0.2
    max_retry_after: float = 30.0
    uniform: Callable[[float, float], float] = random.uniform

    @classmethod
    def from_config(cls, config: RetryConfig) -> BackoffPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay_ms / 1000,
            jitter=config.jitter_ms / 1000,
            max_retry_after=config.max_retry_after_s,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            wait = min(retry_after, self.max_retry_after)
        else:
            wait = self.base_delay * (2**attempt)
        if self.jitter > 0:
            wait += self.uniform(0.0, self.jitter)
        return wait
