"""Admission-control primitives: abstract backends and exceptions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ClientOverload(Exception):
    """Base for rejections the caller should retry after ``retry_after``."""

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimited(ClientOverload):
    """Raised when a client's token bucket holds less than one token.

    ``stage`` is ``"admission"`` for the check before the concurrency
    gate and ``"recheck"`` for the one after a slot was granted.
    """

    def __init__(
        self, message: str, *, retry_after: int, stage: str = "admission"
    ) -> None:
        super().__init__(message, retry_after=retry_after)
        self.stage = stage


class GateFull(ClientOverload):
    """Raised when no concurrency slot can be granted."""

    reason = "busy"


class QueueFull(GateFull):
    """Raised when every slot is taken and the wait queue is at capacity."""

    reason = "queue_full"


class QueueTimeout(GateFull):
    """Raised when a queued request was not granted a slot in time."""

    reason = "queue_timeout"


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateSnapshot:
    """Point-in-time view of the concurrency gate."""

    active: int
    queued: int
    max_concurrency: int
    max_queue_size: int


# ---------------------------------------------------------------------------
# Abstract backends
# ---------------------------------------------------------------------------


class BucketStore(ABC):
    """Interface for per-client token bucket storage.

    Implementations must refill and (optionally) consume atomically with
    respect to other requests for the same key.
    """

    @abstractmethod
    async def refill(self, key: str) -> float:
        """Refill the bucket for *key* and return its token count.

        Creates a full bucket on first use.  Never consumes.
        """

    @abstractmethod
    async def consume(self, key: str) -> tuple[bool, float]:
        """Refill, then take one token if at least one is available.

        Returns:
            ``(taken, tokens)`` where *tokens* is the count left after the
            attempt.
        """

    @abstractmethod
    async def aclose(self) -> None:
        """Release any resources held by the store."""


class GateBackend(ABC):
    """Interface for concurrency-gate backends."""

    @abstractmethod
    async def acquire(self) -> None:
        """Claim a slot, parking in the FIFO queue when none is free.

        Raises:
            QueueFull: when the queue is already at ``max_queue_size``.
            QueueTimeout: when the queue wait exceeds the timeout.
        """

    @abstractmethod
    async def release(self) -> None:
        """Free a slot and hand it to the oldest waiter, if any."""

    @abstractmethod
    def snapshot(self) -> GateSnapshot:
        """Return the current occupancy."""

    @abstractmethod
    async def aclose(self) -> None:
        """Release any resources held by the backend."""
