"""Single-process backends using plain dicts and ``asyncio`` futures.

Neither backend awaits while it updates shared state, so under the
single-threaded event loop every refill, consume, grant and release is
atomic with respect to other requests.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable
from datetime import timedelta

from aiproxy.core.metrics import BUCKETS_EVICTED_TOTAL, BUCKETS_TRACKED

from .base import BucketStore, GateBackend, GateSnapshot, QueueFull, QueueTimeout
from .bucket import TokenBucket

Clock = Callable[[], float]


class LocalBucketStore(BucketStore):
    """In-process bucket map with an access-triggered idle sweep.

    A bucket idle for ``idle_ttl`` seconds (at least one full-refill
    period) is indistinguishable from a new one, so it is dropped.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        idle_ttl: timedelta,
        sweep_interval: timedelta,
        clock: Clock = time.monotonic,
    ) -> None:
        self._capacity = capacity
        self._rate = refill_per_second
        self._idle_ttl = idle_ttl.total_seconds()
        self._sweep_interval = sweep_interval.total_seconds()
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def _bucket(self, key: str) -> TokenBucket:
        now = self._clock()
        self._sweep(now)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket.full(self._capacity, now)
            self._buckets[key] = bucket
            BUCKETS_TRACKED.set(len(self._buckets))
        bucket.refill(now, self._capacity, self._rate)
        return bucket

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        stale = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.last_refill >= self._idle_ttl
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            BUCKETS_EVICTED_TOTAL.inc(len(stale))
            BUCKETS_TRACKED.set(len(self._buckets))

    async def refill(self, key: str) -> float:
        return self._bucket(key).tokens

    async def consume(self, key: str) -> tuple[bool, float]:
        bucket = self._bucket(key)
        taken = bucket.try_consume()
        return taken, bucket.tokens

    async def aclose(self) -> None:
        self._buckets.clear()
        BUCKETS_TRACKED.set(0)


class LocalGateBackend(GateBackend):
    """Counting gate with a FIFO queue of one-shot futures.

    ``release`` pops the oldest live waiter and resolves its future in
    one step; the freed slot passes straight to it, so ``active`` never
    exceeds ``max_concurrency`` and later arrivals cannot jump the queue.
    """

    def __init__(
        self,
        max_concurrency: int,
        max_queue_size: int,
        queue_timeout: timedelta,
    ) -> None:
        self._max_concurrency = max_concurrency
        self._max_queue_size = max_queue_size
        self._queue_timeout = queue_timeout.total_seconds()
        self._retry_after = max(1, math.ceil(self._queue_timeout))
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    async def acquire(self) -> None:
        if self._active < self._max_concurrency:
            self._active += 1
            return

        if len(self._waiters) >= self._max_queue_size:
            raise QueueFull(
                f"Server busy: wait queue full ({self._max_queue_size}).",
                retry_after=self._retry_after,
            )

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)
        timer = loop.call_later(self._queue_timeout, self._expire, waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if (
                waiter.done()
                and not waiter.cancelled()
                and waiter.exception() is None
            ):
                # Granted, but the caller went away before resuming.
                self._release_slot()
            else:
                self._discard(waiter)
            raise
        finally:
            timer.cancel()

    async def release(self) -> None:
        self._release_slot()

    def snapshot(self) -> GateSnapshot:
        return GateSnapshot(
            active=self._active,
            queued=len(self._waiters),
            max_concurrency=self._max_concurrency,
            max_queue_size=self._max_queue_size,
        )

    async def aclose(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.cancel()

    def _release_slot(self) -> None:
        self._active = max(0, self._active - 1)
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)
            return

    def _expire(self, waiter: asyncio.Future[None]) -> None:
        if waiter.done():
            return
        self._discard(waiter)
        waiter.set_exception(
            QueueTimeout(
                "Server busy: timed out waiting for a concurrency slot.",
                retry_after=self._retry_after,
            )
        )

    def _discard(self, waiter: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
