"""Bounded upstream concurrency with a FIFO wait queue."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, FastAPI, Request

from aiproxy.configs.config import AppConfig, get_app_config
from aiproxy.core.metrics import (
    GATE_ACTIVE,
    GATE_QUEUED,
    GATE_REJECTIONS_TOTAL,
    GATE_WAIT_SECONDS,
)
from aiproxy.infra.lifespan import get_app
from aiproxy.infra.telemetry import (
    ATTR_GATE_QUEUED,
    ATTR_GATE_WAIT_SECONDS,
    SPAN_GATE_SLOT,
    tracer,
)

from .base import GateBackend, GateFull, GateSnapshot
from .local_backend import LocalGateBackend

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Process-wide cap on simultaneous upstream calls.

    Requests beyond ``max_concurrency`` wait in a FIFO queue of at most
    ``max_queue_size`` entries for up to the queue timeout.

    Usage::

        gate = get_concurrency_gate(request)

        async with gate.slot():            # GateFull → 429
            response = await upstream.forward(...)

    The slot is released on every exit from the ``async with`` block,
    including exceptions and cancellation.
    """

    def __init__(self, backend: GateBackend) -> None:
        self._backend = backend

    def snapshot(self) -> GateSnapshot:
        return self._backend.snapshot()

    async def acquire(self) -> None:
        """Claim a slot, waiting in line if necessary.

        Raises:
            QueueFull: when the wait queue is already full.
            QueueTimeout: when no slot was granted within the timeout.
        """
        start = time.monotonic()
        try:
            await self._backend.acquire()
        except GateFull as exc:
            GATE_REJECTIONS_TOTAL.labels(reason=exc.reason).inc()
            logger.info(
                "Concurrency gate rejected request (%s): %s",
                exc.reason,
                exc,
                extra={"reason": exc.reason, "retry_after_s": exc.retry_after},
            )
            raise
        finally:
            self._observe()
        elapsed = time.monotonic() - start
        GATE_WAIT_SECONDS.observe(elapsed)
        logger.debug("Gate slot granted in %.3fs", elapsed)

    async def release(self) -> None:
        """Free the slot; the oldest waiter, if any, receives it."""
        await self._backend.release()
        self._observe()

    @asynccontextmanager
    async def slot(self) -> AsyncGenerator[None, None]:
        """Convenience context-manager: acquire a slot, yield, release."""
        with tracer.start_as_current_span(SPAN_GATE_SLOT) as span:
            span.set_attribute(ATTR_GATE_QUEUED, self.snapshot().queued)
            start = time.monotonic()
            await self.acquire()
            span.set_attribute(ATTR_GATE_WAIT_SECONDS, time.monotonic() - start)
            try:
                yield
            finally:
                await self.release()

    def _observe(self) -> None:
        snap = self._backend.snapshot()
        GATE_ACTIVE.set(snap.active)
        GATE_QUEUED.set(snap.queued)

    async def aclose(self) -> None:
        """Shut down the underlying backend."""
        await self._backend.aclose()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_concurrency_gate(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    """Create a ``ConcurrencyGate``, attach to ``app.state``; close on shutdown."""
    cc = config.concurrency
    backend = LocalGateBackend(
        max_concurrency=cc.max_concurrency,
        max_queue_size=cc.max_queue_size,
        queue_timeout=timedelta(milliseconds=cc.queue_timeout_ms),
    )
    logger.info(
        "ConcurrencyGate: local backend (max_concurrency=%d, queue=%d, timeout=%dms)",
        cc.max_concurrency,
        cc.max_queue_size,
        cc.queue_timeout_ms,
    )
    gate = ConcurrencyGate(backend)
    app.state.concurrency_gate = gate
    yield
    await gate.aclose()


# ---------------------------------------------------------------------------
# Per-request dependency, reads from app.state
# ---------------------------------------------------------------------------


def get_concurrency_gate(request: Request) -> ConcurrencyGate:
    """Return the ``ConcurrencyGate`` from ``app.state``."""
    return request.app.state.concurrency_gate
