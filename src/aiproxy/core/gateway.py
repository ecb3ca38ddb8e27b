"""The admission-controlled path from caller to upstream.

Lifecycle of one proxied call::

    build provider request      MissingCredential → 500, InvalidPayload → 400
    limiter.check(client)       RateLimited → 429 (no token spent)
    async with gate.slot():     QueueFull / QueueTimeout → 429
        limiter.consume(client) RateLimited → 429 (slot released)
        upstream.forward(req)   retries inside; UpstreamUnavailable → 502

The slot is held only inside the ``async with`` block, so every exit
after admission (relayed response, exhausted retries, late rate-limit
rejection, cancellation) gives it back exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request
from opentelemetry import trace

from aiproxy.configs.config import AppConfig, get_app_config
from aiproxy.configs.system import UpstreamConfig
from aiproxy.infra.concurrency import (
    ConcurrencyGate,
    GateSnapshot,
    RateLimiter,
    build_concurrency_gate,
    build_rate_limiter,
)
from aiproxy.infra.lifespan import get_app
from aiproxy.infra.telemetry import ATTR_CLIENT_ID

from .upstream import (
    UpstreamClient,
    UpstreamResponse,
    build_upstream_client,
    build_upstream_request,
)

logger = logging.getLogger(__name__)


class ProxyGateway:
    """Rate limiter + concurrency gate + retrying upstream client."""

    def __init__(
        self,
        limiter: RateLimiter,
        gate: ConcurrencyGate,
        upstream: UpstreamClient,
        config: UpstreamConfig,
    ) -> None:
        self._limiter = limiter
        self._gate = gate
        self._upstream = upstream
        self._config = config

    def snapshot(self) -> GateSnapshot:
        return self._gate.snapshot()

    async def handle(self, client_id: str, body: Any) -> UpstreamResponse:
        """Run one proxied call for *client_id* and return the upstream answer."""
        trace.get_current_span().set_attribute(ATTR_CLIENT_ID, client_id)
        upstream_request = build_upstream_request(body, self._config)

        await self._limiter.check(client_id)
        async with self._gate.slot():
            await self._limiter.consume(client_id)
            logger.debug(
                "Forwarding request from %s to %s (model=%s)",
                client_id,
                upstream_request.provider,
                upstream_request.model,
            )
            response = await self._upstream.forward(upstream_request)

        logger.info(
            "Proxied request from %s: HTTP %d after %d attempt(s)",
            client_id,
            response.status_code,
            response.attempts,
            extra={
                "client_id": client_id,
                "status": response.status_code,
                "attempts": response.attempts,
            },
        )
        return response


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_gateway(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
    _limiter: Annotated[None, Depends(build_rate_limiter)],
    _gate: Annotated[None, Depends(build_concurrency_gate)],
    _upstream: Annotated[None, Depends(build_upstream_client)],
) -> AsyncGenerator[None, None]:
    """Wire the collaborators built above into a ``ProxyGateway``."""
    app.state.gateway = ProxyGateway(
        limiter=app.state.rate_limiter,
        gate=app.state.concurrency_gate,
        upstream=app.state.upstream_client,
        config=config.upstream,
    )
    yield


# ---------------------------------------------------------------------------
# Per-request dependency, reads from app.state
# ---------------------------------------------------------------------------


def get_gateway(request: Request) -> ProxyGateway:
    """Return the ``ProxyGateway`` from ``app.state``."""
    return request.app.state.gateway
