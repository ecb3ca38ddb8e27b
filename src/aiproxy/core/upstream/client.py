"""Forwards a shaped request with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Annotated

import httpx
from fastapi import Depends, FastAPI

from aiproxy.configs.config import AppConfig, get_app_config
from aiproxy.core.metrics import (
    UPSTREAM_ATTEMPTS_TOTAL,
    UPSTREAM_FAILURES_TOTAL,
    UPSTREAM_LATENCY_SECONDS,
    UPSTREAM_RETRIES_TOTAL,
)
from aiproxy.infra.lifespan import get_app
from aiproxy.infra.telemetry import (
    ATTR_UPSTREAM_ATTEMPTS,
    ATTR_UPSTREAM_MODEL,
    ATTR_UPSTREAM_PROVIDER,
    ATTR_UPSTREAM_STATUS,
    SPAN_UPSTREAM_FORWARD,
    tracer,
)

from .errors import UpstreamUnavailable
from .payload import UpstreamRequest
from .retry import BackoffPolicy, is_retryable_status, parse_retry_after

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_RELAYED_HEADERS = {"content-type", "cache-control", "retry-after"}
_RELAYED_HEADER_PREFIXES = ("x-ratelimit", "x-request-id")
_DETAILS_MAX_CHARS = 500


def relayed_headers(headers: httpx.Headers) -> dict[str, str]:
    """Upstream response headers worth passing back to the caller."""
    out: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in _RELAYED_HEADERS or lowered.startswith(_RELAYED_HEADER_PREFIXES):
            out[lowered] = value
    return out


@dataclass(frozen=True)
class UpstreamResponse:
    """Final upstream answer, relayed verbatim to the caller."""

    status_code: int
    content: bytes
    content_type: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    attempts: int = 1

    @classmethod
    def from_httpx(cls, response: httpx.Response, attempts: int) -> UpstreamResponse:
        return cls(
            status_code=response.status_code,
            content=response.content,
            content_type=response.headers.get("content-type"),
            headers=relayed_headers(response.headers),
            attempts=attempts,
        )


class UpstreamClient:
    """Sends an ``UpstreamRequest``, retrying 429/5xx and network errors.

    Up to ``policy.max_retries`` retries follow the first attempt.  A
    non-retryable status is returned at once.  Once the retries are
    spent, ``UpstreamUnavailable`` is raised carrying the last HTTP
    status and body (or the last network error) as details.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        policy: BackoffPolicy,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._http = http
        self._policy = policy
        self._sleep = sleep

    async def forward(self, request: UpstreamRequest) -> UpstreamResponse:
        with tracer.start_as_current_span(SPAN_UPSTREAM_FORWARD) as span:
            span.set_attribute(ATTR_UPSTREAM_PROVIDER, request.provider)
            span.set_attribute(ATTR_UPSTREAM_MODEL, request.model)
            response = await self._forward_with_retry(request)
            span.set_attribute(ATTR_UPSTREAM_ATTEMPTS, response.attempts)
            span.set_attribute(ATTR_UPSTREAM_STATUS, response.status_code)
            return response

    async def _forward_with_retry(self, request: UpstreamRequest) -> UpstreamResponse:
        provider = request.provider
        details = ""

        for attempt in range(self._policy.max_attempts):
            is_last = attempt >= self._policy.max_retries
            start = time.monotonic()
            try:
                response = await self._http.post(
                    request.url, json=request.payload, headers=request.headers
                )
            except httpx.TransportError as exc:
                details = str(exc) or repr(exc)
                UPSTREAM_ATTEMPTS_TOTAL.labels(
                    provider=provider, outcome="network_error"
                ).inc()
                if is_last:
                    break
                await self._backoff(provider, attempt, None, f"{type(exc).__name__}: {exc}")
                continue
            finally:
                UPSTREAM_LATENCY_SECONDS.labels(provider=provider).observe(
                    time.monotonic() - start
                )

            status = response.status_code
            if not is_retryable_status(status):
                outcome = "ok" if status < 400 else "client_error"
                UPSTREAM_ATTEMPTS_TOTAL.labels(provider=provider, outcome=outcome).inc()
                return UpstreamResponse.from_httpx(response, attempts=attempt + 1)

            UPSTREAM_ATTEMPTS_TOTAL.labels(provider=provider, outcome="retryable").inc()
            details = f"HTTP {status}: {response.text[:_DETAILS_MAX_CHARS]}"
            if is_last:
                break

            retry_after = parse_retry_after(response.headers.get("retry-after"))
            await self._backoff(provider, attempt, retry_after, f"HTTP {status}")

        UPSTREAM_FAILURES_TOTAL.labels(provider=provider).inc()
        logger.error(
            "Upstream %s failed after %d attempts: %s",
            provider,
            self._policy.max_attempts,
            details,
            extra={"provider": provider, "attempts": self._policy.max_attempts},
        )
        raise UpstreamUnavailable(
            "Upstream proxy failed after retries",
            details=details,
            attempts=self._policy.max_attempts,
        )

    async def _backoff(
        self, provider: str, attempt: int, retry_after: float | None, reason: str
    ) -> None:
        delay = self._policy.delay(attempt, retry_after)
        UPSTREAM_RETRIES_TOTAL.labels(provider=provider).inc()
        logger.warning(
            "Upstream %s attempt %d/%d failed (%s); retrying in %.3fs",
            provider,
            attempt + 1,
            self._policy.max_attempts,
            reason,
            delay,
            extra={
                "provider": provider,
                "attempt": attempt + 1,
                "retry_delay_s": round(delay, 3),
            },
        )
        await self._sleep(delay)

    async def aclose(self) -> None:
        await self._http.aclose()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


def get_upstream_transport() -> httpx.AsyncBaseTransport | None:
    """Transport for the upstream HTTP client (``None`` = real network).

    Tests override this to plug in ``httpx.MockTransport``.
    """
    return None


async def build_upstream_client(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
    transport: Annotated[
        httpx.AsyncBaseTransport | None, Depends(get_upstream_transport)
    ],
) -> AsyncGenerator[None, None]:
    """Create an ``UpstreamClient``, attach to ``app.state``; close on shutdown."""
    http = httpx.AsyncClient(
        timeout=config.upstream.timeout_seconds, transport=transport
    )
    client = UpstreamClient(http, BackoffPolicy.from_config(config.retry))
    app.state.upstream_client = client
    logger.info(
        "UpstreamClient: provider=%s model=%s retries=%d",
        config.upstream.provider,
        config.upstream.model,
        config.retry.max_retries,
    )
    yield
    await client.aclose()
