"""Shared helpers for the proxy test-suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest

from aiproxy.configs.config import AppConfig
from aiproxy.configs.system import (
    ConcurrencyConfig,
    LoggingConfig,
    MetricsConfig,
    RateLimitConfig,
    RetryConfig,
    ThirdPartyConfig,
    TracingConfig,
    UpstreamConfig,
)

GEMINI_OK_BODY = {"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Replaces ``asyncio.sleep`` in the retry loop and records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def _make_config(**sections) -> AppConfig:
    """``AppConfig`` with test-friendly defaults; *sections* override them."""
    values = {
        "third_party": ThirdPartyConfig(redis_uri=None),
        "rate_limit": RateLimitConfig(),
        "concurrency": ConcurrencyConfig(),
        "upstream": UpstreamConfig(gemini_api_key="test-key"),
        "retry": RetryConfig(max_retries=2, base_delay_ms=0, jitter_ms=0),
        "logging": LoggingConfig(level="WARNING", json_output=False),
        "metrics": MetricsConfig(enabled=False),
        "tracing": TracingConfig(enabled=False),
    }
    values.update(sections)
    return AppConfig(**values)


def gemini_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=GEMINI_OK_BODY)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_config() -> Callable[..., AppConfig]:
    """Factory for an ``AppConfig`` isolated from the YAML/env defaults."""
    return _make_config


@pytest.fixture
def upstream_ok() -> Callable[[httpx.Request], httpx.Response]:
    """MockTransport handler answering every call with a Gemini 200."""
    return gemini_ok
