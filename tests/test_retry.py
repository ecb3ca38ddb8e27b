"""Tests for the upstream backoff policy and Retry-After parsing."""

from datetime import datetime, timezone

import pytest

from aiproxy.configs.system import RetryConfig
from aiproxy.core.upstream.retry import (
    BackoffPolicy,
    is_retryable_status,
    parse_retry_after,
)

NOW = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class TestIsRetryableStatus:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504, 599])
    def test_transient(self, status):
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [200, 201, 400, 401, 403, 404, 422])
    def test_permanent(self, status):
        assert not is_retryable_status(status)


class TestParseRetryAfter:
    def test_delta_seconds(self):
        assert parse_retry_after("3") == 3.0

    def test_fractional_with_whitespace(self):
        assert parse_retry_after("  2.5 ") == 2.5

    def test_negative_clamped(self):
        assert parse_retry_after("-4") == 0.0

    def test_http_date(self):
        value = "Thu, 01 Jan 2026 00:00:10 GMT"
        assert parse_retry_after(value, now=NOW) == pytest.approx(10.0)

    def test_http_date_in_the_past(self):
        value = "Wed, 31 Dec 2025 23:59:00 GMT"
        assert parse_retry_after(value, now=NOW) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_absent_or_garbage(self, value):
        assert parse_retry_after(value) is None


class TestBackoffPolicy:
    def test_exponential_without_jitter(self):
        policy = BackoffPolicy(base_delay=1.0, jitter=0.0)
        assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_jitter_added(self):
        policy = BackoffPolicy(base_delay=1.0, jitter=0.2, uniform=lambda a, b: b)
        assert policy.delay(1) == pytest.approx(2.2)

    def test_jitter_within_bounds(self):
        policy = BackoffPolicy(base_delay=0.5, jitter=0.2)
        for _ in range(100):
            assert 1.0 <= policy.delay(1) <= 1.2

    def test_retry_after_replaces_exponential(self):
        policy = BackoffPolicy(base_delay=1.0, jitter=0.0)
        assert policy.delay(3, retry_after=5.0) == 5.0

    def test_retry_after_capped(self):
        policy = BackoffPolicy(jitter=0.0, max_retry_after=30.0)
        assert policy.delay(0, retry_after=3600.0) == 30.0

    def test_delays_non_decreasing(self):
        policy = BackoffPolicy(base_delay=1.0, jitter=0.2)
        delays = [policy.delay(n) for n in range(3)]
        assert delays == sorted(delays)

    def test_max_attempts(self):
        assert BackoffPolicy(max_retries=3).max_attempts == 4
        assert BackoffPolicy(max_retries=0).max_attempts == 1

    def test_from_config(self):
        policy = BackoffPolicy.from_config(
            RetryConfig(
                max_retries=2, base_delay_ms=500, jitter_ms=100, max_retry_after_s=10
            )
        )
        assert policy.max_retries == 2
        assert policy.base_delay == 0.5
        assert policy.jitter == 0.1
        assert policy.max_retry_after == 10.0
