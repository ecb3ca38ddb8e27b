"""Tests for the retrying upstream client (httpx MockTransport, no network)."""

from __future__ import annotations

import json

import httpx
import pytest

from aiproxy.core.upstream.client import UpstreamClient, relayed_headers
from aiproxy.core.upstream.errors import UpstreamUnavailable
from aiproxy.core.upstream.payload import UpstreamRequest
from aiproxy.core.upstream.retry import BackoffPolicy

_REQUEST = UpstreamRequest(
    provider="gemini",
    url="https://llm.test/v1beta/models/gemini-2.5-flash:generateContent",
    model="gemini-2.5-flash",
    payload={"contents": [{"role": "user", "parts": [{"text": "hi"}]}]},
    headers={"x-goog-api-key": "test-key"},
)

# =========================================================================
# Helpers
# =========================================================================


class _ScriptedUpstream:
    """MockTransport handler replaying a list of responses or exceptions."""

    def __init__(self, *script: httpx.Response | Exception) -> None:
        self._script = list(script)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(step, Exception):
            raise step
        return httpx.Response(
            step.status_code, headers=step.headers, content=step.content
        )


def _policy(max_retries: int = 3) -> BackoffPolicy:
    # Upper end of the jitter range, so delays are deterministic.
    return BackoffPolicy(
        max_retries=max_retries, base_delay=1.0, jitter=0.2, uniform=lambda a, b: b
    )


async def _forward(
    upstream: _ScriptedUpstream, sleep, *, max_retries: int = 3
):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
        client = UpstreamClient(http, _policy(max_retries), sleep=sleep)
        return await client.forward(_REQUEST)


def _unavailable() -> httpx.Response:
    return httpx.Response(503, json={"error": "overloaded"})


# =========================================================================
# Retry behaviour
# =========================================================================


class TestUpstreamRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, recording_sleep):
        upstream = _ScriptedUpstream(httpx.Response(200, json={"ok": True}))
        response = await _forward(upstream, recording_sleep)
        assert response.status_code == 200
        assert response.attempts == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_then_success(self, recording_sleep):
        upstream = _ScriptedUpstream(
            _unavailable(), _unavailable(), httpx.Response(200, json={"ok": True})
        )
        response = await _forward(upstream, recording_sleep)

        assert response.status_code == 200
        assert json.loads(response.content) == {"ok": True}
        assert response.attempts == 3
        assert recording_sleep.delays == pytest.approx([1.2, 2.2])
        assert recording_sleep.delays == sorted(recording_sleep.delays)

    @pytest.mark.asyncio
    async def test_permanent_error_relayed_without_retry(self, recording_sleep):
        upstream = _ScriptedUpstream(
            httpx.Response(400, json={"error": {"message": "bad request"}})
        )
        response = await _forward(upstream, recording_sleep)

        assert response.status_code == 400
        assert json.loads(response.content) == {"error": {"message": "bad request"}}
        assert response.attempts == 1
        assert len(upstream.requests) == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_transient_becomes_unavailable(self, recording_sleep):
        upstream = _ScriptedUpstream(_unavailable())
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _forward(upstream, recording_sleep)

        assert str(exc_info.value) == "Upstream proxy failed after retries"
        assert exc_info.value.details.startswith("HTTP 503: ")
        assert "overloaded" in exc_info.value.details
        assert exc_info.value.attempts == 4
        assert len(upstream.requests) == 4
        assert recording_sleep.delays == pytest.approx([1.2, 2.2, 4.2])

    @pytest.mark.asyncio
    async def test_exhausted_details_truncated(self, recording_sleep):
        upstream = _ScriptedUpstream(httpx.Response(500, content=b"x" * 5000))
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _forward(upstream, recording_sleep, max_retries=1)

        assert exc_info.value.details == "HTTP 500: " + "x" * 500

    @pytest.mark.asyncio
    async def test_network_error_after_http_error_reported(self, recording_sleep):
        upstream = _ScriptedUpstream(
            _unavailable(), httpx.ConnectError("connection reset")
        )
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _forward(upstream, recording_sleep, max_retries=1)
        assert exc_info.value.details == "connection reset"

    @pytest.mark.asyncio
    async def test_network_errors_exhausted(self, recording_sleep):
        upstream = _ScriptedUpstream(httpx.ConnectError("connection refused"))
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _forward(upstream, recording_sleep, max_retries=2)

        assert str(exc_info.value) == "Upstream proxy failed after retries"
        assert "connection refused" in exc_info.value.details
        assert exc_info.value.attempts == 3
        assert len(upstream.requests) == 3
        assert len(recording_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_network_error_then_success(self, recording_sleep):
        upstream = _ScriptedUpstream(
            httpx.ReadTimeout("timed out"), httpx.Response(200, json={"ok": True})
        )
        response = await _forward(upstream, recording_sleep)
        assert response.status_code == 200
        assert response.attempts == 2

    @pytest.mark.asyncio
    async def test_rate_limited_upstream_retried(self, recording_sleep):
        upstream = _ScriptedUpstream(
            httpx.Response(429, json={"error": "slow down"}),
            httpx.Response(200, json={"ok": True}),
        )
        response = await _forward(upstream, recording_sleep)
        assert response.status_code == 200
        assert recording_sleep.delays == pytest.approx([1.2])

    @pytest.mark.asyncio
    async def test_retry_after_header_honoured(self, recording_sleep):
        upstream = _ScriptedUpstream(
            httpx.Response(429, headers={"Retry-After": "5"}),
            httpx.Response(200, json={"ok": True}),
        )
        await _forward(upstream, recording_sleep)
        assert recording_sleep.delays == pytest.approx([5.2])

    @pytest.mark.asyncio
    async def test_retry_after_header_capped(self, recording_sleep):
        upstream = _ScriptedUpstream(
            httpx.Response(503, headers={"Retry-After": "3600"}),
            httpx.Response(200, json={"ok": True}),
        )
        await _forward(upstream, recording_sleep)
        assert recording_sleep.delays == pytest.approx([30.2])

    @pytest.mark.asyncio
    async def test_no_retries_configured(self, recording_sleep):
        upstream = _ScriptedUpstream(_unavailable())
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _forward(upstream, recording_sleep, max_retries=0)
        assert exc_info.value.attempts == 1
        assert len(upstream.requests) == 1
        assert recording_sleep.delays == []


# =========================================================================
# Request and response shape
# =========================================================================


class TestUpstreamExchange:
    @pytest.mark.asyncio
    async def test_request_sent_as_json_with_headers(self, recording_sleep):
        upstream = _ScriptedUpstream(httpx.Response(200, json={}))
        await _forward(upstream, recording_sleep)

        sent = upstream.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == _REQUEST.url
        assert sent.headers["x-goog-api-key"] == "test-key"
        assert json.loads(sent.content) == _REQUEST.payload

    @pytest.mark.asyncio
    async def test_same_payload_on_every_attempt(self, recording_sleep):
        upstream = _ScriptedUpstream(_unavailable(), httpx.Response(200, json={}))
        await _forward(upstream, recording_sleep)
        bodies = [json.loads(r.content) for r in upstream.requests]
        assert bodies == [_REQUEST.payload, _REQUEST.payload]

    @pytest.mark.asyncio
    async def test_content_type_preserved(self, recording_sleep):
        upstream = _ScriptedUpstream(
            httpx.Response(
                200, content=b"plain answer", headers={"Content-Type": "text/plain"}
            )
        )
        response = await _forward(upstream, recording_sleep)
        assert response.content == b"plain answer"
        assert response.content_type == "text/plain"


class TestRelayedHeaders:
    def test_filters_hop_by_hop_and_server_headers(self):
        headers = httpx.Headers(
            {
                "Content-Type": "application/json",
                "Content-Length": "12",
                "Server": "ESF",
                "Set-Cookie": "a=b",
                "Retry-After": "7",
                "X-RateLimit-Remaining": "0",
                "X-Request-Id": "abc",
            }
        )
        assert relayed_headers(headers) == {
            "content-type": "application/json",
            "retry-after": "7",
            "x-ratelimit-remaining": "0",
            "x-request-id": "abc",
        }
