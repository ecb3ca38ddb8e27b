from .client import (
    UpstreamClient,
    UpstreamResponse,
    build_upstream_client,
    get_upstream_transport,
)
from .errors import InvalidPayload, MissingCredential, ProxyError, UpstreamUnavailable
from .payload import UpstreamRequest, build_upstream_request, decode_body, render_prompt
from .retry import BackoffPolicy, is_retryable_status, parse_retry_after

__all__ = [
    "BackoffPolicy",
    "InvalidPayload",
    "MissingCredential",
    "ProxyError",
    "UpstreamClient",
    "UpstreamRequest",
    "UpstreamResponse",
    "UpstreamUnavailable",
    "build_upstream_client",
    "build_upstream_request",
    "decode_body",
    "get_upstream_transport",
    "is_retryable_status",
    "parse_retry_after",
    "render_prompt",
]
