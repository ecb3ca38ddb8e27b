"""Admission control for upstream LLM calls.

Two independent layers, applied in this order by the gateway:

1. **RateLimiter** (per client): a continuously refilled token bucket
   keyed by client identity.  Checked once before the gate and again
   (spending one token) after a slot is granted.

2. **ConcurrencyGate** (per process): at most ``max_concurrency``
   upstream calls in flight, excess requests parked in a bounded FIFO
   queue with a timeout.

Buckets live in process memory by default, or in Redis (one Lua script
per check) when ``third_party.redis_uri`` is set.  The gate is always
process-local.
"""

from .base import (
    BucketStore,
    ClientOverload,
    GateBackend,
    GateFull,
    GateSnapshot,
    QueueFull,
    QueueTimeout,
    RateLimited,
)
from .client_id import get_client_id
from .gate import ConcurrencyGate, build_concurrency_gate, get_concurrency_gate
from .limiter import RateLimiter, build_rate_limiter

__all__ = [
    "BucketStore",
    "ClientOverload",
    "ConcurrencyGate",
    "GateBackend",
    "GateFull",
    "GateSnapshot",
    "QueueFull",
    "QueueTimeout",
    "RateLimited",
    "RateLimiter",
    "build_concurrency_gate",
    "build_rate_limiter",
    "get_client_id",
    "get_concurrency_gate",
]
