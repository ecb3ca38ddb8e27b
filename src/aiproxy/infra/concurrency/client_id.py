"""Client identity used to partition rate limits.

The proxy runs behind a platform load balancer, so
``request.client.host`` is usually the balancer.  Identity is taken from
forwarding headers in priority order:

1. ``X-Forwarded-For``: leftmost entry
2. ``X-Vercel-Forwarded-For``: leftmost entry
3. ``request.client.host``: direct connections / local dev
4. ``"unknown"``
"""

from __future__ import annotations

from fastapi import Request

_CLIENT_ID_HEADER_NAMES = [
    "x-forwarded-for",
    "x-vercel-forwarded-for",
]

UNKNOWN_CLIENT = "unknown"


def first_forwarded_address(value: str) -> str:
    """Return the first comma-separated entry of a forwarding header."""
    return value.split(",")[0].strip()


def get_client_id(request: Request) -> str:
    """Extract the rate-limit key for *request*.

    Usable as a FastAPI dependency::

        client_id: str = Depends(get_client_id)
    """
    for header in _CLIENT_ID_HEADER_NAMES:
        value = request.headers.get(header)
        if value:
            address = first_forwarded_address(value)
            if address:
                return address

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_CLIENT
