"""Proxy API endpoint implementation."""

from dataclasses import asdict

from fastapi import APIRouter, Request
from fastapi.responses import Response

from .deps import ClientIdDep, ConcurrencyGateDep, GatewayDep

ALLOWED_METHOD = "POST"


async def proxy(
    request: Request,
    client_id: ClientIdDep,
    gateway: GatewayDep,
) -> Response:
    """Forward a chat/completion body to the upstream LLM.

    The body is one of ``{"messages": [...]}``, ``{"prompt": "..."}``,
    ``{"contents": "..."}`` or a provider-specific payload, with an
    optional ``"model"`` override.  The upstream status code, content
    type and body are relayed unchanged.
    """
    result = await gateway.handle(client_id, await request.body())
    return Response(
        content=result.content,
        status_code=result.status_code,
        headers=result.headers,
    )


async def health(gate: ConcurrencyGateDep) -> dict:
    """Liveness plus current gate occupancy."""
    return {"status": "ok", "gate": asdict(gate.snapshot())}


def build_router(proxy_path: str) -> APIRouter:
    """Routes for the proxy endpoint mounted at *proxy_path*.

    Any other method on *proxy_path* is answered 405 with ``Allow: POST``
    by the router itself.
    """
    router = APIRouter(tags=["proxy"])
    router.add_api_route(proxy_path, proxy, methods=[ALLOWED_METHOD])
    router.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return router
