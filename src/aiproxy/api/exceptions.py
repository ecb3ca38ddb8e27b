"""Global exception handlers: every failure leaves as JSON."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aiproxy.core.metrics import INTERNAL_ERRORS_TOTAL
from aiproxy.core.upstream.errors import (
    InvalidPayload,
    MissingCredential,
    UpstreamUnavailable,
)
from aiproxy.infra.concurrency.base import ClientOverload

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on ``app`` (before it serves)."""

    @app.exception_handler(ClientOverload)
    async def handle_client_overload(
        request: Request, exc: ClientOverload
    ) -> JSONResponse:
        # Covers RateLimited, QueueFull and QueueTimeout.
        return JSONResponse(
            status_code=429,
            content={"error": str(exc), "retry_after_seconds": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(InvalidPayload)
    async def handle_invalid_payload(
        request: Request, exc: InvalidPayload
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(MissingCredential)
    async def handle_missing_credential(
        request: Request, exc: MissingCredential
    ) -> JSONResponse:
        INTERNAL_ERRORS_TOTAL.labels(kind="missing_credential").inc()
        logger.error("Proxy misconfigured: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(UpstreamUnavailable)
    async def handle_upstream_unavailable(
        request: Request, exc: UpstreamUnavailable
    ) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"error": str(exc), "details": exc.details},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        # Routing errors (404, 405 + Allow) share the proxy's error body.
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        INTERNAL_ERRORS_TOTAL.labels(kind="unhandled").inc()
        logger.exception("Unhandled error while proxying %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc)})
