"""Lifespan dependency injection bridge.

``inject`` lets the FastAPI lifespan declare ``Depends()`` parameters
just like a route handler, so each long-lived collaborator (Redis
client, bucket store, concurrency gate, upstream client) is a small
``build_*`` generator owning its own setup and teardown.

Based on https://github.com/fastapi/fastapi/discussions/11742
"""

from contextlib import AsyncExitStack, asynccontextmanager
from functools import partial
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.dependencies.utils import get_dependant, solve_dependencies

_LIFESPAN_SCOPE_HEADER = (b"x-request-scope", b"lifespan")


def get_app(request: Request) -> FastAPI:
    """Lifespan dependency: returns the ``FastAPI`` application."""
    return request.app


def _lifespan_request(app: FastAPI, stack: AsyncExitStack) -> Request:
    """Synthetic request used only to drive dependency resolution.

    Generator dependencies register their teardown on the exit stacks
    FastAPI looks up in the request scope; all of them point at *stack*.
    """
    return Request(
        scope={
            "type": "http",
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/",
            "raw_path": b"/",
            "query_string": b"",
            "root_path": "",
            "headers": (_LIFESPAN_SCOPE_HEADER,),
            "client": ("localhost", 80),
            "server": ("localhost", 80),
            "app": app,
            "fastapi_astack": stack,
            "fastapi_inner_astack": stack,
            "fastapi_function_astack": stack,
        }
    )


def inject(
    lifespan: Callable[..., Any],
) -> Callable[[FastAPI], Any]:
    """Resolve ``Depends()`` parameters for a lifespan function.

    Usage::

        @inject
        async def lifespan(
            app: FastAPI,
            _gate: Annotated[None, Depends(build_gate)],
        ):
            yield

    ``AsyncExitStack`` runs the builders' cleanups in reverse resolution
    order on shutdown.  ``app.dependency_overrides`` is respected, so
    tests can swap any builder (e.g. the upstream HTTP transport).
    """

    @asynccontextmanager
    async def wrapper(app: FastAPI):  # type: ignore[misc]
        dependant = get_dependant(path="/", call=partial(lifespan, app))

        async with AsyncExitStack() as stack:
            request = _lifespan_request(app, stack)
            solved = await solve_dependencies(
                request=request,
                dependant=dependant,
                async_exit_stack=stack,
                embed_body_fields=False,
                dependency_overrides_provider=app,
            )
            ctx = asynccontextmanager(lifespan)
            async with ctx(app, **solved.values):
                yield

    return wrapper
