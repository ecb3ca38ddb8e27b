"""FastAPI application entry point."""

import logging
from typing import Annotated, AsyncGenerator

from fastapi import Depends, FastAPI

from aiproxy import __version__
from aiproxy.api.exceptions import register_exception_handlers
from aiproxy.api.proxy import build_router
from aiproxy.configs.config import AppConfig, get_app_config
from aiproxy.core.gateway import build_gateway
from aiproxy.core.metrics import instrument_app
from aiproxy.infra.lifespan import inject
from aiproxy.infra.logging import setup_logging
from aiproxy.infra.telemetry import init_telemetry

logger = logging.getLogger(__name__)


@inject
async def lifespan(
    app: FastAPI,
    _gateway: Annotated[None, Depends(build_gateway)],
) -> AsyncGenerator[None, None]:
    """Startup/shutdown; collaborators are built and torn down by their deps."""
    logger.info("aiproxy started")
    yield
    logger.info("aiproxy shutting down")


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    When *config* is given it is also used by every lifespan builder,
    instead of re-reading settings from the environment.
    """
    if config is None:
        config = get_app_config()

    setup_logging(config.logging)

    app = FastAPI(
        title="aiproxy",
        description="Rate-limited, concurrency-gated LLM proxy",
        version=__version__,
        lifespan=lifespan,
    )
    app.dependency_overrides[get_app_config] = lambda: config

    app.include_router(build_router(config.api.proxy_path))
    register_exception_handlers(app)
    instrument_app(app, config)
    init_telemetry(app, config.tracing)

    return app
