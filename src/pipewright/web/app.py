"""FastAPI application factory for Pipewright.

create_app builds an application with CORS, request logging and every
router. The lifespan creates the database engine, session factory and
pipeline unless a pipeline was injected (tests pass one in directly).

Example usage:
    >>> from pipewright.config import PipewrightConfig
    >>> from pipewright.web.app import create_app
    >>>
    >>> app = create_app(PipewrightConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pipewright import __version__
from pipewright.config import PipewrightConfig
from pipewright.database.connection import get_engine, get_session_factory
from pipewright.logging import get_logger
from pipewright.pipeline import Pipeline, create_pipeline
from pipewright.web.middleware import RequestLoggingMiddleware
from pipewright.web.routes.events import create_events_router
from pipewright.web.routes.health import create_health_router
from pipewright.web.routes.projects import create_projects_router
from pipewright.web.routes.queue import create_queue_router
from pipewright.web.routes.webhooks import create_webhooks_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine and pipeline on startup and release them on shutdown.

    Args:
        app: FastAPI application instance.

    Yields:
        None after startup.
    """
    config: PipewrightConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = None
    if app.state.pipeline is None:
        engine = get_engine(config.database)
        session_factory = get_session_factory(engine)
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.pipeline = create_pipeline(config, session_factory)
        logger.info(
            "database_pool_initialized",
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )

    yield

    logger.info("app_shutdown_begin")
    pipeline: Pipeline = app.state.pipeline
    await pipeline.close()
    if engine is not None:
        await engine.dispose()
        logger.info("database_pool_disposed")


def create_app(
    config: PipewrightConfig | None = None,
    pipeline: Pipeline | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Root configuration; defaults are used when None.
        pipeline: Pre-built pipeline. When given, the lifespan does not
            create an engine of its own.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = pipeline.config if pipeline is not None else PipewrightConfig()

    app = FastAPI(
        title="Pipewright",
        version=__version__,
        description="Pipeline orchestration from conversation to deployed build",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.pipeline = pipeline
    app.state.session_factory = pipeline.session_factory if pipeline is not None else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_webhooks_router())
    app.include_router(create_queue_router())
    app.include_router(create_projects_router())
    app.include_router(create_events_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=__version__)
    return app
