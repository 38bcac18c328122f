"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Routes are thin read-only views over
the build service.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from svc_imagegen import __version__
from svc_imagegen.db import create_all_tables, get_engine, get_session_factory
from web.routers import builds, config, health


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables on startup unless a session factory was
    already installed on the app state.
    """
    if getattr(app.state, "session_factory", None) is None:
        engine = get_engine()
        create_all_tables(engine)
        app.state.session_factory = get_session_factory(engine)
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Service Image Pipeline API",
        description="HTTP API for inspecting two-stage service image builds",
        version=__version__,
        lifespan=lifespan,
    )

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])

    return application


# Create the default application instance
app = create_app()
