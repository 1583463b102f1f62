"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to core
APIs.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import FastAPI

from conflux_builder import __version__
from conflux_builder.builds.poller import BuildPoller
from conflux_builder.config import Settings, configure_logging, get_settings
from conflux_builder.db import create_all_tables, get_engine, get_session_factory
from conflux_builder.orchestrator import Orchestrator
from web.routers import builds, config, health, releases, tags, webhooks

logger = logging.getLogger(__name__)


def _make_lifespan(
    settings: Settings | None,
    orchestrator: Orchestrator | None,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan context manager.

        Initializes database tables, the orchestrator and the poller on
        startup; stops the poller and closes the GitHub client on shutdown.
        """
        effective = settings or get_settings()
        configure_logging(effective)

        engine = get_engine(effective.db_url)
        create_all_tables(engine)
        app.state.settings = effective
        app.state.session_factory = get_session_factory(engine)
        app.state.orchestrator = orchestrator or Orchestrator.from_settings(effective)

        poller: BuildPoller | None = None
        if effective.poll_enabled:
            poller = BuildPoller(
                app.state.orchestrator.engine,
                app.state.session_factory,
                interval=effective.poll_interval,
            )
            poller.start()
        app.state.poller = poller
        logger.info(
            "Conflux Builder API %s started (poller %s)",
            __version__,
            "on" if poller else "off",
        )

        try:
            yield
        finally:
            if poller is not None:
                poller.stop()
            app.state.orchestrator.close()

    return lifespan


def create_app(
    settings: Settings | None = None,
    orchestrator: Orchestrator | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment at startup if None.
        orchestrator: Pre-built orchestrator (tests inject one with a fake client).

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Conflux Builder API",
        description="HTTP API for requesting custom conflux builds on GitHub "
        "Actions and receiving their webhooks",
        version=__version__,
        lifespan=_make_lifespan(settings, orchestrator),
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])
    application.include_router(releases.router, prefix="/releases", tags=["releases"])
    application.include_router(tags.router, prefix="/tags", tags=["tags"])
    application.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    return application


# Create the default application instance
app = create_app()
