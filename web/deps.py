"""Request dependencies for FastAPI.

Provides a database session, the settings and the orchestrator to route
handlers via FastAPI dependency injection. Everything except the session
is built once by the application lifespan and read from ``app.state``.

Each request is one unit of work through ``conflux_builder.db.get_session``:
committed when the handler returns, rolled back when it raises (including
an HTTPException), the same boundary the CLI and MCP tools use.
"""

from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from conflux_builder.config import Settings
from conflux_builder.db import get_session
from conflux_builder.orchestrator import Orchestrator


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get the session factory created at startup."""
    factory: sessionmaker[Session] = request.app.state.session_factory
    return factory


def get_orchestrator(request: Request) -> Orchestrator:
    """Get the orchestrator built at startup."""
    orchestrator: Orchestrator = request.app.state.orchestrator
    return orchestrator


def get_app_settings(request: Request) -> Settings:
    """Get the settings the application was started with."""
    settings: Settings = request.app.state.settings
    return settings


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide the request's database session.

    A submit whose dispatch failed still returns normally, so its failed
    record is committed and the caller can retry it by id.

    Yields:
        Database session.
    """
    with get_session(session_factory) as session:
        yield session
