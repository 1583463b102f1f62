"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from conflux_builder import __version__

logger = logging.getLogger(__name__)

router = APIRouter()


def _database_reachable(request: Request) -> bool:
    try:
        with request.app.state.session_factory() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Health check database query failed: %s", e)
        return False
    return True


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    """Health check endpoint.

    Status is degraded when the database cannot be queried; a stopped
    poller does not affect it.

    Returns:
        Health status with version, database reachability and whether
        the poller is running.
    """
    poller = request.app.state.poller
    database_ok = _database_reachable(request)
    return {
        "status": "ok" if database_ok else "degraded",
        "version": __version__,
        "database": "ok" if database_ok else "unreachable",
        "poller_running": bool(poller and poller.running),
    }


@router.get("/")
def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        API name and version.
    """
    return {"name": "Conflux Builder API", "version": __version__}
