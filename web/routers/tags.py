"""Source tag endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from conflux_builder.config import Settings
from conflux_builder.github.client import ExternalApiError
from conflux_builder.orchestrator import Orchestrator
from conflux_builder.tags.service import list_tags, sync_tags
from web.deps import get_app_settings, get_db, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
def list_tags_endpoint(
    refresh: bool = Query(True, description="Sync from GitHub before listing"),
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> list[dict[str, Any]]:
    """List the latest source tags.

    Tags are synced from GitHub first; with refresh=false only the local
    mirror is read.

    Raises:
        HTTPException: 502 if syncing fails.
    """
    if not refresh:
        return [t.to_dict() for t in list_tags(db, limit=settings.tags_limit)]
    try:
        tags = sync_tags(db, orchestrator.client, limit=settings.tags_limit)
    except ExternalApiError as e:
        logger.error("Failed to sync tags: %s", e)
        raise HTTPException(
            status_code=http_status.HTTP_502_BAD_GATEWAY,
            detail={"code": e.code, "message": "Failed to fetch tags"},
        ) from None
    return [t.to_dict() for t in tags]
