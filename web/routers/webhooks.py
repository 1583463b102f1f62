"""GitHub webhook endpoint.

- POST /webhooks/github - workflow_run and release deliveries

Payloads are verified against X-Hub-Signature-256 before they are
parsed. Deliveries that change nothing (unknown runs, other
repositories, unsupported events) still get a 2xx so GitHub does not
redeliver them.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi import status as http_status
from sqlalchemy.orm import Session

from conflux_builder.config import Settings
from conflux_builder.orchestrator import Orchestrator
from conflux_builder.webhooks.handlers import WebhookPayloadError, handle_event
from conflux_builder.webhooks.verify import verify_signature
from web.deps import get_app_settings, get_db, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_raw_body(request: Request) -> bytes:
    """Read the request body exactly as sent, for signature checks."""
    return await request.body()


@router.post("/github")
def github_webhook_endpoint(
    payload: bytes = Depends(get_raw_body),
    x_github_event: str | None = Header(None),
    x_hub_signature_256: str | None = Header(None),
    x_github_delivery: str | None = Header(None),
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Receive a GitHub webhook delivery.

    Returns:
        ``{"status": "processed" | "ignored", "message", "build_ids"}``.

    Raises:
        HTTPException: 401 on a missing or bad signature, 400 on a
            malformed payload.
    """
    if not verify_signature(settings.webhook_secret, payload, x_hub_signature_256):
        logger.warning("Rejected webhook delivery %s: bad signature", x_github_delivery)
        raise HTTPException(
            status_code=http_status.HTTP_401_UNAUTHORIZED,
            detail={"code": "invalid_signature", "message": "Invalid webhook signature"},
        )

    try:
        body = json.loads(payload)
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_payload", "message": "Invalid JSON payload"},
        )

    logger.info(
        "Webhook received: event=%s action=%s delivery=%s",
        x_github_event,
        body.get("action"),
        x_github_delivery,
    )
    try:
        result = handle_event(
            db, orchestrator.engine, x_github_event, body, orchestrator.builder_repo
        )
    except WebhookPayloadError as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return result.to_dict()
