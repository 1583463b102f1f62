"""Adapters from GitHub webhook payloads to engine events.

Two events are consumed: ``workflow_run`` (job lifecycle) and
``release`` (artifact publication). Anything else, and anything from a
repository other than the builder repository, is acknowledged and
ignored so GitHub does not redeliver it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from conflux_builder.builds.engine import JobEvent, ReconciliationEngine
from conflux_builder.types import ExternalArtifact

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = ("workflow_run", "release")
RELEASE_ACTIONS = frozenset({"published", "edited", "prereleased"})


class WebhookPayloadError(Exception):
    """Raised when a verified payload does not have the expected shape."""

    def __init__(self, message: str, code: str = "invalid_payload") -> None:
        super().__init__(message)
        self.code = code


class _Repository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str


class _WorkflowRun(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None
    display_title: str | None = None
    status: str | None = None
    conclusion: str | None = None


class WorkflowRunPayload(BaseModel):
    """The parts of a ``workflow_run`` webhook the engine needs."""

    model_config = ConfigDict(extra="ignore")

    action: str
    workflow_run: _WorkflowRun
    repository: _Repository

    def to_job_event(self) -> JobEvent:
        run = self.workflow_run
        return JobEvent(
            action=self.action,
            run_id=str(run.id),
            title=run.display_title or run.name,
            conclusion=run.conclusion,
        )


class _Asset(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    browser_download_url: str
    size: int = 0


class _Release(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag_name: str
    assets: list[_Asset] = Field(default_factory=list)


class ReleasePayload(BaseModel):
    """The parts of a ``release`` webhook the engine needs."""

    model_config = ConfigDict(extra="ignore")

    action: str
    release: _Release
    repository: _Repository

    def artifacts(self) -> list[ExternalArtifact]:
        return [
            ExternalArtifact(
                name=a.name, download_url=a.browser_download_url, size_bytes=a.size
            )
            for a in self.release.assets
        ]


@dataclass
class WebhookResult:
    """Response summary for a webhook delivery.

    Attributes:
        processed: Whether the event changed any build.
        message: Human readable summary.
        build_ids: Builds the event changed.
    """

    processed: bool
    message: str
    build_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "processed" if self.processed else "ignored",
            "message": self.message,
            "build_ids": self.build_ids,
        }


def _parse(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise WebhookPayloadError(f"Malformed {model.__name__}: {e.error_count()} errors") from e


def handle_workflow_run(
    session: Session,
    engine: ReconciliationEngine,
    payload: dict[str, Any],
    builder_repo: str,
) -> WebhookResult:
    """Apply a ``workflow_run`` delivery.

    Raises:
        WebhookPayloadError: If the payload is malformed.
    """
    event = _parse(WorkflowRunPayload, payload)
    if event.repository.full_name != builder_repo:
        logger.info("Ignoring workflow_run from %s", event.repository.full_name)
        return WebhookResult(False, "Repository not tracked")

    job_event = event.to_job_event()
    logger.info(
        "Workflow run %s: %s (%s)",
        job_event.action,
        job_event.title,
        job_event.run_id,
    )
    result = engine.handle_job_event(session, job_event)
    build_ids = [result.build_id] if result.handled and result.build_id else []
    return WebhookResult(result.handled, result.message, build_ids)


def handle_release(
    session: Session,
    engine: ReconciliationEngine,
    payload: dict[str, Any],
    builder_repo: str,
) -> WebhookResult:
    """Apply a ``release`` delivery.

    Raises:
        WebhookPayloadError: If the payload is malformed.
    """
    event = _parse(ReleasePayload, payload)
    if event.repository.full_name != builder_repo:
        logger.info("Ignoring release from %s", event.repository.full_name)
        return WebhookResult(False, "Repository not tracked")
    if event.action not in RELEASE_ACTIONS:
        logger.debug("Ignoring release action %s", event.action)
        return WebhookResult(False, f"Release action {event.action} not handled")

    result = engine.handle_release_event(
        session, event.release.tag_name, event.artifacts()
    )
    if result.ignored_reason:
        return WebhookResult(False, result.ignored_reason)
    completed = result.completed_build_ids
    return WebhookResult(
        bool(completed),
        f"Completed {len(completed)} of {result.examined} waiting builds",
        list(completed),
    )


def handle_event(
    session: Session,
    engine: ReconciliationEngine,
    event_name: str | None,
    payload: dict[str, Any],
    builder_repo: str,
) -> WebhookResult:
    """Route a verified delivery by its ``X-GitHub-Event`` name.

    Raises:
        WebhookPayloadError: If a supported event has a malformed payload.
    """
    if event_name == "workflow_run":
        return handle_workflow_run(session, engine, payload, builder_repo)
    if event_name == "release":
        return handle_release(session, engine, payload, builder_repo)
    logger.info("Ignoring unsupported webhook event %r", event_name)
    return WebhookResult(False, f"Event {event_name} not supported")


__all__ = [
    "RELEASE_ACTIONS",
    "SUPPORTED_EVENTS",
    "ReleasePayload",
    "WebhookPayloadError",
    "WebhookResult",
    "WorkflowRunPayload",
    "handle_event",
    "handle_release",
    "handle_workflow_run",
]
