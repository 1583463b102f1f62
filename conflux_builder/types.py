"""Shared type definitions for conflux_builder.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildStatus(str, Enum):
    """Lifecycle status of a build record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BUILD_SUCCESS = "build_success"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# No automatic transition leaves these states for the current attempt
TERMINAL_STATUSES = frozenset({BuildStatus.COMPLETED, BuildStatus.FAILED})

# States a retry may restart from
RETRYABLE_STATUSES = frozenset({BuildStatus.FAILED, BuildStatus.CANCELLED})

# States the poller keeps checking
ACTIVE_STATUSES = frozenset(
    {BuildStatus.PENDING, BuildStatus.IN_PROGRESS, BuildStatus.BUILD_SUCCESS}
)


class SubmitOutcome(str, Enum):
    """How a submission was resolved."""

    FOUND_ARTIFACT = "found_artifact"
    DISPATCHED = "dispatched"
    RETRIED = "retried"
    ALREADY_IN_PROGRESS = "already_in_progress"
    ALREADY_COMPLETED = "already_completed"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass(frozen=True)
class ExternalArtifact:
    """A published release asset, as seen on the release host."""

    name: str
    download_url: str
    size_bytes: int


@dataclass
class Release:
    """A release on the builder repository."""

    id: int
    tag_name: str
    name: str | None = None
    published_at: str | None = None
    html_url: str | None = None
    assets: list[ExternalArtifact] = field(default_factory=list)


@dataclass
class WorkflowRun:
    """A workflow run on the builder repository."""

    id: int
    title: str
    status: str | None = None
    conclusion: str | None = None
    head_branch: str | None = None
    html_url: str | None = None


__all__ = [
    "ACTIVE_STATUSES",
    "BuildStatus",
    "ExternalArtifact",
    "RETRYABLE_STATUSES",
    "Release",
    "SubmitOutcome",
    "TERMINAL_STATUSES",
    "WorkflowRun",
]
