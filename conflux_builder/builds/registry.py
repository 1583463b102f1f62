"""Build registry: persistence and dedup lookup for build records.

The unique criteria key on build_records is the only mutual exclusion
between concurrent submissions. Losing an insert race surfaces as
DuplicateBuildError, which callers recover from by re-reading the
winner's record. Status changes after creation are compare-and-set
writes keyed on the status the caller last saw.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conflux_builder.builds.models import BuildRecord, utcnow
from conflux_builder.criteria.key import compute_criteria_key
from conflux_builder.criteria.schema import BuildCriteria
from conflux_builder.types import ACTIVE_STATUSES, BuildStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# Fields transition() may update alongside the status
TRANSITION_FIELDS = frozenset(
    {
        "correlation_token",
        "external_job_id",
        "download_url",
        "dispatched_at",
        "error_type",
        "error_message",
    }
)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class DuplicateBuildError(Exception):
    """Raised when an equivalent build record already exists."""

    def __init__(self, criteria_key: str, code: str = "duplicate_build") -> None:
        super().__init__(f"Build already exists for key: {criteria_key}")
        self.criteria_key = criteria_key
        self.code = code


def _record_from_criteria(
    criteria: BuildCriteria,
    status: BuildStatus,
    **fields: Any,
) -> BuildRecord:
    """Build an unsaved BuildRecord for criteria."""
    now = utcnow()
    return BuildRecord(
        criteria_key=compute_criteria_key(criteria),
        version_tag=criteria.version_tag,
        commit_sha=criteria.commit_sha,
        os=criteria.os,
        arch=criteria.arch,
        glibc_version=criteria.glibc_version,
        openssl_version=criteria.openssl_version,
        static_openssl=criteria.static_openssl,
        compatibility_mode=criteria.compatibility_mode,
        status=status.value,
        created_at=now,
        updated_at=now,
        **fields,
    )


def _insert(session: Session, record: BuildRecord) -> BuildRecord:
    """Insert a record, translating a uniqueness violation.

    On violation the session is rolled back, discarding any other
    pending changes in it.
    """
    session.add(record)
    try:
        session.flush()
    except IntegrityError as e:
        session.rollback()
        logger.info("Lost insert race for key %s", record.criteria_key[:23])
        raise DuplicateBuildError(record.criteria_key) from e
    return record


def find_equivalent(session: Session, criteria: BuildCriteria) -> BuildRecord | None:
    """Find the record for the criteria's equivalence class.

    Args:
        session: Database session.
        criteria: Normalized criteria pinned to a commit.

    Returns:
        BuildRecord if found, None otherwise.
    """
    stmt = select(BuildRecord).where(
        BuildRecord.criteria_key == compute_criteria_key(criteria)
    )
    return session.execute(stmt).scalar_one_or_none()


def create_pending(
    session: Session,
    criteria: BuildCriteria,
    correlation_token: str | None = None,
) -> BuildRecord:
    """Create a new record in pending state.

    Args:
        session: Database session.
        criteria: Normalized criteria pinned to a commit.
        correlation_token: Token the dispatched workflow will carry.

    Returns:
        Created BuildRecord.

    Raises:
        DuplicateBuildError: If an equivalent record was inserted first.
    """
    record = _record_from_criteria(
        criteria,
        BuildStatus.PENDING,
        correlation_token=correlation_token,
        dispatched_at=utcnow(),
    )
    _insert(session, record)
    logger.info("Created pending build %d (%s)", record.id, criteria.release_tag)
    return record


def create_completed(
    session: Session,
    criteria: BuildCriteria,
    download_url: str,
) -> BuildRecord:
    """Create a record directly in completed state (no dispatch).

    Args:
        session: Database session.
        criteria: Normalized criteria pinned to a commit.
        download_url: URL of the already published matching asset.

    Returns:
        Created BuildRecord.

    Raises:
        DuplicateBuildError: If an equivalent record was inserted first.
    """
    record = _record_from_criteria(
        criteria, BuildStatus.COMPLETED, download_url=download_url
    )
    _insert(session, record)
    logger.info("Created completed build %d from existing asset", record.id)
    return record


def transition(
    session: Session,
    build_id: int,
    new_status: BuildStatus,
    expected: BuildStatus | Collection[BuildStatus] | None = None,
    **fields: Any,
) -> BuildRecord | None:
    """Apply a status change plus accompanying field updates.

    The change is one conditional UPDATE that only matches while the
    stored status is still one of ``expected``. When another session has
    moved the record on in the meantime nothing is written and None is
    returned. The session's copy of the record is refreshed either way.

    Args:
        session: Database session.
        build_id: Build ID.
        new_status: Status to move to.
        expected: Status or statuses the stored record must be in; the
            active statuses if None.
        **fields: Any of correlation_token, external_job_id, download_url,
            dispatched_at, error_type, error_message.

    Returns:
        Updated BuildRecord, or None if the stored status did not match.

    Raises:
        BuildNotFoundError: If build not found.
        ValueError: If an unknown field is passed.
    """
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields via transition: {sorted(unknown)}")

    if expected is None:
        allowed = set(ACTIVE_STATUSES)
    elif isinstance(expected, BuildStatus):
        allowed = {expected}
    else:
        allowed = set(expected)

    record = get_build(session, build_id)
    previous = record.status
    stmt = (
        update(BuildRecord)
        .where(
            BuildRecord.id == build_id,
            BuildRecord.status.in_(sorted(s.value for s in allowed)),
        )
        .values(status=new_status.value, updated_at=utcnow(), **fields)
        .execution_options(synchronize_session=False)
    )
    applied = session.execute(stmt).rowcount == 1
    session.refresh(record)

    if not applied:
        logger.info(
            "Build %d is %s; not moving it to %s",
            record.id,
            record.status,
            new_status.value,
        )
        return None
    logger.info("Build %d: %s -> %s", record.id, previous, new_status.value)
    return record


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def get_build_or_none(session: Session, build_id: int) -> BuildRecord | None:
    """Get a build record by ID, or None if not found."""
    return session.get(BuildRecord, build_id)


def find_by_correlation_token(session: Session, token: str) -> BuildRecord | None:
    """Find the record whose current attempt carries a correlation token."""
    stmt = (
        select(BuildRecord)
        .where(BuildRecord.correlation_token == token)
        .order_by(BuildRecord.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def find_by_external_job_id(
    session: Session, external_job_id: str
) -> BuildRecord | None:
    """Find the record linked to a GitHub workflow run id."""
    stmt = (
        select(BuildRecord)
        .where(BuildRecord.external_job_id == external_job_id)
        .order_by(BuildRecord.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def list_builds(
    session: Session,
    status: BuildStatus | None = None,
    version_tag: str | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        status: Filter by status.
        version_tag: Filter by version tag.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    if version_tag is not None:
        stmt = stmt.where(BuildRecord.version_tag == version_tag)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def list_active_builds(session: Session) -> list[BuildRecord]:
    """List records the poller should keep checking, oldest first."""
    stmt = (
        select(BuildRecord)
        .where(BuildRecord.status.in_([s.value for s in ACTIVE_STATUSES]))
        .order_by(BuildRecord.id)
    )
    return list(session.execute(stmt).scalars().all())


def list_awaiting_download(
    session: Session,
    version_tag: str,
    short_sha: str,
) -> list[BuildRecord]:
    """List records for a version/commit that still lack a download URL.

    Terminal records are excluded so a late release event cannot revive
    a failed build.

    Args:
        session: Database session.
        version_tag: Version tag of the release.
        short_sha: Short commit SHA from the release tag.

    Returns:
        Matching records, oldest first.
    """
    stmt = (
        select(BuildRecord)
        .where(
            BuildRecord.version_tag == version_tag,
            BuildRecord.commit_sha.startswith(short_sha.lower()),
            BuildRecord.download_url.is_(None),
            BuildRecord.status.not_in([s.value for s in TERMINAL_STATUSES]),
            BuildRecord.status != BuildStatus.CANCELLED.value,
        )
        .order_by(BuildRecord.id)
    )
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "DuplicateBuildError",
    "create_completed",
    "create_pending",
    "find_by_correlation_token",
    "find_by_external_job_id",
    "find_equivalent",
    "get_build",
    "get_build_or_none",
    "list_active_builds",
    "list_awaiting_download",
    "list_builds",
    "transition",
]
