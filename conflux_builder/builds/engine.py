"""Reconciliation engine: the build lifecycle state machine.

This module handles:
- Submissions (dedup, published-artifact fast path, dispatch)
- Retries of failed or cancelled records, in place
- Workflow run events, from webhooks and from polling
- Release events completing builds that await their download URL
- Correlation timeouts

Lifecycle::

    pending -> in_progress -> build_success -> completed
        \\            \\              (release matched)
         `-----------`--> failed
    failed | cancelled --retry--> pending

completed and failed are terminal for an attempt; every event for a
terminal record is ignored. Every status change is conditional on the
status the engine read, so a signal handled from a stale read is
dropped instead of undoing a newer one.

Callers own the transaction (request scope, CLI command or poller
tick). The one exception is a claim made before dispatching a
workflow: it is committed on the caller's session first, so the
database is never locked across a GitHub call and a concurrent
equivalent request sees the claim.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conflux_builder.builds import registry
from conflux_builder.builds.correlator import (
    CorrelationTimeoutError,
    DispatchCorrelator,
    DispatchError,
    extract_correlation_token,
)
from conflux_builder.builds.matcher import find_matching_artifact
from conflux_builder.builds.models import BuildRecord, utcnow
from conflux_builder.criteria.schema import BuildCriteria, validate_criteria
from conflux_builder.github.client import ExternalApiError, NotFoundError
from conflux_builder.github.releases import ReleaseLookup, parse_release_tag
from conflux_builder.types import (
    ACTIVE_STATUSES,
    RETRYABLE_STATUSES,
    BuildStatus,
    ExternalArtifact,
    SubmitOutcome,
)

if TYPE_CHECKING:
    from conflux_builder.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Workflow conclusions that fail the attempt; others (skipped, neutral, ...)
# leave the record alone
FAILED_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out"})

# Run statuses GitHub reports before a runner picks the job up
QUEUED_RUN_STATUSES = frozenset({"requested", "queued", "waiting", "pending"})

# Runs are searched from slightly before dispatch to absorb clock skew
RUN_SEARCH_SKEW = timedelta(minutes=2)


class RetryNotAllowedError(Exception):
    """Raised when retrying a build that is neither failed nor cancelled."""

    def __init__(
        self, build_id: int, status: str, code: str = "retry_not_allowed"
    ) -> None:
        super().__init__(
            f"Build {build_id} is {status}; only failed or cancelled builds can be retried"
        )
        self.build_id = build_id
        self.status = status
        self.code = code


@dataclass
class SubmitResult:
    """Outcome of a submission or retry.

    Attributes:
        outcome: How the request was resolved.
        build: The build record (new, existing or retried).
    """

    outcome: SubmitOutcome
    build: BuildRecord

    @property
    def build_id(self) -> int:
        return self.build.id

    @property
    def status(self) -> str:
        return self.build.status

    @property
    def download_url(self) -> str | None:
        return self.build.download_url


@dataclass(frozen=True)
class JobEvent:
    """A workflow run lifecycle signal.

    Attributes:
        action: requested, in_progress or completed.
        run_id: GitHub workflow run id.
        title: Run display title (carries the correlation token).
        conclusion: Run conclusion, for completed runs.
    """

    action: str
    run_id: str
    title: str | None = None
    conclusion: str | None = None


@dataclass
class EventResult:
    """What handling an event did.

    Attributes:
        handled: Whether a record was changed.
        message: Human readable summary.
        build_id: Affected record, if one was found.
        status: Record status after handling.
    """

    handled: bool
    message: str
    build_id: int | None = None
    status: str | None = None


@dataclass
class ReleaseEventResult:
    """What handling a release event did."""

    tag: str
    examined: int = 0
    completed_build_ids: list[int] = field(default_factory=list)
    ignored_reason: str | None = None


class ReconciliationEngine:
    """Drives build records through their lifecycle.

    Args:
        correlator: Dispatches workflows and resolves their runs.
        releases: Cached release and commit lookups.
        timeout_for: Seconds an attempt of a given OS may stay unresolved.
        api_retries: Attempts per poll for a failing GitHub query.
        clock: Returns the current naive UTC time.
    """

    def __init__(
        self,
        correlator: DispatchCorrelator,
        releases: ReleaseLookup,
        timeout_for: Callable[[str], int],
        api_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.correlator = correlator
        self.releases = releases
        self.timeout_for = timeout_for
        self.api_retries = max(1, api_retries)
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        correlator: DispatchCorrelator,
        releases: ReleaseLookup,
    ) -> ReconciliationEngine:
        """Create an engine with timeouts and retry counts from settings."""
        return cls(
            correlator,
            releases,
            timeout_for=settings.timeout_for,
            api_retries=settings.poll_api_retries,
        )

    # Submission

    def submit(
        self,
        session: Session,
        raw: Mapping[str, Any] | BuildCriteria,
    ) -> SubmitResult:
        """Submit a build request.

        Resolves the commit when the request does not pin one, returns an
        equivalent record when one exists (retrying it if it failed),
        records a published matching asset without dispatching, and
        otherwise claims the criteria and dispatches a workflow.

        Args:
            session: Database session.
            raw: Request data or criteria.

        Returns:
            SubmitResult. A dispatch failure is reported as
            SubmitOutcome.DISPATCH_FAILED with the record marked failed.

        Raises:
            CriteriaValidationError: If the criteria are invalid.
            NotFoundError: If the version tag does not exist.
            ExternalApiError: If GitHub cannot be queried.
        """
        criteria = validate_criteria(raw)
        commit_sha = criteria.commit_sha
        if commit_sha is None:
            commit_sha = self.releases.get_commit_for_tag(criteria.version_tag)
            criteria = criteria.with_commit(commit_sha)

        existing = registry.find_equivalent(session, criteria)
        if existing is not None:
            return self._resolve_existing(session, existing)

        artifact = self._find_published_artifact(criteria, commit_sha)
        try:
            if artifact is not None:
                record = registry.create_completed(
                    session, criteria, artifact.download_url
                )
                return SubmitResult(SubmitOutcome.FOUND_ARTIFACT, record)
            # Claim the criteria key before dispatching
            token = self.correlator.token_factory()
            record = registry.create_pending(session, criteria, correlation_token=token)
        except registry.DuplicateBuildError:
            winner = registry.find_equivalent(session, criteria)
            if winner is None:
                raise
            logger.info("Concurrent submission won for build %d", winner.id)
            return self._report_existing(winner)
        session.commit()

        try:
            self.correlator.dispatch(criteria, correlation_token=token)
        except DispatchError as e:
            registry.transition(
                session,
                record.id,
                BuildStatus.FAILED,
                expected=BuildStatus.PENDING,
                error_type=e.code,
                error_message=str(e),
            )
            return SubmitResult(SubmitOutcome.DISPATCH_FAILED, record)
        return SubmitResult(SubmitOutcome.DISPATCHED, record)

    def _resolve_existing(self, session: Session, record: BuildRecord) -> SubmitResult:
        if record.build_status in RETRYABLE_STATUSES:
            logger.info("Submission matches %s build %d, retrying", record.status, record.id)
            return self._retry_record(session, record)
        return self._report_existing(record)

    @staticmethod
    def _report_existing(record: BuildRecord) -> SubmitResult:
        if record.build_status == BuildStatus.COMPLETED:
            return SubmitResult(SubmitOutcome.ALREADY_COMPLETED, record)
        return SubmitResult(SubmitOutcome.ALREADY_IN_PROGRESS, record)

    def _find_published_artifact(
        self, criteria: BuildCriteria, commit_sha: str
    ) -> ExternalArtifact | None:
        try:
            release = self.releases.get_release(criteria.version_tag, commit_sha)
        except NotFoundError:
            return None
        return find_matching_artifact(release.assets, criteria)

    # Retry

    def retry(self, session: Session, build_id: int) -> SubmitResult:
        """Retry a failed or cancelled build in place.

        A retry of a pending build is a no-op, so repeating a retry whose
        response was lost never dispatches twice.

        Args:
            session: Database session.
            build_id: Build ID.

        Returns:
            SubmitResult with outcome RETRIED, ALREADY_IN_PROGRESS or
            DISPATCH_FAILED.

        Raises:
            BuildNotFoundError: If build not found.
            RetryNotAllowedError: If the build is running or completed.
        """
        record = registry.get_build(session, build_id)
        status = record.build_status
        if status == BuildStatus.PENDING:
            logger.info("Build %d is already pending, nothing to retry", build_id)
            return SubmitResult(SubmitOutcome.ALREADY_IN_PROGRESS, record)
        if status not in RETRYABLE_STATUSES:
            raise RetryNotAllowedError(build_id, record.status)
        return self._retry_record(session, record)

    def _retry_record(self, session: Session, record: BuildRecord) -> SubmitResult:
        """Claim a record for a new attempt, dispatch, then persist its token.

        The claim moves the record to pending and is committed before
        dispatching; of two concurrent retries only one wins it. The
        previous token stays in place until the new one is persisted, so
        a crash between dispatch and save is visible as an unlinked run
        carrying the logged token.
        """
        previous_status = record.build_status
        previous_token = record.correlation_token
        claimed = registry.transition(
            session,
            record.id,
            BuildStatus.PENDING,
            expected=previous_status,
            external_job_id=None,
            download_url=None,
            dispatched_at=self.clock(),
            error_type=None,
            error_message=None,
        )
        if claimed is None:
            logger.info("Build %d was already claimed by another request", record.id)
            return self._report_existing(record)
        session.commit()

        try:
            ticket = self.correlator.dispatch(record.to_criteria())
        except DispatchError as e:
            registry.transition(
                session,
                record.id,
                previous_status,
                expected=BuildStatus.PENDING,
                error_type=e.code,
                error_message=str(e),
            )
            return SubmitResult(SubmitOutcome.DISPATCH_FAILED, record)

        try:
            saved = registry.transition(
                session,
                record.id,
                BuildStatus.PENDING,
                expected=BuildStatus.PENDING,
                correlation_token=ticket.correlation_token,
            )
        except SQLAlchemyError:
            logger.error(
                "Retry of build %d dispatched with token %s but not saved; "
                "record still carries token %s",
                record.id,
                ticket.correlation_token,
                previous_token,
            )
            raise
        if saved is None:
            logger.warning(
                "Build %d became %s while token %s was dispatched",
                record.id,
                record.status,
                ticket.correlation_token,
            )
            return self._report_existing(record)
        return SubmitResult(SubmitOutcome.RETRIED, record)

    # Workflow run events

    def locate(
        self, session: Session, title: str | None, run_id: str | None
    ) -> BuildRecord | None:
        """Find the record a workflow run belongs to.

        The correlation token in the title is tried first, then the run
        id of a previously linked run.
        """
        token = extract_correlation_token(title)
        record = None
        if token is not None:
            record = registry.find_by_correlation_token(session, token)
        if record is None and run_id:
            record = registry.find_by_external_job_id(session, run_id)
        return record

    def handle_job_event(self, session: Session, event: JobEvent) -> EventResult:
        """Apply a workflow run event.

        Events for unknown runs, terminal records or superseded attempts
        are ignored, never raised.

        Args:
            session: Database session.
            event: The run event.

        Returns:
            EventResult describing what happened.
        """
        record = self.locate(session, event.title, event.run_id)
        if record is None:
            logger.info("No build matches run %s (%r)", event.run_id, event.title)
            return EventResult(False, "No matching build")

        status = record.build_status
        if status not in ACTIVE_STATUSES:
            logger.info(
                "Ignoring %s event for %s build %d", event.action, status.value, record.id
            )
            return EventResult(False, f"Build is {status.value}", record.id, record.status)

        if record.external_job_id and record.external_job_id != event.run_id:
            logger.info(
                "Ignoring run %s for build %d linked to run %s",
                event.run_id,
                record.id,
                record.external_job_id,
            )
            return EventResult(False, "Run belongs to another attempt", record.id, record.status)

        if event.action == "requested":
            return EventResult(False, "Run requested", record.id, record.status)
        if event.action not in ("in_progress", "completed"):
            logger.debug("Ignoring workflow_run action %s", event.action)
            return EventResult(
                False, f"Unhandled action: {event.action}", record.id, record.status
            )

        changed = self._apply_run_state(
            session, record, event.run_id, event.action, event.conclusion
        )
        return EventResult(
            changed,
            f"Build is {record.status}" if changed else "No change",
            record.id,
            record.status,
        )

    def _apply_run_state(
        self,
        session: Session,
        record: BuildRecord,
        run_id: str,
        run_status: str | None,
        conclusion: str | None,
    ) -> bool:
        """Advance an active record from a run's status and conclusion.

        Returns:
            Whether the record changed.
        """
        status = record.build_status
        link = {} if record.external_job_id else {"external_job_id": run_id}

        if run_status == "completed":
            if conclusion == "success":
                changed = False
                if status != BuildStatus.BUILD_SUCCESS:
                    if (
                        registry.transition(
                            session,
                            record.id,
                            BuildStatus.BUILD_SUCCESS,
                            expected=status,
                            **link,
                        )
                        is None
                    ):
                        return False
                    changed = True
                return self.try_complete_from_release(session, record) or changed
            if conclusion in FAILED_CONCLUSIONS:
                failed = registry.transition(
                    session,
                    record.id,
                    BuildStatus.FAILED,
                    expected=status,
                    error_type=f"workflow_{conclusion}",
                    error_message=f"Workflow run {run_id} concluded: {conclusion}",
                    **link,
                )
                return failed is not None
            logger.info(
                "Build %d run %s concluded %r, leaving it %s",
                record.id,
                run_id,
                conclusion,
                record.status,
            )
            return False

        if run_status == "in_progress":
            if status == BuildStatus.PENDING:
                started = registry.transition(
                    session, record.id, BuildStatus.IN_PROGRESS, expected=status, **link
                )
                return started is not None
            if link and status == BuildStatus.IN_PROGRESS:
                return self._link(session, record, status, link)
            return False

        if run_status in QUEUED_RUN_STATUSES and link:
            return self._link(session, record, status, link)
        return False

    @staticmethod
    def _link(
        session: Session, record: BuildRecord, status: BuildStatus, link: dict[str, str]
    ) -> bool:
        linked = registry.transition(session, record.id, status, expected=status, **link)
        return linked is not None

    def try_complete_from_release(self, session: Session, record: BuildRecord) -> bool:
        """Complete a record if its release already carries a matching asset.

        Returns:
            Whether the record is now completed.
        """
        if record.download_url or record.build_status not in ACTIVE_STATUSES:
            return record.build_status == BuildStatus.COMPLETED
        try:
            release = self.releases.get_release(record.version_tag, record.commit_sha)
        except NotFoundError:
            logger.debug("No release yet for build %d", record.id)
            return False
        except ExternalApiError as e:
            logger.warning("Could not read release for build %d: %s", record.id, e)
            return False

        artifact = find_matching_artifact(release.assets, record.to_criteria())
        if artifact is None:
            logger.debug("Release %s has no asset for build %d", release.tag_name, record.id)
            return False
        completed = registry.transition(
            session,
            record.id,
            BuildStatus.COMPLETED,
            expected=record.build_status,
            download_url=artifact.download_url,
        )
        return completed is not None

    # Release events

    def handle_release_event(
        self,
        session: Session,
        tag: str,
        assets: list[ExternalArtifact],
    ) -> ReleaseEventResult:
        """Complete every waiting record a published release satisfies.

        Records of the release's version and commit without a download URL
        are matched against the assets. Failed and cancelled records stay
        as they are. Processing the same release twice changes nothing the
        second time.

        Args:
            session: Database session.
            tag: Release tag, ``<version_tag>-<short sha>``.
            assets: Published assets of the release.

        Returns:
            ReleaseEventResult.
        """
        parsed = parse_release_tag(tag)
        if parsed is None:
            logger.info("Ignoring release %s: tag does not name a commit", tag)
            return ReleaseEventResult(tag, ignored_reason="Unrecognized release tag")

        version_tag, short_sha = parsed
        self.releases.invalidate_version(version_tag)

        result = ReleaseEventResult(tag)
        for record in registry.list_awaiting_download(session, version_tag, short_sha):
            result.examined += 1
            artifact = find_matching_artifact(assets, record.to_criteria())
            if artifact is None:
                continue
            completed = registry.transition(
                session,
                record.id,
                BuildStatus.COMPLETED,
                expected=record.build_status,
                download_url=artifact.download_url,
            )
            if completed is not None:
                result.completed_build_ids.append(record.id)

        logger.info(
            "Release %s completed %d of %d waiting builds",
            tag,
            len(result.completed_build_ids),
            result.examined,
        )
        return result

    # Polling

    def _query(self, description: str, fn: Callable[[], T]) -> T:
        """Run a GitHub query up to api_retries times.

        Raises:
            ExternalApiError: The error of the last attempt.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except ExternalApiError as e:
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    description,
                    attempt,
                    self.api_retries,
                    e,
                )
                if attempt >= self.api_retries:
                    raise
            attempt += 1

    def _fail(
        self, session: Session, record: BuildRecord, error_type: str, message: str
    ) -> None:
        logger.warning("Failing build %d: %s", record.id, message)
        registry.transition(
            session,
            record.id,
            BuildStatus.FAILED,
            expected=record.build_status,
            error_type=error_type,
            error_message=message,
        )

    def is_timed_out(self, record: BuildRecord, now: datetime | None = None) -> bool:
        """Whether the current attempt has outlived its OS timeout."""
        now = now or self.clock()
        elapsed = (now - record.attempt_started_at).total_seconds()
        return elapsed > self.timeout_for(record.os)

    def poll_build(
        self,
        session: Session,
        record: BuildRecord,
        now: datetime | None = None,
    ) -> BuildStatus:
        """Check an active record against GitHub.

        Unlinked records are matched to a run by token; linked records
        have their run read. A record fails once its OS timeout has
        elapsed and either no run was found or GitHub kept failing.
        Records in build_success only wait for their release.

        Args:
            session: Database session.
            record: Record to check.
            now: Current naive UTC time.

        Returns:
            Status after the check.
        """
        status = record.build_status
        if status not in ACTIVE_STATUSES:
            return status

        if status == BuildStatus.BUILD_SUCCESS:
            self.try_complete_from_release(session, record)
            return record.build_status

        timed_out = self.is_timed_out(record, now)
        criteria = record.to_criteria()

        if record.external_job_id is None:
            if not record.correlation_token:
                if timed_out:
                    self._fail(
                        session,
                        record,
                        "correlation_timeout",
                        "Build has no correlation token and was never linked",
                    )
                return record.build_status
            token = record.correlation_token
            try:
                run_id = self._query(
                    f"Run lookup for build {record.id}",
                    lambda: self.correlator.resolve_external_job(
                        criteria, token, since=record.attempt_started_at - RUN_SEARCH_SKEW
                    ),
                )
            except ExternalApiError as e:
                if timed_out:
                    self._fail(session, record, e.code, str(e))
                return record.build_status
            if run_id is None:
                if timed_out:
                    error = CorrelationTimeoutError(record.id, self.timeout_for(record.os))
                    self._fail(session, record, error.code, str(error))
                return record.build_status
        else:
            run_id = record.external_job_id

        try:
            run = self._query(
                f"Run {run_id} read for build {record.id}",
                lambda: self.correlator.fetch_run(run_id),
            )
        except ExternalApiError as e:
            if timed_out:
                self._fail(session, record, e.code, str(e))
            elif record.external_job_id is None:
                registry.transition(
                    session, record.id, status, expected=status, external_job_id=run_id
                )
            return record.build_status

        self._apply_run_state(session, record, run_id, run.status, run.conclusion)
        return record.build_status


__all__ = [
    "FAILED_CONCLUSIONS",
    "EventResult",
    "JobEvent",
    "ReconciliationEngine",
    "ReleaseEventResult",
    "RetryNotAllowedError",
    "SubmitResult",
]
