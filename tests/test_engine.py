"""Tests for builds/engine.py module.

Tests the build lifecycle: submission dedup and fast path, retries,
workflow run and release events, and polling with timeouts.
"""

import logging
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import COMMIT_SHA, RELEASE_TAG, VERSION_TAG, linux_request
from sqlalchemy.exc import SQLAlchemyError

from conflux_builder.builds import registry
from conflux_builder.builds.engine import JobEvent, RetryNotAllowedError
from conflux_builder.criteria.schema import CriteriaValidationError
from conflux_builder.db import get_session
from conflux_builder.github.client import ExternalApiError, NotFoundError
from conflux_builder.types import BuildStatus, ExternalArtifact, SubmitOutcome

LINUX_ASSET = "conflux-builder-v2.4.0-linux-x86_64-glibc2.39.tar.gz"


def _title(token: str) -> str:
    return f"Build {VERSION_TAG} - Linux (x86_64) - {token}"


def _event(action: str, token: str = "tok01", run_id: str = "9001", **kwargs) -> JobEvent:
    kwargs.setdefault("title", _title(token))
    return JobEvent(action=action, run_id=run_id, **kwargs)


@pytest.fixture
def engine(orchestrator):
    return orchestrator.engine


class TestSubmit:
    """Tests for ReconciliationEngine.submit."""

    def test_new_request_dispatches(self, engine, session, github) -> None:
        """A new request creates a pending record and dispatches once."""
        result = engine.submit(session, linux_request())

        assert result.outcome == SubmitOutcome.DISPATCHED
        assert result.build.build_status == BuildStatus.PENDING
        assert result.build.correlation_token == "tok01"
        assert len(github.dispatches) == 1
        workflow_id, ref, inputs = github.dispatches[0]
        assert workflow_id == "linux.yml"
        assert ref == "main"
        assert inputs["run_id"] == "tok01"

    def test_resubmission_returns_existing(self, engine, session, github) -> None:
        """Submitting the same criteria again never dispatches again."""
        first = engine.submit(session, linux_request())
        second = engine.submit(session, linux_request())

        assert second.outcome == SubmitOutcome.ALREADY_IN_PROGRESS
        assert second.build_id == first.build_id
        assert len(github.dispatches) == 1

    def test_defaulted_openssl_dedups(self, engine, session, github) -> None:
        """Absent and explicit default OpenSSL versions are one request."""
        first = engine.submit(session, linux_request())
        second = engine.submit(session, linux_request(openssl_version="3"))

        assert second.build_id == first.build_id
        assert len(github.dispatches) == 1

    def test_distinct_criteria_dispatch_separately(self, engine, session, github) -> None:
        first = engine.submit(session, linux_request())
        second = engine.submit(session, linux_request(glibc_version="2.31"))

        assert second.build_id != first.build_id
        assert len(github.dispatches) == 2

    def test_published_artifact_fast_path(self, engine, session, github) -> None:
        """A matching published asset completes the record without dispatch."""
        github.publish(RELEASE_TAG, LINUX_ASSET + ".attestation", LINUX_ASSET)

        result = engine.submit(session, linux_request())

        assert result.outcome == SubmitOutcome.FOUND_ARTIFACT
        assert result.build.build_status == BuildStatus.COMPLETED
        assert result.download_url.endswith("/" + LINUX_ASSET)
        assert github.dispatches == []

    def test_existing_completed_reported(self, engine, session, github) -> None:
        github.publish(RELEASE_TAG, LINUX_ASSET)
        engine.submit(session, linux_request())

        result = engine.submit(session, linux_request())

        assert result.outcome == SubmitOutcome.ALREADY_COMPLETED
        assert result.download_url is not None

    def test_commit_resolved_from_tag(self, engine, session) -> None:
        """Requests without a commit are pinned to the tag's commit."""
        result = engine.submit(session, linux_request(commit_sha=None))

        assert result.build.commit_sha == COMMIT_SHA

    def test_unpinned_request_finds_published_artifact(
        self, engine, session, github
    ) -> None:
        """The tag's commit is used to look up the published release."""
        github.publish(RELEASE_TAG, LINUX_ASSET)

        result = engine.submit(session, linux_request(commit_sha=None))

        assert result.outcome == SubmitOutcome.FOUND_ARTIFACT
        assert result.download_url.endswith(LINUX_ASSET)
        assert github.dispatches == []

    def test_unknown_tag(self, engine, session) -> None:
        with pytest.raises(NotFoundError):
            engine.submit(session, linux_request(version_tag="v9.9.9", commit_sha=None))

    def test_invalid_criteria(self, engine, session, github) -> None:
        with pytest.raises(CriteriaValidationError):
            engine.submit(session, linux_request(os="macos", arch="x86_64"))
        assert github.dispatches == []

    def test_dispatch_failure_marks_failed(self, engine, session, github) -> None:
        """A rejected dispatch leaves a failed record with the error."""
        github.dispatch_error = ExternalApiError("Bad credentials", status_code=401)

        result = engine.submit(session, linux_request())

        assert result.outcome == SubmitOutcome.DISPATCH_FAILED
        assert result.build.build_status == BuildStatus.FAILED
        assert result.build.error_type == "dispatch_failed"
        assert "Bad credentials" in result.build.error_message

    def test_resubmitting_failed_retries(self, engine, session, github) -> None:
        """A failed equivalent record is retried in place."""
        github.dispatch_error = ExternalApiError("Bad credentials", status_code=401)
        failed = engine.submit(session, linux_request())
        github.dispatch_error = None

        result = engine.submit(session, linux_request())

        assert result.outcome == SubmitOutcome.RETRIED
        assert result.build_id == failed.build_id
        assert result.build.build_status == BuildStatus.PENDING
        assert result.build.error_message is None

    def test_concurrent_submission_single_record(
        self, engine, session, session_factory, github
    ) -> None:
        """The loser of an insert race reports the winner's record."""
        winner = engine.submit(session, linux_request())
        session.commit()

        real_find = registry.find_equivalent
        calls = []

        def racing_find(s, criteria):
            calls.append(criteria)
            # The first lookup runs before the winner's insert is visible
            return None if len(calls) == 1 else real_find(s, criteria)

        other = session_factory()
        try:
            with patch.object(registry, "find_equivalent", side_effect=racing_find):
                loser = engine.submit(other, linux_request())
        finally:
            other.close()

        assert loser.outcome == SubmitOutcome.ALREADY_IN_PROGRESS
        assert loser.build_id == winner.build_id
        assert len(github.dispatches) == 1


class TestRetry:
    """Tests for ReconciliationEngine.retry."""

    def _failed_build(self, engine, session):
        result = engine.submit(session, linux_request())
        registry.transition(
            session,
            result.build_id,
            BuildStatus.FAILED,
            external_job_id="9001",
            error_type="workflow_failure",
            error_message="Workflow run 9001 concluded: failure",
        )
        return result.build

    def test_retry_resets_correlation(self, engine, session, github) -> None:
        """Retry dispatches with a new token and clears the old attempt."""
        build = self._failed_build(engine, session)

        result = engine.retry(session, build.id)

        assert result.outcome == SubmitOutcome.RETRIED
        assert result.build_id == build.id
        assert result.build.build_status == BuildStatus.PENDING
        assert result.build.correlation_token == "tok02"
        assert result.build.external_job_id is None
        assert result.build.download_url is None
        assert result.build.error_type is None
        assert github.dispatches[-1][2]["run_id"] == "tok02"

    def test_retry_cancelled(self, engine, session) -> None:
        result = engine.submit(session, linux_request())
        registry.transition(session, result.build_id, BuildStatus.CANCELLED)

        assert engine.retry(session, result.build_id).outcome == SubmitOutcome.RETRIED

    def test_retry_pending_is_noop(self, engine, session, github) -> None:
        """Retrying a pending build does not dispatch again."""
        result = engine.submit(session, linux_request())

        again = engine.retry(session, result.build_id)

        assert again.outcome == SubmitOutcome.ALREADY_IN_PROGRESS
        assert again.build.correlation_token == "tok01"
        assert len(github.dispatches) == 1

    @pytest.mark.parametrize(
        "status", [BuildStatus.IN_PROGRESS, BuildStatus.BUILD_SUCCESS, BuildStatus.COMPLETED]
    )
    def test_retry_not_allowed(self, engine, session, status) -> None:
        result = engine.submit(session, linux_request())
        registry.transition(session, result.build_id, status)

        with pytest.raises(RetryNotAllowedError) as exc_info:
            engine.retry(session, result.build_id)
        assert exc_info.value.code == "retry_not_allowed"

    def test_retry_missing(self, engine, session) -> None:
        with pytest.raises(registry.BuildNotFoundError):
            engine.retry(session, 12345)

    def test_retry_dispatch_failure_keeps_status(self, engine, session, github) -> None:
        build = self._failed_build(engine, session)
        github.dispatch_error = ExternalApiError("Server error", status_code=500)

        result = engine.retry(session, build.id)

        assert result.outcome == SubmitOutcome.DISPATCH_FAILED
        assert result.build.build_status == BuildStatus.FAILED
        assert result.build.correlation_token == "tok01"
        assert result.build.error_type == "dispatch_failed"

    def test_retry_persist_failure_logs_token(self, engine, session, caplog) -> None:
        """If the new token cannot be saved it is logged and the error raised."""
        build = self._failed_build(engine, session)
        real_transition = registry.transition

        def transition(session, build_id, new_status, **fields):
            if "correlation_token" in fields:
                raise SQLAlchemyError("locked")
            return real_transition(session, build_id, new_status, **fields)

        with (
            caplog.at_level(logging.ERROR),
            patch.object(registry, "transition", side_effect=transition),
            pytest.raises(SQLAlchemyError),
        ):
            engine.retry(session, build.id)

        assert "tok02" in caplog.text
        assert build.correlation_token == "tok01"
        assert build.build_status == BuildStatus.PENDING


class TestJobEvents:
    """Tests for workflow run events."""

    def test_in_progress_links_run(self, engine, session) -> None:
        build = engine.submit(session, linux_request()).build

        result = engine.handle_job_event(session, _event("in_progress"))

        assert result.handled is True
        assert result.build_id == build.id
        assert build.build_status == BuildStatus.IN_PROGRESS
        assert build.external_job_id == "9001"

    def test_requested_is_noop(self, engine, session) -> None:
        build = engine.submit(session, linux_request()).build

        result = engine.handle_job_event(session, _event("requested"))

        assert result.handled is False
        assert build.build_status == BuildStatus.PENDING

    def test_success_without_release(self, engine, session) -> None:
        """A successful run waits in build_success for its release."""
        build = engine.submit(session, linux_request()).build

        engine.handle_job_event(session, _event("completed", conclusion="success"))

        assert build.build_status == BuildStatus.BUILD_SUCCESS
        assert build.external_job_id == "9001"
        assert build.download_url is None

    def test_success_with_release_completes(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        github.publish(RELEASE_TAG, LINUX_ASSET)

        engine.handle_job_event(session, _event("completed", conclusion="success"))

        assert build.build_status == BuildStatus.COMPLETED
        assert build.download_url.endswith(LINUX_ASSET)

    @pytest.mark.parametrize("conclusion", ["failure", "cancelled", "timed_out"])
    def test_failed_conclusions(self, engine, session, conclusion) -> None:
        build = engine.submit(session, linux_request()).build

        result = engine.handle_job_event(session, _event("completed", conclusion=conclusion))

        assert result.handled is True
        assert build.build_status == BuildStatus.FAILED
        assert build.error_type == f"workflow_{conclusion}"

    def test_other_conclusion_ignored(self, engine, session) -> None:
        build = engine.submit(session, linux_request()).build

        result = engine.handle_job_event(session, _event("completed", conclusion="skipped"))

        assert result.handled is False
        assert build.build_status == BuildStatus.PENDING

    def test_unknown_run_ignored(self, engine, session) -> None:
        engine.submit(session, linux_request())

        result = engine.handle_job_event(session, _event("in_progress", token="zzz99"))

        assert result.handled is False
        assert result.message == "No matching build"

    def test_fallback_to_external_job_id(self, engine, session) -> None:
        """A run whose title lost the token is found through its run id."""
        build = engine.submit(session, linux_request()).build
        engine.handle_job_event(session, _event("in_progress"))

        engine.handle_job_event(
            session, _event("completed", title="Linux build", conclusion="success")
        )

        assert build.build_status == BuildStatus.BUILD_SUCCESS

    def test_stale_run_ignored(self, engine, session) -> None:
        """A run other than the linked one cannot change the record."""
        build = engine.submit(session, linux_request()).build
        engine.handle_job_event(session, _event("in_progress"))

        result = engine.handle_job_event(
            session, _event("completed", run_id="8000", conclusion="failure")
        )

        assert result.handled is False
        assert build.build_status == BuildStatus.IN_PROGRESS

    def test_out_of_order_in_progress_after_success(self, engine, session) -> None:
        """A late in_progress event does not move a record backwards."""
        build = engine.submit(session, linux_request()).build
        engine.handle_job_event(session, _event("completed", conclusion="success"))

        engine.handle_job_event(session, _event("in_progress"))

        assert build.build_status == BuildStatus.BUILD_SUCCESS


class TestMonotonicity:
    """No event moves a completed or failed record."""

    EVENTS = [
        ("requested", None),
        ("in_progress", None),
        ("completed", "success"),
        ("completed", "failure"),
        ("completed", "cancelled"),
    ]

    @pytest.mark.parametrize("terminal", [BuildStatus.COMPLETED, BuildStatus.FAILED])
    def test_terminal_records_unchanged(self, engine, session, github, terminal) -> None:
        build = engine.submit(session, linux_request()).build
        registry.transition(
            session,
            build.id,
            terminal,
            external_job_id="9001",
            download_url="https://example.com/x" if terminal == BuildStatus.COMPLETED else None,
        )
        github.publish(RELEASE_TAG, LINUX_ASSET)
        github.add_run(9001, _title("tok01"), status="completed", conclusion="success")

        for action, conclusion in self.EVENTS:
            engine.handle_job_event(session, _event(action, conclusion=conclusion))
        engine.handle_release_event(
            session, RELEASE_TAG, github.releases[RELEASE_TAG].assets
        )
        engine.poll_build(session, build, build.attempt_started_at + timedelta(days=1))

        assert build.build_status == terminal


class TestReleaseEvents:
    """Tests for release-published reconciliation."""

    def test_completes_waiting_builds(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        engine.handle_job_event(session, _event("completed", conclusion="success"))
        release = github.publish(RELEASE_TAG, LINUX_ASSET)

        result = engine.handle_release_event(session, RELEASE_TAG, release.assets)

        assert result.completed_build_ids == [build.id]
        assert build.build_status == BuildStatus.COMPLETED
        assert build.download_url.endswith(LINUX_ASSET)

    def test_idempotent(self, engine, session, github) -> None:
        """Processing the same release twice changes nothing the second time."""
        build = engine.submit(session, linux_request()).build
        release = github.publish(RELEASE_TAG, LINUX_ASSET)
        engine.handle_release_event(session, RELEASE_TAG, release.assets)
        url = build.download_url
        updated_at = build.updated_at

        second = engine.handle_release_event(session, RELEASE_TAG, release.assets)

        assert second.examined == 0
        assert second.completed_build_ids == []
        assert build.download_url == url
        assert build.updated_at == updated_at

    def test_non_matching_assets(self, engine, session) -> None:
        build = engine.submit(session, linux_request()).build
        assets = [
            ExternalArtifact(
                "conflux-builder-v2.4.0-windows-x86_64.zip", "https://example.com/w", 1
            )
        ]

        result = engine.handle_release_event(session, RELEASE_TAG, assets)

        assert result.examined == 1
        assert result.completed_build_ids == []
        assert build.build_status == BuildStatus.PENDING

    def test_failed_builds_not_revived(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        registry.transition(session, build.id, BuildStatus.FAILED)
        release = github.publish(RELEASE_TAG, LINUX_ASSET)

        result = engine.handle_release_event(session, RELEASE_TAG, release.assets)

        assert result.examined == 0
        assert build.build_status == BuildStatus.FAILED

    def test_unrecognized_tag(self, engine, session) -> None:
        result = engine.handle_release_event(session, "nightly", [])
        assert result.ignored_reason is not None

    def test_invalidates_cached_release(self, engine, session, github) -> None:
        """A release event drops the cached release of its version."""
        github.publish(RELEASE_TAG, "checksums.txt")
        engine.releases.get_release(VERSION_TAG, COMMIT_SHA)
        engine.releases.get_release(VERSION_TAG, COMMIT_SHA)
        assert github.release_queries == 1

        engine.handle_release_event(session, RELEASE_TAG, [])
        engine.releases.get_release(VERSION_TAG, COMMIT_SHA)

        assert github.release_queries == 2


class TestPolling:
    """Tests for poll_build."""

    @pytest.mark.parametrize(
        "os_name,arch,minutes",
        [("windows", "x86_64", 30), ("linux", "x86_64", 20), ("macos", "aarch64", 15)],
    )
    def test_timeout_policy(self, engine, session, os_name, arch, minutes) -> None:
        """Unlinked records fail strictly after their OS timeout."""
        build = engine.submit(session, linux_request(os=os_name, arch=arch)).build
        deadline = build.attempt_started_at + timedelta(minutes=minutes)

        assert engine.poll_build(session, build, deadline) == BuildStatus.PENDING
        assert engine.poll_build(
            session, build, deadline + timedelta(seconds=1)
        ) == BuildStatus.FAILED
        assert build.error_type == "correlation_timeout"

    def test_poll_links_and_advances(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        github.add_run(9001, _title("tok01"), status="in_progress")

        status = engine.poll_build(session, build, build.attempt_started_at)

        assert status == BuildStatus.IN_PROGRESS
        assert build.external_job_id == "9001"

    def test_poll_links_queued_run(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        github.add_run(9001, _title("tok01"), status="queued")

        status = engine.poll_build(session, build, build.attempt_started_at)

        assert status == BuildStatus.PENDING
        assert build.external_job_id == "9001"

    def test_poll_completed_run(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        github.add_run(9001, _title("tok01"), status="completed", conclusion="failure")

        assert engine.poll_build(session, build) == BuildStatus.FAILED

    def test_api_errors_retried_before_timeout(self, engine, session, github) -> None:
        """Failing queries are retried but do not fail a young record."""
        build = engine.submit(session, linux_request()).build
        github.runs_error = ExternalApiError("rate limited", status_code=403)

        status = engine.poll_build(
            session, build, build.attempt_started_at + timedelta(minutes=5)
        )

        assert status == BuildStatus.PENDING
        assert github.run_queries == 2

    def test_api_errors_fail_after_timeout(self, engine, session, github) -> None:
        build = engine.submit(session, linux_request()).build
        github.runs_error = ExternalApiError("rate limited", status_code=403)

        status = engine.poll_build(
            session, build, build.attempt_started_at + timedelta(minutes=21)
        )

        assert status == BuildStatus.FAILED
        assert build.error_type == "external_api_error"

    def test_build_success_waits_for_release(self, engine, session, github) -> None:
        """build_success records never time out; they complete on release."""
        build = engine.submit(session, linux_request()).build
        engine.handle_job_event(session, _event("completed", conclusion="success"))
        much_later = build.attempt_started_at + timedelta(days=2)

        assert engine.poll_build(session, build, much_later) == BuildStatus.BUILD_SUCCESS

        github.publish(RELEASE_TAG, LINUX_ASSET)
        assert engine.poll_build(session, build, much_later) == BuildStatus.COMPLETED

    def test_query_raises_last_error(self, engine) -> None:
        errors = iter([ExternalApiError("first"), ExternalApiError("second")])

        def lookup():
            raise next(errors)

        with pytest.raises(ExternalApiError, match="second"):
            engine._query("Run lookup", lookup)

    def test_query_returns_after_transient_error(self, engine) -> None:
        calls = []

        def lookup():
            calls.append(1)
            if len(calls) == 1:
                raise ExternalApiError("rate limited", status_code=403)
            return "9001"

        assert engine._query("Run lookup", lookup) == "9001"
        assert len(calls) == 2


class TestConcurrentSessions:
    """Signals handled in separate sessions against a file database."""

    def test_stale_poll_does_not_reopen_failed_build(
        self, engine, file_session_factory, github
    ) -> None:
        """A poll that read the record before a webhook failed it changes nothing."""
        with get_session(file_session_factory) as session:
            build_id = engine.submit(session, linux_request()).build_id
        github.add_run(9001, _title("tok01"), status="in_progress")

        poll_session = file_session_factory()
        try:
            (stale,) = registry.list_active_builds(poll_session)
            with get_session(file_session_factory) as session:
                engine.handle_job_event(session, _event("completed", conclusion="failure"))

            status = engine.poll_build(poll_session, stale, stale.attempt_started_at)
            poll_session.commit()
        finally:
            poll_session.close()

        assert status == BuildStatus.FAILED
        with file_session_factory() as session:
            record = registry.get_build(session, build_id)
            assert record.build_status == BuildStatus.FAILED
            assert record.error_type == "workflow_failure"

    def test_concurrent_retries_dispatch_once(
        self, engine, file_session_factory, github
    ) -> None:
        with get_session(file_session_factory) as session:
            build_id = engine.submit(session, linux_request()).build_id
            registry.transition(session, build_id, BuildStatus.FAILED)

        other = file_session_factory()
        try:
            registry.get_build(other, build_id)
            with get_session(file_session_factory) as session:
                first = engine.retry(session, build_id)

            second = engine.retry(other, build_id)
            other.commit()
        finally:
            other.close()

        assert first.outcome == SubmitOutcome.RETRIED
        assert second.outcome == SubmitOutcome.ALREADY_IN_PROGRESS
        assert second.build.correlation_token == "tok02"
        assert len(github.dispatches) == 2

    def test_submit_during_slow_dispatch(
        self, engine, file_session_factory, github, monkeypatch
    ) -> None:
        """An identical request during a dispatch sees the claim and is not blocked."""
        dispatching = threading.Event()
        proceed = threading.Event()
        real_dispatch = github.dispatch_workflow

        def slow_dispatch(workflow_id, ref, inputs):
            dispatching.set()
            proceed.wait(10.0)
            real_dispatch(workflow_id, ref, inputs)

        monkeypatch.setattr(github, "dispatch_workflow", slow_dispatch)
        outcomes = {}

        def submit_first():
            with get_session(file_session_factory) as session:
                outcomes["first"] = engine.submit(session, linux_request()).outcome

        thread = threading.Thread(target=submit_first)
        thread.start()
        try:
            assert dispatching.wait(5.0)
            with get_session(file_session_factory) as session:
                second = engine.submit(session, linux_request())
        finally:
            proceed.set()
            thread.join(10.0)

        assert second.outcome == SubmitOutcome.ALREADY_IN_PROGRESS
        assert outcomes["first"] == SubmitOutcome.DISPATCHED
        assert len(github.dispatches) == 1
        with file_session_factory() as session:
            (record,) = registry.list_builds(session)
            assert record.id == second.build_id
            assert record.build_status == BuildStatus.PENDING
