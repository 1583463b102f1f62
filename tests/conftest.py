"""Shared fixtures: an in-memory database and a fake GitHub client."""

import itertools
from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conflux_builder.config import Settings
from conflux_builder.db import create_all_tables, get_engine, get_session_factory
from conflux_builder.github.client import ExternalApiError, NotFoundError
from conflux_builder.orchestrator import Orchestrator
from conflux_builder.types import ExternalArtifact, Release, WorkflowRun

BUILDER_REPO = "Conflux-Chain/conflux-builder"
VERSION_TAG = "v2.4.0"
COMMIT_SHA = "abc1234" + "0" * 33
RELEASE_TAG = f"{VERSION_TAG}-abc1234"


class FakeGitHubClient:
    """In-memory stand-in for GitHubClient.

    Attributes:
        commits: Source tag -> commit SHA.
        releases: Release tag -> Release.
        runs: Workflow run id -> (workflow id, WorkflowRun).
        dispatches: Recorded (workflow id, ref, inputs) calls.
        dispatch_error: Raised by dispatch_workflow when set.
        runs_error: Raised by run reads when set.
    """

    def __init__(self) -> None:
        self.builder_repo = BUILDER_REPO
        self.source_repo = "Conflux-Chain/conflux-rust"
        self.commits: dict[str, str] = {}
        self.releases: dict[str, Release] = {}
        self.runs: dict[str, tuple[str, WorkflowRun]] = {}
        self.tags: list[tuple[str, str]] = []
        self.dispatches: list[tuple[str, str, dict[str, Any]]] = []
        self.dispatch_error: Exception | None = None
        self.runs_error: Exception | None = None
        self.run_queries = 0
        self.release_queries = 0
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def dispatch_workflow(self, workflow_id: str, ref: str, inputs: dict[str, Any]) -> None:
        if self.dispatch_error is not None:
            raise self.dispatch_error
        self.dispatches.append((workflow_id, ref, inputs))

    def get_workflow_run(self, run_id: str | int) -> WorkflowRun:
        self.run_queries += 1
        if self.runs_error is not None:
            raise self.runs_error
        try:
            return self.runs[str(run_id)][1]
        except KeyError:
            raise NotFoundError(f"Workflow run not found: {run_id}") from None

    def list_workflow_runs(
        self, workflow_id: str, since: datetime | None = None, per_page: int = 50
    ) -> list[WorkflowRun]:
        self.run_queries += 1
        if self.runs_error is not None:
            raise self.runs_error
        return [run for wf, run in self.runs.values() if wf == workflow_id]

    def get_release_by_tag(self, tag: str) -> Release:
        self.release_queries += 1
        try:
            return self.releases[tag]
        except KeyError:
            raise NotFoundError(f"Release not found: {tag}") from None

    def get_commit_for_tag(self, tag: str) -> str:
        try:
            return self.commits[tag]
        except KeyError:
            raise NotFoundError(f"Tag not found: {tag}") from None

    def list_tags(self, limit: int = 10) -> list[tuple[str, str]]:
        return self.tags[:limit]

    # Helpers for tests

    def add_run(
        self,
        run_id: int,
        title: str,
        status: str = "queued",
        conclusion: str | None = None,
        workflow_id: str = "linux.yml",
    ) -> WorkflowRun:
        run = WorkflowRun(id=run_id, title=title, status=status, conclusion=conclusion)
        self.runs[str(run_id)] = (workflow_id, run)
        return run

    def publish(self, tag: str, *names: str) -> Release:
        release = Release(
            id=len(self.releases) + 1,
            tag_name=tag,
            name=tag,
            published_at="2024-05-01T12:00:00Z",
            assets=[
                ExternalArtifact(
                    name=name,
                    download_url=f"https://github.com/{BUILDER_REPO}/releases/download/{tag}/{name}",
                    size_bytes=52_428_800,
                )
                for name in names
            ],
        )
        self.releases[tag] = release
        return release


def make_token_factory() -> Callable[[], str]:
    """Deterministic correlation tokens: tok01, tok02, ..."""
    counter = itertools.count(1)
    return lambda: f"tok{next(counter):02d}"


def linux_request(**overrides: Any) -> dict[str, Any]:
    """A valid linux build request pinned to COMMIT_SHA."""
    raw: dict[str, Any] = {
        "version_tag": VERSION_TAG,
        "commit_sha": COMMIT_SHA,
        "os": "linux",
        "arch": "x86_64",
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory over a file database, one connection per session."""
    engine = get_engine(f"sqlite:///{tmp_path / 'builds.db'}")
    create_all_tables(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def settings():
    """Settings for tests; nothing is read from a real database or GitHub."""
    return Settings(
        db_url="sqlite://",
        github_token="test-token",
        webhook_secret="test-secret",
        poll_enabled=False,
        poll_api_retries=2,
    )


@pytest.fixture
def github():
    """Fake GitHub client knowing the commit of VERSION_TAG."""
    client = FakeGitHubClient()
    client.commits[VERSION_TAG] = COMMIT_SHA
    return client


@pytest.fixture
def orchestrator(settings, github):
    """Orchestrator wired to the fake client with predictable tokens."""
    orch = Orchestrator.from_settings(settings, client=github)
    orch.correlator.token_factory = make_token_factory()
    return orch
