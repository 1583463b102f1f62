"""GitHub REST client for the builder and source repositories.

This module handles:
- Dispatching build workflows and reading workflow runs (job control)
- Reading releases and their assets (artifact host)
- Resolving tags to commits and listing recent tags (ref resolution)

One client is constructed from Settings at process start and passed to
every component that talks to GitHub.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from conflux_builder.types import ExternalArtifact, Release, WorkflowRun

if TYPE_CHECKING:
    from conflux_builder.config import Settings

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"


class ExternalApiError(Exception):
    """Raised when a GitHub API call fails for a reason other than not-found."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "external_api_error",
    ) -> None:
        """Initialize ExternalApiError.

        Args:
            message: Error description.
            status_code: HTTP status, if a response was received.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NotFoundError(Exception):
    """Raised when a tag, release or workflow run does not exist."""

    def __init__(self, message: str, code: str = "not_found") -> None:
        """Initialize NotFoundError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def _parse_artifact(asset: dict[str, Any]) -> ExternalArtifact:
    return ExternalArtifact(
        name=asset["name"],
        download_url=asset["browser_download_url"],
        size_bytes=int(asset.get("size", 0)),
    )


def _parse_release(data: dict[str, Any]) -> Release:
    return Release(
        id=data["id"],
        tag_name=data["tag_name"],
        name=data.get("name"),
        published_at=data.get("published_at"),
        html_url=data.get("html_url"),
        assets=[_parse_artifact(a) for a in data.get("assets", [])],
    )


def _parse_run(data: dict[str, Any]) -> WorkflowRun:
    return WorkflowRun(
        id=data["id"],
        title=data.get("display_title") or data.get("name") or "",
        status=data.get("status"),
        conclusion=data.get("conclusion"),
        head_branch=data.get("head_branch"),
        html_url=data.get("html_url"),
    )


class GitHubClient:
    """Thin wrapper over the GitHub REST API.

    Attributes:
        builder_repo: ``owner/repo`` running the build workflows.
        source_repo: ``owner/repo`` whose tags are built.
    """

    def __init__(
        self,
        http: httpx.Client,
        builder_repo: str,
        source_repo: str,
    ) -> None:
        self._http = http
        self.builder_repo = builder_repo
        self.source_repo = source_repo

    @classmethod
    def from_settings(cls, settings: Settings) -> GitHubClient:
        """Create a client with its own HTTP connection pool.

        Args:
            settings: Application settings.

        Returns:
            Configured GitHubClient.
        """
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if settings.github_token:
            headers["Authorization"] = f"Bearer {settings.github_token}"
        http = httpx.Client(
            base_url=settings.github_api_url,
            headers=headers,
            timeout=settings.http_timeout,
            follow_redirects=True,
        )
        return cls(
            http,
            builder_repo=f"{settings.builder_owner}/{settings.builder_repo}",
            source_repo=f"{settings.source_owner}/{settings.source_repo}",
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        not_found: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and map failures to this module's errors.

        Args:
            method: HTTP method.
            path: Path relative to the API base URL.
            not_found: Message for NotFoundError on 404; if None a 404 is
                an ExternalApiError.
            **kwargs: Passed to httpx.

        Returns:
            The successful response.

        Raises:
            NotFoundError: On 404 when not_found is given.
            ExternalApiError: On transport errors or other error statuses.
        """
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("GitHub request %s %s failed: %s", method, path, e)
            raise ExternalApiError(f"GitHub request failed: {e}") from e

        if response.status_code == 404 and not_found is not None:
            raise NotFoundError(not_found)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "GitHub request %s %s returned %d",
                method,
                path,
                response.status_code,
            )
            raise ExternalApiError(
                f"GitHub API error {response.status_code} for {method} {path}",
                status_code=response.status_code,
            ) from e

        return response

    # Job control

    def dispatch_workflow(
        self,
        workflow_id: str,
        ref: str,
        inputs: dict[str, Any],
    ) -> None:
        """Trigger a workflow_dispatch event.

        GitHub answers 204 without the id of the run it creates.

        Args:
            workflow_id: Workflow file name (e.g. ``linux.yml``).
            ref: Git ref of the builder repository to run on.
            inputs: Workflow inputs.

        Raises:
            ExternalApiError: If the dispatch is rejected.
        """
        self._request(
            "POST",
            f"/repos/{self.builder_repo}/actions/workflows/{workflow_id}/dispatches",
            json={"ref": ref, "inputs": inputs},
        )
        logger.info("Dispatched %s on %s", workflow_id, ref)

    def get_workflow_run(self, run_id: str | int) -> WorkflowRun:
        """Get a workflow run by id.

        Raises:
            NotFoundError: If the run does not exist.
            ExternalApiError: On other failures.
        """
        response = self._request(
            "GET",
            f"/repos/{self.builder_repo}/actions/runs/{run_id}",
            not_found=f"Workflow run not found: {run_id}",
        )
        return _parse_run(response.json())

    def list_workflow_runs(
        self,
        workflow_id: str,
        since: datetime | None = None,
        per_page: int = 50,
    ) -> list[WorkflowRun]:
        """List recent dispatched runs of a workflow.

        Args:
            workflow_id: Workflow file name.
            since: Only runs created at or after this time (naive = UTC).
            per_page: Page size.

        Returns:
            Runs, newest first.

        Raises:
            NotFoundError: If the workflow does not exist.
            ExternalApiError: On other failures.
        """
        params: dict[str, Any] = {"event": "workflow_dispatch", "per_page": per_page}
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            params["created"] = f">={since.strftime('%Y-%m-%dT%H:%M:%SZ')}"
        response = self._request(
            "GET",
            f"/repos/{self.builder_repo}/actions/workflows/{workflow_id}/runs",
            params=params,
            not_found=f"Workflow not found: {workflow_id}",
        )
        return [_parse_run(run) for run in response.json().get("workflow_runs", [])]

    # Artifact host

    def get_release_by_tag(self, tag: str) -> Release:
        """Get a builder release by tag.

        Raises:
            NotFoundError: If no release has this tag.
            ExternalApiError: On other failures.
        """
        response = self._request(
            "GET",
            f"/repos/{self.builder_repo}/releases/tags/{tag}",
            not_found=f"Release not found: {tag}",
        )
        return _parse_release(response.json())

    # Ref resolution

    def get_commit_for_tag(self, tag: str) -> str:
        """Resolve a source repository tag to the SHA its ref points at.

        Raises:
            NotFoundError: If the tag does not exist.
            ExternalApiError: On other failures.
        """
        response = self._request(
            "GET",
            f"/repos/{self.source_repo}/git/ref/tags/{tag}",
            not_found=f"Tag not found: {tag}",
        )
        return str(response.json()["object"]["sha"])

    def list_tags(self, limit: int = 10) -> list[tuple[str, str]]:
        """List the most recent source tags.

        Args:
            limit: Number of tags to return.

        Returns:
            List of (tag name, commit SHA).
        """
        response = self._request(
            "GET",
            f"/repos/{self.source_repo}/tags",
            params={"per_page": limit, "page": 1},
        )
        return [(t["name"], t["commit"]["sha"]) for t in response.json()]


__all__ = [
    "ExternalApiError",
    "GitHubClient",
    "NotFoundError",
]
