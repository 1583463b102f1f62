"""Workflow dispatch and run correlation.

GitHub's workflow_dispatch endpoint does not return the id of the run it
starts. Each dispatch therefore carries a short random correlation token
as a workflow input; the builder workflows append it to their run title
(``Build v1.2.3 - macOS (aarch64) - abc12``). Webhooks and run listings
are mapped back to build records by parsing that suffix.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from conflux_builder.criteria.schema import BuildCriteria
from conflux_builder.github.client import ExternalApiError, GitHubClient, NotFoundError
from conflux_builder.types import WorkflowRun

logger = logging.getLogger(__name__)

# One workflow file per OS on the builder repository
WORKFLOW_IDS = {
    "linux": "linux.yml",
    "windows": "windows.yml",
    "macos": "macos.yml",
}

OS_DISPLAY_NAMES = {
    "linux": "Linux",
    "windows": "Windows",
    "macos": "macOS",
}

TOKEN_LENGTH = 5
TOKEN_ALPHABET = string.ascii_letters + string.digits

# Run title suffix carrying the token: " - <5 alphanumerics>" at the very end
TITLE_TOKEN_PATTERN = re.compile(r" - ([a-zA-Z0-9]{5})$")


class DispatchError(Exception):
    """Raised when a workflow cannot be dispatched."""

    def __init__(self, message: str, code: str = "dispatch_failed") -> None:
        super().__init__(message)
        self.code = code


class CorrelationTimeoutError(Exception):
    """Raised when no workflow run was linked to a build in time."""

    def __init__(
        self, build_id: int, timeout: int, code: str = "correlation_timeout"
    ) -> None:
        super().__init__(
            f"No workflow run found for build {build_id} within {timeout // 60} minutes"
        )
        self.build_id = build_id
        self.timeout = timeout
        self.code = code


@dataclass(frozen=True)
class DispatchTicket:
    """What a successful dispatch leaves behind."""

    correlation_token: str
    workflow_id: str


def generate_correlation_token() -> str:
    """Generate a random five character alphanumeric token.

    Tokens are not checked for uniqueness; collisions are negligible at
    the expected request volume.
    """
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def extract_correlation_token(title: str | None) -> str | None:
    """Recover the correlation token from a workflow run title.

    Args:
        title: Run display title, e.g. ``Build v1.2.3 - Linux (x86_64) - abc12``.

    Returns:
        The token, or None if the title does not end in a token suffix.
    """
    if not title:
        return None
    match = TITLE_TOKEN_PATTERN.search(title)
    return match.group(1) if match else None


def format_job_title(criteria: BuildCriteria, token: str) -> str:
    """Render the run title the builder workflows produce for a dispatch."""
    os_name = OS_DISPLAY_NAMES.get(criteria.os, criteria.os)
    return f"Build {criteria.version_tag} - {os_name} ({criteria.arch}) - {token}"


def get_workflow_id(os_name: str) -> str:
    """Return the builder workflow file for an OS.

    Raises:
        DispatchError: If the OS has no workflow.
    """
    try:
        return WORKFLOW_IDS[os_name]
    except KeyError:
        raise DispatchError(f"Unsupported OS: {os_name}") from None


def build_workflow_inputs(criteria: BuildCriteria, token: str) -> dict[str, Any]:
    """Project criteria onto the inputs the OS workflow accepts.

    Linux takes glibc/OpenSSL versions and both linking flags, windows
    only the linking flags, macOS none of them.

    Args:
        criteria: Normalized criteria pinned to a commit.
        token: Correlation token for the run title.

    Returns:
        Workflow inputs.
    """
    inputs: dict[str, Any] = {
        "commit_sha": criteria.commit_sha,
        "version_tag": criteria.version_tag,
        "arch": criteria.arch,
        "run_id": token,
    }
    if criteria.os == "linux":
        inputs.update(
            glibc_version=criteria.glibc_version,
            openssl_version=criteria.openssl_version,
            static_openssl=criteria.static_openssl,
            compatibility_mode=criteria.compatibility_mode,
        )
    elif criteria.os == "windows":
        inputs.update(
            static_openssl=criteria.static_openssl,
            compatibility_mode=criteria.compatibility_mode,
        )
    return inputs


class DispatchCorrelator:
    """Dispatches build workflows and links them back to their runs."""

    def __init__(
        self,
        client: GitHubClient,
        ref: str = "main",
        token_factory: Callable[[], str] = generate_correlation_token,
    ) -> None:
        self.client = client
        self.ref = ref
        self.token_factory = token_factory

    def dispatch(
        self,
        criteria: BuildCriteria,
        correlation_token: str | None = None,
    ) -> DispatchTicket:
        """Dispatch the OS workflow for criteria.

        Args:
            criteria: Normalized criteria pinned to a commit.
            correlation_token: Token to use; a fresh one if None.

        Returns:
            DispatchTicket with the token the run will carry.

        Raises:
            DispatchError: If GitHub rejects or cannot be reached.
        """
        if not criteria.commit_sha:
            raise DispatchError("Cannot dispatch a build without a commit SHA")

        workflow_id = get_workflow_id(criteria.os)
        token = correlation_token or self.token_factory()
        inputs = build_workflow_inputs(criteria, token)

        try:
            self.client.dispatch_workflow(workflow_id, self.ref, inputs)
        except (ExternalApiError, NotFoundError) as e:
            logger.error("Failed to dispatch %s (token %s): %s", workflow_id, token, e)
            raise DispatchError(f"Failed to trigger build workflow: {e}") from e

        logger.info(
            "Dispatched %s for %s %s/%s with token %s",
            workflow_id,
            criteria.version_tag,
            criteria.os,
            criteria.arch,
            token,
        )
        return DispatchTicket(correlation_token=token, workflow_id=workflow_id)

    def resolve_external_job(
        self,
        criteria: BuildCriteria,
        correlation_token: str,
        since: datetime | None = None,
    ) -> str | None:
        """Find the run id of a dispatch by scanning recent runs.

        Args:
            criteria: Criteria of the dispatched build (selects the workflow).
            correlation_token: Token the run title should end with.
            since: Only consider runs created after this time.

        Returns:
            The run id as a string, or None if no run carries the token yet.

        Raises:
            ExternalApiError: If the runs cannot be listed.
        """
        workflow_id = get_workflow_id(criteria.os)
        try:
            runs = self.client.list_workflow_runs(workflow_id, since=since)
        except NotFoundError as e:
            raise ExternalApiError(str(e), status_code=404) from e

        for run in runs:
            if extract_correlation_token(run.title) == correlation_token:
                logger.info("Token %s resolved to run %s", correlation_token, run.id)
                return str(run.id)
        return None

    def fetch_run(self, external_job_id: str) -> WorkflowRun:
        """Get the current state of a linked workflow run.

        Raises:
            ExternalApiError: If the run cannot be read, including when it
                no longer exists.
        """
        try:
            return self.client.get_workflow_run(external_job_id)
        except NotFoundError as e:
            raise ExternalApiError(str(e), status_code=404) from e


__all__ = [
    "OS_DISPLAY_NAMES",
    "TITLE_TOKEN_PATTERN",
    "TOKEN_LENGTH",
    "WORKFLOW_IDS",
    "CorrelationTimeoutError",
    "DispatchCorrelator",
    "DispatchError",
    "DispatchTicket",
    "build_workflow_inputs",
    "extract_correlation_token",
    "format_job_title",
    "generate_correlation_token",
    "get_workflow_id",
]
