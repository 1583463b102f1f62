"""MCP server implementation.

This module creates the FastMCP server and registers all tools.
Tools are thin wrappers around the reconciliation engine and the build
registry; each call builds its own orchestrator and transaction.

Tools:
- submit_build is idempotent: resubmitting equivalent criteria returns
  the existing build instead of dispatching again
- retry_build of a build that is already pending is a no-op
- Errors are returned as structured ``{code, message}`` objects
"""

from typing import Annotated, Any

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from mcp_server.errors import (
    INTERNAL_ERROR,
    NOT_FOUND,
    build_not_found,
    from_exception,
    make_error,
    validation_error,
)
from mcp_server.schemas import (
    BuildSummary,
    GetBuildResponse,
    GetReleaseResponse,
    ListBuildsResponse,
    ReleaseAssetSummary,
    SubmitBuildResponse,
)

# Create the FastMCP server instance
mcp = FastMCP(
    name="conflux-builder",
)


def _get_session_factory() -> Any:
    """Get the database session factory.

    Returns:
        Session factory callable.
    """
    from conflux_builder.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _get_orchestrator() -> Any:
    from conflux_builder.config import get_settings
    from conflux_builder.orchestrator import Orchestrator

    return Orchestrator.from_settings(get_settings())


def _summary(build: Any) -> BuildSummary:
    data = build.to_dict()
    return BuildSummary(**{name: data[name] for name in BuildSummary.model_fields})


def _submit_response(result: Any) -> SubmitBuildResponse:
    from conflux_builder.types import SubmitOutcome

    summary = _summary(result.build)
    if result.outcome == SubmitOutcome.DISPATCH_FAILED:
        return SubmitBuildResponse(
            success=False,
            outcome=result.outcome.value,
            build=summary,
            error=make_error(
                summary.error_type or "dispatch_failed",
                summary.error_message or "Dispatch failed",
                details={"build_id": summary.id},
            ).to_dict(),
        )
    return SubmitBuildResponse(success=True, outcome=result.outcome.value, build=summary)


@mcp.tool()
def submit_build(
    version_tag: Annotated[str, Field(description="Source tag to build, e.g. v2.4.0")],
    os: Annotated[str, Field(description="Target OS: linux, windows or macos")],
    arch: Annotated[str, Field(description="Target arch: x86_64 or aarch64")],
    commit_sha: Annotated[
        str | None, Field(description="Commit to build; resolved from the tag if omitted")
    ] = None,
    glibc_version: Annotated[
        str | None, Field(description="glibc version (linux only)")
    ] = None,
    openssl_version: Annotated[
        str | None, Field(description="OpenSSL major version (linux only)")
    ] = None,
    static_openssl: Annotated[
        bool, Field(description="Link OpenSSL statically")
    ] = True,
    compatibility_mode: Annotated[
        bool, Field(description="Build a portable binary")
    ] = False,
) -> SubmitBuildResponse:
    """Request a build, or get the existing build for the same criteria.

    If a matching binary is already published, the build is recorded as
    completed with its download URL and nothing is dispatched.

    Returns:
        SubmitBuildResponse with outcome and build, or error.
    """
    from conflux_builder.criteria.schema import CriteriaValidationError
    from conflux_builder.db import get_session
    from conflux_builder.github.client import ExternalApiError, NotFoundError

    raw = {
        "version_tag": version_tag,
        "os": os,
        "arch": arch,
        "commit_sha": commit_sha,
        "glibc_version": glibc_version,
        "openssl_version": openssl_version,
        "static_openssl": static_openssl,
        "compatibility_mode": compatibility_mode,
    }

    try:
        factory = _get_session_factory()
        orchestrator = _get_orchestrator()
        try:
            with get_session(factory) as session:
                result = orchestrator.engine.submit(session, raw)
                return _submit_response(result)
        finally:
            orchestrator.close()

    except CriteriaValidationError as e:
        return SubmitBuildResponse(
            success=False,
            error=validation_error(str(e), details={"errors": e.errors}).to_dict(),
        )
    except NotFoundError as e:
        return SubmitBuildResponse(
            success=False, error=make_error(NOT_FOUND, str(e)).to_dict()
        )
    except ExternalApiError as e:
        return SubmitBuildResponse(success=False, error=from_exception(e).to_dict())
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return SubmitBuildResponse(success=False, error=error.to_dict())


@mcp.tool()
def get_build_status(
    build_id: Annotated[int, Field(description="Build ID")],
) -> GetBuildResponse:
    """Get the current state of a build.

    Args:
        build_id: The build ID returned by submit_build.

    Returns:
        GetBuildResponse with the build or error.
    """
    from conflux_builder.builds.registry import BuildNotFoundError, get_build

    try:
        factory = _get_session_factory()
        with factory() as session:
            try:
                build = get_build(session, build_id)
            except BuildNotFoundError:
                return GetBuildResponse(
                    success=False, error=build_not_found(build_id).to_dict()
                )
            return GetBuildResponse(success=True, build=_summary(build))

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return GetBuildResponse(success=False, error=error.to_dict())


@mcp.tool()
def list_builds(
    status: Annotated[
        str | None,
        Field(
            description="Filter by status: pending, in_progress, build_success, "
            "completed, failed, cancelled"
        ),
    ] = None,
    version_tag: Annotated[
        str | None, Field(description="Filter by version tag")
    ] = None,
    limit: Annotated[int, Field(description="Maximum results to return")] = 100,
) -> ListBuildsResponse:
    """List build records with optional filters, newest first.

    Returns:
        ListBuildsResponse with list of builds or error.
    """
    from conflux_builder.builds.registry import list_builds as svc_list_builds
    from conflux_builder.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            error = validation_error(f"Invalid status: {status}. Use {valid}")
            return ListBuildsResponse(
                success=False, builds=[], total=0, error=error.to_dict()
            )

    try:
        factory = _get_session_factory()
        with factory() as session:
            builds = svc_list_builds(
                session, status=status_filter, version_tag=version_tag, limit=limit
            )
            summaries = [_summary(b) for b in builds]
            return ListBuildsResponse(
                success=True, builds=summaries, total=len(summaries)
            )

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return ListBuildsResponse(
            success=False, builds=[], total=0, error=error.to_dict()
        )


@mcp.tool()
def retry_build(
    build_id: Annotated[int, Field(description="ID of a failed or cancelled build")],
) -> SubmitBuildResponse:
    """Dispatch a new attempt for a failed or cancelled build.

    The build keeps its ID. Retrying a build that is already pending
    returns it unchanged.

    Returns:
        SubmitBuildResponse with outcome and build, or error.
    """
    from conflux_builder.builds.engine import RetryNotAllowedError
    from conflux_builder.builds.registry import BuildNotFoundError
    from conflux_builder.db import get_session

    try:
        factory = _get_session_factory()
        orchestrator = _get_orchestrator()
        try:
            with get_session(factory) as session:
                result = orchestrator.engine.retry(session, build_id)
                return _submit_response(result)
        finally:
            orchestrator.close()

    except BuildNotFoundError:
        return SubmitBuildResponse(
            success=False, error=build_not_found(build_id).to_dict()
        )
    except RetryNotAllowedError as e:
        return SubmitBuildResponse(success=False, error=from_exception(e).to_dict())
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return SubmitBuildResponse(success=False, error=error.to_dict())


@mcp.tool()
def get_release(
    version_tag: Annotated[str, Field(description="Source tag, e.g. v2.4.0")],
) -> GetReleaseResponse:
    """List the binaries already published for a version.

    Attestation files are left out.

    Returns:
        GetReleaseResponse with the release assets or error.
    """
    from conflux_builder.builds.matcher import describe_release
    from conflux_builder.github.client import ExternalApiError, NotFoundError

    try:
        orchestrator = _get_orchestrator()
        try:
            release = describe_release(
                orchestrator.releases.get_release_for_version(version_tag)
            )
        finally:
            orchestrator.close()

        assets = [
            ReleaseAssetSummary(
                name=a["name"],
                download_url=a["download_url"],
                size=a["size"],
                os=a["os"],
                arch=a["arch"],
                is_portable=a["is_portable"],
            )
            for a in release["assets"]
            if not a["is_attestation"]
        ]
        return GetReleaseResponse(
            success=True,
            tag_name=release["tag_name"],
            published_at=release["published_at"],
            assets=assets,
        )

    except NotFoundError as e:
        return GetReleaseResponse(
            success=False, error=make_error(NOT_FOUND, str(e)).to_dict()
        )
    except ExternalApiError as e:
        return GetReleaseResponse(success=False, error=from_exception(e).to_dict())
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return GetReleaseResponse(success=False, error=error.to_dict())


__all__ = [
    "get_build_status",
    "get_release",
    "list_builds",
    "mcp",
    "retry_build",
    "submit_build",
]
