"""Build request endpoints.

- POST /builds - Submit a build request
- GET /builds - List builds
- GET /builds/{id} - Get build by ID
- GET /builds/{id}/status - Get the status view of a build
- POST /builds/{id}/retry - Retry a failed or cancelled build
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from conflux_builder.builds.engine import RetryNotAllowedError, SubmitResult
from conflux_builder.builds.registry import BuildNotFoundError, get_build, list_builds
from conflux_builder.criteria.schema import CriteriaValidationError
from conflux_builder.github.client import ExternalApiError, NotFoundError
from conflux_builder.orchestrator import Orchestrator
from conflux_builder.types import BuildStatus
from web.deps import get_db, get_orchestrator

router = APIRouter()


def _not_found(build_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "build_not_found",
            "message": f"Build not found: {build_id}",
        },
    )


def _submit_response(result: SubmitResult) -> dict[str, Any]:
    return {
        "outcome": result.outcome.value,
        "build_id": result.build_id,
        "status": result.status,
        "download_url": result.download_url,
        "build": result.build.to_dict(),
    }


@router.post("")
def submit_build_endpoint(
    body: dict[str, Any] = Body(..., description="Build criteria"),
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Submit a build request.

    An equivalent earlier request is returned instead of dispatching again;
    a failed one is retried.

    Args:
        body: Build criteria (version_tag, os, arch, ...).
        db: Database session.
        orchestrator: Application orchestrator.

    Returns:
        Outcome, build id, status and download URL if already available.

    Raises:
        HTTPException: 400 on invalid criteria, 404 on an unknown tag,
            502 if GitHub cannot be queried.
    """
    try:
        result = orchestrator.engine.submit(db, body)
    except CriteriaValidationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e), "errors": e.errors},
        ) from None
    except NotFoundError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except ExternalApiError as e:
        raise HTTPException(
            status_code=http_status.HTTP_502_BAD_GATEWAY,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _submit_response(result)


@router.get("")
def list_builds_endpoint(
    status: str | None = Query(None, description="Filter by status"),
    version: str | None = Query(None, description="Filter by version tag"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records.

    Args:
        status: Filter by status.
        version: Filter by version tag.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of build records.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: {valid}",
                },
            ) from None

    builds = list_builds(db, status=status_filter, version_tag=version, limit=limit)
    return [b.to_dict() for b in builds]


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID.

    Raises:
        HTTPException: If build not found.
    """
    try:
        return get_build(db, build_id).to_dict()
    except BuildNotFoundError:
        raise _not_found(build_id) from None


@router.get("/{build_id}/status")
def get_build_status_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get the status view of a build, for clients polling progress.

    Raises:
        HTTPException: If build not found.
    """
    try:
        build = get_build(db, build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    return {
        "id": build.id,
        "status": build.status,
        "download_url": build.download_url,
        "external_job_id": build.external_job_id,
        "error_message": build.error_message,
        "updated_at": build.updated_at.isoformat() if build.updated_at else None,
    }


@router.post("/{build_id}/retry")
def retry_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Retry a failed or cancelled build.

    Retrying a pending build is a no-op.

    Raises:
        HTTPException: 404 if build not found, 409 if it cannot be retried.
    """
    try:
        result = orchestrator.engine.retry(db, build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    except RetryNotAllowedError as e:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _submit_response(result)
