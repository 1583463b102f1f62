"""Release endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status

from conflux_builder.builds.matcher import describe_release
from conflux_builder.github.client import ExternalApiError, NotFoundError
from conflux_builder.orchestrator import Orchestrator
from web.deps import get_orchestrator

router = APIRouter()


@router.get("/{version_tag}")
def get_release_endpoint(
    version_tag: str,
    include_attestations: bool = Query(False, description="Include attestation assets"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get the builder release for a source version.

    The version tag is resolved to its commit and the release tagged
    ``<version>-<short sha>`` is returned with parsed asset attributes.

    Raises:
        HTTPException: 404 if the tag or release does not exist, 502 on
            GitHub errors.
    """
    try:
        release = orchestrator.releases.get_release_for_version(version_tag)
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

    data = describe_release(release)
    if not include_attestations:
        data["assets"] = [a for a in data["assets"] if not a["is_attestation"]]
    return data
