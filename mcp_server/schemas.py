"""Pydantic schemas for MCP tool responses.

These schemas define the structured output formats for MCP tools,
ensuring consistent JSON responses across all tools.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict


class BuildSummary(BaseModel):
    """Summary of a build record."""

    model_config = ConfigDict(extra="forbid")

    id: int
    version_tag: str
    commit_sha: str
    os: str
    arch: str
    glibc_version: str | None = None
    openssl_version: str | None = None
    static_openssl: bool
    compatibility_mode: bool
    status: str
    external_job_id: str | None = None
    download_url: str | None = None
    error_type: str | None = None
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class SubmitBuildResponse(BaseModel):
    """Response for submit_build and retry_build tools."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    outcome: str | None = None
    build: BuildSummary | None = None
    error: dict[str, Any] | None = None


class GetBuildResponse(BaseModel):
    """Response for get_build_status tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    build: BuildSummary | None = None
    error: dict[str, Any] | None = None


class ListBuildsResponse(BaseModel):
    """Response for list_builds tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    builds: list[BuildSummary]
    total: int
    error: dict[str, Any] | None = None


class ReleaseAssetSummary(BaseModel):
    """A binary published on a builder release."""

    model_config = ConfigDict(extra="forbid")

    name: str
    download_url: str
    size: str
    os: str | None = None
    arch: str | None = None
    is_portable: bool = False


class GetReleaseResponse(BaseModel):
    """Response for get_release tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    tag_name: str | None = None
    published_at: str | None = None
    assets: list[ReleaseAssetSummary] | None = None
    error: dict[str, Any] | None = None


__all__ = [
    "BuildSummary",
    "GetBuildResponse",
    "GetReleaseResponse",
    "ListBuildsResponse",
    "ReleaseAssetSummary",
    "SubmitBuildResponse",
]
