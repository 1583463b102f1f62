"""Pydantic models for build request validation.

A build request is validated as a tagged union on ``os``
(LinuxCriteria | WindowsCriteria | MacosCriteria) so that each OS only
carries the fields that apply to it. The validated model is flattened
into an immutable BuildCriteria, which is what dedup lookup, dispatch
and artifact matching consume.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

GLIBC_VERSIONS = ("2.27", "2.31", "2.35", "2.39")
LATEST_GLIBC_VERSION = GLIBC_VERSIONS[-1]
OPENSSL_VERSIONS = ("1", "3")
DEFAULT_OPENSSL_VERSION = "3"

GlibcVersion = Literal["2.27", "2.31", "2.35", "2.39"]
OpensslVersion = Literal["1", "3"]

COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")

# Fields only meaningful for linux builds
LINUX_ONLY_FIELDS = ("glibc_version", "openssl_version")


class CriteriaValidationError(Exception):
    """Raised when build criteria are invalid."""

    def __init__(
        self,
        message: str,
        errors: list[dict[str, Any]] | None = None,
        code: str = "validation",
    ) -> None:
        super().__init__(message)
        self.errors = errors or []
        self.code = code


@dataclass(frozen=True)
class BuildCriteria:
    """Normalized description of a requested build.

    Two criteria are equivalent iff all fields are equal, with unset
    linux-only fields compared as None.
    """

    version_tag: str
    os: str
    arch: str
    static_openssl: bool = True
    compatibility_mode: bool = False
    commit_sha: str | None = None
    glibc_version: str | None = None
    openssl_version: str | None = None

    @property
    def short_sha(self) -> str | None:
        """First seven characters of the commit SHA."""
        return self.commit_sha[:7] if self.commit_sha else None

    @property
    def release_tag(self) -> str | None:
        """Tag of the builder release that carries artifacts for this commit."""
        if not self.commit_sha:
            return None
        return f"{self.version_tag}-{self.short_sha}"

    def with_commit(self, commit_sha: str) -> BuildCriteria:
        """Return a copy pinned to a commit."""
        return replace(self, commit_sha=commit_sha.lower())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class _CriteriaBase(BaseModel):
    """Fields shared by all OS variants."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    version_tag: str = Field(min_length=1, description="Source tag to build")
    commit_sha: str | None = Field(
        default=None, description="Commit the tag points at (resolved if absent)"
    )
    static_openssl: bool = Field(default=True)
    compatibility_mode: bool = Field(default=False)

    @field_validator("commit_sha")
    @classmethod
    def validate_commit_sha(cls, v: str | None) -> str | None:
        """Validate commit SHA is hexadecimal."""
        if v is None:
            return v
        v = v.lower()
        if not COMMIT_SHA_PATTERN.match(v):
            raise ValueError(f"commit_sha must be 7-40 hex characters, got '{v}'")
        return v

    def to_criteria(self) -> BuildCriteria:
        """Flatten into a BuildCriteria."""
        data = self.model_dump()
        return BuildCriteria(
            version_tag=data["version_tag"],
            os=data["os"],
            arch=data["arch"],
            static_openssl=data["static_openssl"],
            compatibility_mode=data["compatibility_mode"],
            commit_sha=data["commit_sha"],
            glibc_version=data.get("glibc_version"),
            openssl_version=data.get("openssl_version"),
        )


class LinuxCriteria(_CriteriaBase):
    """Linux build: glibc and OpenSSL versions apply, defaulting to newest."""

    os: Literal["linux"]
    arch: Literal["x86_64", "aarch64"]
    glibc_version: GlibcVersion = LATEST_GLIBC_VERSION
    openssl_version: OpensslVersion = DEFAULT_OPENSSL_VERSION

    @model_validator(mode="before")
    @classmethod
    def drop_unset_versions(cls, data: Any) -> Any:
        """Treat explicit nulls and empty strings as absent so defaults apply."""
        if isinstance(data, Mapping):
            data = dict(data)
            for name in LINUX_ONLY_FIELDS:
                if data.get(name) in (None, ""):
                    data.pop(name, None)
        return data


class WindowsCriteria(_CriteriaBase):
    """Windows build: x86_64 only, no glibc/OpenSSL version selection."""

    os: Literal["windows"]
    arch: str

    @model_validator(mode="before")
    @classmethod
    def strip_linux_fields(cls, data: Any) -> Any:
        """Drop linux-only fields."""
        if isinstance(data, Mapping):
            data = {k: v for k, v in data.items() if k not in LINUX_ONLY_FIELDS}
        return data

    @field_validator("arch")
    @classmethod
    def validate_arch(cls, v: str) -> str:
        """Windows builds only target x86_64."""
        if v != "x86_64":
            raise ValueError(f"windows builds only support x86_64, got '{v}'")
        return v


class MacosCriteria(_CriteriaBase):
    """macOS build: aarch64 only, never in compatibility mode."""

    os: Literal["macos"]
    arch: str

    @model_validator(mode="before")
    @classmethod
    def strip_linux_fields(cls, data: Any) -> Any:
        """Drop linux-only fields and force compatibility mode off."""
        if isinstance(data, Mapping):
            data = {k: v for k, v in data.items() if k not in LINUX_ONLY_FIELDS}
            data["compatibility_mode"] = False
        return data

    @field_validator("arch")
    @classmethod
    def validate_arch(cls, v: str) -> str:
        """macOS builds only target aarch64."""
        if v != "aarch64":
            raise ValueError(f"macos builds only support aarch64, got '{v}'")
        return v


CriteriaInput = Annotated[
    LinuxCriteria | WindowsCriteria | MacosCriteria,
    Field(discriminator="os"),
]

_criteria_adapter: TypeAdapter[LinuxCriteria | WindowsCriteria | MacosCriteria] = (
    TypeAdapter(CriteriaInput)
)


def parse_criteria_input(
    raw: Mapping[str, Any],
) -> LinuxCriteria | WindowsCriteria | MacosCriteria:
    """Validate raw request data into its OS-specific model.

    Args:
        raw: Request data (e.g. a decoded JSON body).

    Returns:
        The OS-specific criteria model.

    Raises:
        CriteriaValidationError: If the data is invalid.
    """
    try:
        return _criteria_adapter.validate_python(dict(raw))
    except PydanticValidationError as e:
        errors = [
            {
                "loc": [str(part) for part in err["loc"]],
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        summary = "; ".join(
            f"{'.'.join(err['loc']) or 'criteria'}: {err['message']}"
            for err in errors
        )
        raise CriteriaValidationError(
            f"Invalid build criteria: {summary}", errors=errors
        ) from e


def validate_criteria(raw: Mapping[str, Any] | BuildCriteria) -> BuildCriteria:
    """Validate and normalize build criteria.

    Linux requests get default glibc/OpenSSL versions; windows and macOS
    requests lose the linux-only fields, and macOS requests are forced
    out of compatibility mode. Two requests that differ only in what was
    defaulted therefore normalize to equal criteria.

    Args:
        raw: Request data, or an existing BuildCriteria to re-normalize.

    Returns:
        Normalized BuildCriteria.

    Raises:
        CriteriaValidationError: If the data is invalid.
    """
    if isinstance(raw, BuildCriteria):
        raw = raw.to_dict()
    return parse_criteria_input(raw).to_criteria()


__all__ = [
    "DEFAULT_OPENSSL_VERSION",
    "GLIBC_VERSIONS",
    "LATEST_GLIBC_VERSION",
    "OPENSSL_VERSIONS",
    "BuildCriteria",
    "CriteriaInput",
    "CriteriaValidationError",
    "LinuxCriteria",
    "MacosCriteria",
    "WindowsCriteria",
    "parse_criteria_input",
    "validate_criteria",
]
