"""Release asset matching against build criteria.

This module handles:
- Deciding whether a release asset filename satisfies build criteria
- Picking the matching asset out of a release
- Parsing asset names and sizes for display

Asset names follow the builder's convention, e.g.
``conflux-builder-v1.0.0-linux-x86_64-glibc2.31.tar.gz`` or
``conflux-builder-v1.1.0-darwin-aarch64-portable-dynamic-openssl.tar.gz``.
All checks are substring containment on the filename.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from conflux_builder.criteria.schema import BuildCriteria
from conflux_builder.types import ExternalArtifact, Release

logger = logging.getLogger(__name__)

# Marker carried by provenance/attestation siblings of the binaries
ATTESTATION_MARKER = "attestation"
PORTABLE_MARKER = "portable"
DYNAMIC_OPENSSL_MARKER = "dynamic-openssl"

# Internal OS name -> token used in asset filenames
OS_FILENAME_TOKENS = {
    "linux": "linux",
    "windows": "windows",
    "macos": "darwin",
}

ARCH_TOKENS = ("x86_64", "aarch64")

SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def os_filename_token(os_name: str) -> str:
    """Return the filename token for an OS."""
    return OS_FILENAME_TOKENS.get(os_name, os_name)


def matches(
    artifact_name: str,
    criteria: BuildCriteria,
    *,
    skip_attestation: bool = True,
) -> bool:
    """Check whether a release asset was built for the given criteria.

    Checks short-circuit in order: attestation marker, required tokens
    (version tag, OS, arch), glibc version for linux, portability and
    OpenSSL linking. The last two are exact: a portable asset only
    matches compatibility-mode criteria, and vice versa.

    Args:
        artifact_name: Release asset filename.
        criteria: Criteria to match against.
        skip_attestation: Reject attestation/provenance files.

    Returns:
        True if the asset satisfies every check.
    """
    if skip_attestation and ATTESTATION_MARKER in artifact_name:
        return False

    if not criteria.version_tag or not criteria.os or not criteria.arch:
        return False
    if criteria.version_tag not in artifact_name:
        return False
    if os_filename_token(criteria.os) not in artifact_name:
        return False
    if criteria.arch not in artifact_name:
        return False

    if (
        criteria.os == "linux"
        and criteria.glibc_version
        and f"glibc{criteria.glibc_version}" not in artifact_name
    ):
        return False

    is_portable = PORTABLE_MARKER in artifact_name
    if is_portable != bool(criteria.compatibility_mode):
        return False

    is_dynamic_openssl = DYNAMIC_OPENSSL_MARKER in artifact_name
    return is_dynamic_openssl == (not criteria.static_openssl)


def find_matching_artifact(
    artifacts: Iterable[ExternalArtifact],
    criteria: BuildCriteria,
) -> ExternalArtifact | None:
    """Return the first artifact matching the criteria.

    Args:
        artifacts: Release assets in release order.
        criteria: Criteria to match against.

    Returns:
        The matching artifact, or None.
    """
    for artifact in artifacts:
        if matches(artifact.name, criteria):
            logger.debug("Asset %s matches %s", artifact.name, criteria)
            return artifact
    return None


@dataclass
class ParsedAssetName:
    """Display attributes parsed from an asset filename."""

    os: str | None
    arch: str | None
    is_portable: bool
    is_attestation: bool


def parse_artifact_name(name: str) -> ParsedAssetName:
    """Parse OS, arch and flags out of an asset filename.

    Args:
        name: Release asset filename.

    Returns:
        ParsedAssetName with human-readable OS name.
    """
    lowered = name.lower()

    os_display: str | None = None
    if "windows" in lowered:
        os_display = "Windows"
    elif "darwin" in lowered or "macos" in lowered:
        os_display = "macOS"
    elif "linux" in lowered:
        os_display = "Linux"

    arch = next((a for a in ARCH_TOKENS if a in lowered), None)

    return ParsedAssetName(
        os=os_display,
        arch=arch,
        is_portable=PORTABLE_MARKER in lowered,
        is_attestation=ATTESTATION_MARKER in lowered,
    )


def format_bytes(size: int, decimals: int = 2) -> str:
    """Format a byte count as a human-readable string.

    Args:
        size: Size in bytes.
        decimals: Maximum decimals to keep.

    Returns:
        String such as ``1.21 KB``.
    """
    if size <= 0:
        return "0 Bytes"
    exponent = 0
    while exponent < len(SIZE_UNITS) - 1 and size >= 1024 ** (exponent + 1):
        exponent += 1
    value = round(size / (1024**exponent), decimals)
    # Drop trailing zeros: 1.0 -> 1, 1.50 -> 1.5
    text = f"{value:.{decimals}f}".rstrip("0").rstrip(".")
    return f"{text} {SIZE_UNITS[exponent]}"


def describe_release(release: Release) -> dict[str, Any]:
    """Convert a release to a dictionary with parsed asset attributes.

    Attestation assets are listed but flagged so clients can hide them.
    """
    assets = []
    for artifact in release.assets:
        parsed = parse_artifact_name(artifact.name)
        assets.append(
            {
                "name": artifact.name,
                "download_url": artifact.download_url,
                "size_bytes": artifact.size_bytes,
                "size": format_bytes(artifact.size_bytes),
                "os": parsed.os,
                "arch": parsed.arch,
                "is_portable": parsed.is_portable,
                "is_attestation": parsed.is_attestation,
            }
        )
    return {
        "id": release.id,
        "tag_name": release.tag_name,
        "name": release.name,
        "published_at": release.published_at,
        "html_url": release.html_url,
        "assets": assets,
    }


__all__ = [
    "ATTESTATION_MARKER",
    "DYNAMIC_OPENSSL_MARKER",
    "OS_FILENAME_TOKENS",
    "PORTABLE_MARKER",
    "ParsedAssetName",
    "describe_release",
    "find_matching_artifact",
    "format_bytes",
    "matches",
    "os_filename_token",
    "parse_artifact_name",
]
