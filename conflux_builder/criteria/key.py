"""Equivalence key computation for build criteria.

The criteria key is a deterministic hash over every normalized criteria
field. It backs the uniqueness constraint on build records: SQL unique
indexes treat NULL columns as distinct, so the flattened nullable
columns alone cannot enforce one record per equivalence class. Unset
linux-only fields serialize as JSON null, which never collides with a
concrete version.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from conflux_builder.criteria.schema import BuildCriteria

# Schema version for criteria key format; bump when the key format changes
CRITERIA_KEY_SCHEMA_VERSION = "1"


def criteria_snapshot(criteria: BuildCriteria) -> dict[str, Any]:
    """Create the canonical snapshot hashed into the criteria key.

    Args:
        criteria: Normalized criteria with a resolved commit SHA.

    Returns:
        Dictionary with every equivalence-relevant field.

    Raises:
        ValueError: If the commit SHA has not been resolved.
    """
    if not criteria.commit_sha:
        raise ValueError("criteria must be pinned to a commit before keying")

    return {
        "schema_version": CRITERIA_KEY_SCHEMA_VERSION,
        "version_tag": criteria.version_tag,
        "commit_sha": criteria.commit_sha.lower(),
        "os": criteria.os,
        "arch": criteria.arch,
        "static_openssl": bool(criteria.static_openssl),
        "compatibility_mode": bool(criteria.compatibility_mode),
        "glibc_version": criteria.glibc_version,
        "openssl_version": criteria.openssl_version,
    }


def compute_criteria_key(criteria: BuildCriteria) -> str:
    """Compute the equivalence key for criteria.

    Args:
        criteria: Normalized criteria with a resolved commit SHA.

    Returns:
        Key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        criteria_snapshot(criteria),
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


__all__ = [
    "CRITERIA_KEY_SCHEMA_VERSION",
    "compute_criteria_key",
    "criteria_snapshot",
]
