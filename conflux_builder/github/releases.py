"""Cached release and tag lookups.

Builder releases are tagged ``<version_tag>-<short commit sha>``, so
finding the artifacts for a version means resolving the version tag to
a commit on the source repository first. Both reads are cached: commit
lookups for ten minutes, releases for three, tagged per version so a
release webhook can drop stale entries.
"""

from __future__ import annotations

import logging
import re

from conflux_builder.github.cache import TTLCache
from conflux_builder.github.client import GitHubClient
from conflux_builder.types import Release

logger = logging.getLogger(__name__)

# Builder release tags: "<version_tag>-<7 hex chars>"
RELEASE_TAG_PATTERN = re.compile(r"^(.+)-([a-f0-9]{7})$")


def commit_cache_tag(version_tag: str) -> str:
    """Cache tag for commit lookups of a version."""
    return f"commit-sha:{version_tag}"


def release_cache_tag(version_tag: str) -> str:
    """Cache tag for release lookups of a version."""
    return f"github-release:{version_tag}"


def release_tag_for(version_tag: str, commit_sha: str) -> str:
    """Compose the builder release tag for a version and commit."""
    return f"{version_tag}-{commit_sha[:7]}"


def parse_release_tag(tag: str) -> tuple[str, str] | None:
    """Split a builder release tag into (version tag, short sha).

    Returns:
        Tuple, or None if the tag does not follow the convention.
    """
    match = RELEASE_TAG_PATTERN.match(tag)
    if match is None:
        return None
    return match.group(1), match.group(2)


class ReleaseLookup:
    """Cached reads of commits and releases for version tags."""

    def __init__(
        self,
        client: GitHubClient,
        cache: TTLCache,
        release_ttl: float = 3 * 60,
        commit_ttl: float = 10 * 60,
    ) -> None:
        self.client = client
        self.cache = cache
        self.release_ttl = release_ttl
        self.commit_ttl = commit_ttl

    def get_commit_for_tag(self, version_tag: str) -> str:
        """Resolve a source tag to its commit SHA.

        Raises:
            NotFoundError: If the tag does not exist.
            ExternalApiError: On other failures.
        """
        return self.cache.get_or_compute(
            ("commit-sha-for-tag", version_tag),
            self.commit_ttl,
            lambda: self.client.get_commit_for_tag(version_tag),
            tags=[commit_cache_tag(version_tag)],
        )

    def get_release(self, version_tag: str, commit_sha: str) -> Release:
        """Get the builder release for a version built from a commit.

        Raises:
            NotFoundError: If the release does not exist.
            ExternalApiError: On other failures.
        """
        tag = release_tag_for(version_tag, commit_sha)
        return self.cache.get_or_compute(
            ("github-release-by-tag", tag),
            self.release_ttl,
            lambda: self.client.get_release_by_tag(tag),
            tags=[release_cache_tag(version_tag), commit_cache_tag(version_tag)],
        )

    def get_release_for_version(self, version_tag: str) -> Release:
        """Get the builder release for the commit a version tag points at.

        Raises:
            NotFoundError: If the tag or the release does not exist.
            ExternalApiError: On other failures.
        """
        commit_sha = self.get_commit_for_tag(version_tag)
        return self.get_release(version_tag, commit_sha)

    def invalidate_version(self, version_tag: str) -> None:
        """Forget cached releases for a version."""
        dropped = self.cache.invalidate_tag(release_cache_tag(version_tag))
        logger.debug("Dropped %d cached releases for %s", dropped, version_tag)


__all__ = [
    "RELEASE_TAG_PATTERN",
    "ReleaseLookup",
    "commit_cache_tag",
    "parse_release_tag",
    "release_cache_tag",
    "release_tag_for",
]
