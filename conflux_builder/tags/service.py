"""Tag sync: mirror the latest source tags into the tags table."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from conflux_builder.builds.models import utcnow
from conflux_builder.github.client import GitHubClient
from conflux_builder.tags.models import TagRecord

logger = logging.getLogger(__name__)


def sync_tags(session: Session, client: GitHubClient, limit: int = 10) -> list[TagRecord]:
    """Fetch the latest source tags and upsert them by name.

    Args:
        session: Database session.
        client: GitHub client.
        limit: Number of most recent tags to fetch.

    Returns:
        The synced TagRecords, in GitHub's order (newest first).

    Raises:
        ExternalApiError: If the tags cannot be listed.
    """
    remote = client.list_tags(limit=limit)
    if not remote:
        return []

    names = [name for name, _ in remote]
    existing = {
        tag.name: tag
        for tag in session.execute(
            select(TagRecord).where(TagRecord.name.in_(names))
        ).scalars()
    }

    synced = []
    created = 0
    for name, commit_sha in remote:
        tag = existing.get(name)
        if tag is None:
            tag = TagRecord(name=name, commit_sha=commit_sha)
            session.add(tag)
            created += 1
        elif tag.commit_sha != commit_sha:
            logger.info("Tag %s moved from %s to %s", name, tag.commit_sha[:7], commit_sha[:7])
            tag.commit_sha = commit_sha
            tag.updated_at = utcnow()
        synced.append(tag)

    session.flush()
    logger.info("Synced %d tags (%d new)", len(synced), created)
    return synced


def list_tags(session: Session, limit: int = 100) -> list[TagRecord]:
    """List synced tags, most recently added or moved first."""
    stmt = (
        select(TagRecord)
        .order_by(TagRecord.updated_at.desc(), TagRecord.id)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


__all__ = ["list_tags", "sync_tags"]
