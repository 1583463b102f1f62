"""Tag ORM models.

Source repository tags are mirrored locally so the frontends can offer
recent versions without a GitHub round trip.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from conflux_builder.builds.models import utcnow
from conflux_builder.db import Base


class TagRecord(Base):
    """ORM model for a source repository tag.

    Attributes:
        id: Primary key.
        name: Tag name (e.g. v2.4.0); unique.
        commit_sha: Commit the tag points at.
        created_at: When the tag was first synced.
        updated_at: When the tag was last synced.
    """

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    commit_sha: Mapped[str] = mapped_column(String(40), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "commit_sha": self.commit_sha,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<TagRecord(name='{self.name}', commit_sha='{self.commit_sha[:7]}')>"


__all__ = ["TagRecord"]
