"""Build ORM models.

This module defines the BuildRecord model, one row per criteria
equivalence class. Records are never deleted: a failed build is
retried in place so the id and the uniqueness claim are preserved.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from conflux_builder.criteria.schema import BuildCriteria
from conflux_builder.db import Base
from conflux_builder.types import BuildStatus


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (stored as UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BuildRecord(Base):
    """ORM model for a requested build.

    Attributes:
        id: Primary key.
        criteria_key: Hash of the normalized criteria; unique.
        version_tag: Source tag being built.
        commit_sha: Commit the tag resolved to.
        os: Target operating system.
        arch: Target CPU architecture.
        glibc_version: glibc version (linux only).
        openssl_version: OpenSSL major version (linux only).
        static_openssl: Whether OpenSSL is linked statically.
        compatibility_mode: Whether a portable binary was requested.
        status: Lifecycle status (see BuildStatus).
        correlation_token: Token embedded in the dispatched workflow title.
        external_job_id: GitHub workflow run id, once located.
        download_url: Matched release asset URL (completed builds only).
        error_type: Error code of the last failed attempt.
        error_message: Error message of the last failed attempt.
        dispatched_at: Start of the current dispatch attempt.
        created_at: Timestamp when the record was created.
        updated_at: Timestamp of the last mutation.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Criteria (denormalized) and equivalence key
    criteria_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    version_tag: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    commit_sha: Mapped[str] = mapped_column(String(40), nullable=False)
    os: Mapped[str] = mapped_column(String(20), nullable=False)
    arch: Mapped[str] = mapped_column(String(20), nullable=False)
    glibc_version: Mapped[str | None] = mapped_column(String(10), nullable=True)
    openssl_version: Mapped[str | None] = mapped_column(String(10), nullable=True)
    static_openssl: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    compatibility_mode: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    correlation_token: Mapped[str | None] = mapped_column(
        String(16), nullable=True, index=True
    )
    external_job_id: Mapped[str | None] = mapped_column(
        String(32), nullable=True, index=True
    )
    download_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timing
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_build_records_version_commit", "version_tag", "commit_sha"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, {self.version_tag} {self.os}/{self.arch}, "
            f"status='{self.status}', token={self.correlation_token!r})>"
        )

    @property
    def build_status(self) -> BuildStatus:
        """Status as a BuildStatus enum."""
        return BuildStatus(self.status)

    @property
    def attempt_started_at(self) -> datetime:
        """Origin of the correlation timeout for the current attempt."""
        return self.dispatched_at or self.created_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "version_tag": self.version_tag,
            "commit_sha": self.commit_sha,
            "os": self.os,
            "arch": self.arch,
            "glibc_version": self.glibc_version,
            "openssl_version": self.openssl_version,
            "static_openssl": self.static_openssl,
            "compatibility_mode": self.compatibility_mode,
            "status": self.status,
            "correlation_token": self.correlation_token,
            "external_job_id": self.external_job_id,
            "download_url": self.download_url,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_criteria(self) -> BuildCriteria:
        """Rebuild the criteria this record was created for."""
        return BuildCriteria(
            version_tag=self.version_tag,
            commit_sha=self.commit_sha,
            os=self.os,
            arch=self.arch,
            static_openssl=bool(self.static_openssl),
            compatibility_mode=bool(self.compatibility_mode),
            glibc_version=self.glibc_version,
            openssl_version=self.openssl_version,
        )


__all__ = ["BuildRecord", "utcnow"]
