"""Configuration settings for conflux_builder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.logging import RichHandler


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "conflux-builder" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CFX_BUILDER_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CFX_BUILDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    # GitHub access
    github_token: str = Field(
        default="",
        description="Token used for GitHub REST API calls",
    )
    github_api_url: str = Field(
        default="https://api.github.com",
        description="Base URL of the GitHub REST API",
    )
    webhook_secret: str = Field(
        default="",
        description="Shared secret for verifying GitHub webhook signatures",
    )

    # Repositories
    builder_owner: str = Field(
        default="Conflux-Chain",
        description="Owner of the repository running the build workflows",
    )
    builder_repo: str = Field(
        default="conflux-builder",
        description="Repository running the build workflows and hosting releases",
    )
    source_owner: str = Field(
        default="Conflux-Chain",
        description="Owner of the source repository whose tags are built",
    )
    source_repo: str = Field(
        default="conflux-rust",
        description="Source repository whose tags are built",
    )
    dispatch_ref: str = Field(
        default="main",
        description="Git ref of the builder repository used for workflow dispatch",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    tags_limit: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of most recent source tags to sync",
    )

    # Polling
    poll_enabled: bool = Field(
        default=True,
        description="Run the background poller inside the web application",
    )
    poll_interval: int = Field(
        default=60,
        ge=5,
        description="Seconds between polling sweeps over active builds",
    )
    poll_api_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per poll for a failing GitHub API query",
    )

    # Timeouts (in seconds)
    windows_timeout: int = Field(
        default=30 * 60,
        ge=60,
        description="Time a windows build may stay unresolved before failing",
    )
    linux_timeout: int = Field(
        default=20 * 60,
        ge=60,
        description="Time a linux build may stay unresolved before failing",
    )
    macos_timeout: int = Field(
        default=15 * 60,
        ge=60,
        description="Time a macos build may stay unresolved before failing",
    )
    http_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for GitHub API requests",
    )

    # Cache lifetimes (in seconds)
    release_cache_ttl: int = Field(
        default=3 * 60,
        ge=0,
        description="How long release lookups are cached",
    )
    commit_cache_ttl: int = Field(
        default=10 * 60,
        ge=0,
        description="How long tag to commit lookups are cached",
    )

    def timeout_for(self, os_name: str) -> int:
        """Return the correlation timeout in seconds for an OS.

        Args:
            os_name: One of linux, windows, macos.

        Returns:
            Timeout in seconds.
        """
        timeouts = {
            "windows": self.windows_timeout,
            "linux": self.linux_timeout,
            "macos": self.macos_timeout,
        }
        return timeouts[os_name]


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Secrets are masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(
        indent=2, exclude={"github_token", "webhook_secret"}
    )


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging once for a CLI or web process.

    Args:
        settings: Optional settings instance; uses default if not provided.
    """
    if settings is None:
        settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_path=False
            )
        ],
    )


__all__ = ["Settings", "configure_logging", "get_settings", "print_settings_json"]
