"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from conflux_builder.config import Settings
from web.deps import get_app_settings

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    Secrets are reported only as configured or not.

    Returns:
        Current configuration as JSON.
    """
    return {
        "db_url": settings.db_url,
        "github_api_url": settings.github_api_url,
        "github_token_configured": bool(settings.github_token),
        "webhook_secret_configured": bool(settings.webhook_secret),
        "builder_repository": f"{settings.builder_owner}/{settings.builder_repo}",
        "source_repository": f"{settings.source_owner}/{settings.source_repo}",
        "dispatch_ref": settings.dispatch_ref,
        "log_level": settings.log_level,
        "poll_enabled": settings.poll_enabled,
        "poll_interval": settings.poll_interval,
        "poll_api_retries": settings.poll_api_retries,
        "windows_timeout": settings.windows_timeout,
        "linux_timeout": settings.linux_timeout,
        "macos_timeout": settings.macos_timeout,
        "http_timeout": settings.http_timeout,
        "release_cache_ttl": settings.release_cache_ttl,
        "commit_cache_ttl": settings.commit_cache_ttl,
        "tags_limit": settings.tags_limit,
    }
