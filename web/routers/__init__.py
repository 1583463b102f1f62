"""Router modules for FastAPI web API."""

from web.routers import builds, config, health, releases, tags, webhooks

__all__ = ["builds", "config", "health", "releases", "tags", "webhooks"]
