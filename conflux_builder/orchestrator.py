"""Process-wide wiring of the build orchestrator.

One Orchestrator is built per process (web lifespan, CLI command, MCP
tool call) from Settings, and owns the single GitHub client every
component shares.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from conflux_builder.builds.correlator import DispatchCorrelator
from conflux_builder.builds.engine import ReconciliationEngine
from conflux_builder.config import Settings, get_settings
from conflux_builder.github.cache import TTLCache
from conflux_builder.github.client import GitHubClient
from conflux_builder.github.releases import ReleaseLookup

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    """The collaborators of the build lifecycle, wired together."""

    settings: Settings
    client: GitHubClient
    cache: TTLCache
    releases: ReleaseLookup
    correlator: DispatchCorrelator
    engine: ReconciliationEngine

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        client: GitHubClient | None = None,
    ) -> Orchestrator:
        """Build an orchestrator.

        Args:
            settings: Application settings; loaded from the environment if None.
            client: GitHub client to use instead of one built from settings.

        Returns:
            Orchestrator.
        """
        if settings is None:
            settings = get_settings()
        if client is None:
            client = GitHubClient.from_settings(settings)
        if not settings.github_token:
            logger.warning("No GitHub token configured; dispatches will be rejected")

        cache = TTLCache()
        releases = ReleaseLookup(
            client,
            cache,
            release_ttl=settings.release_cache_ttl,
            commit_ttl=settings.commit_cache_ttl,
        )
        correlator = DispatchCorrelator(client, ref=settings.dispatch_ref)
        engine = ReconciliationEngine.from_settings(settings, correlator, releases)
        return cls(
            settings=settings,
            client=client,
            cache=cache,
            releases=releases,
            correlator=correlator,
            engine=engine,
        )

    @property
    def builder_repo(self) -> str:
        return self.client.builder_repo

    def close(self) -> None:
        """Release the HTTP connection pool."""
        self.client.close()


__all__ = ["Orchestrator"]
