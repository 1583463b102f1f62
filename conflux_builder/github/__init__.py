"""GitHub access: REST client, cached lookups and the TTL cache.

This module handles:
- Job control (workflow dispatch, workflow runs)
- Release and asset reads from the builder repository
- Tag resolution on the source repository
"""

from conflux_builder.github.cache import TTLCache
from conflux_builder.github.client import ExternalApiError, GitHubClient, NotFoundError
from conflux_builder.github.releases import ReleaseLookup

__all__ = [
    "ExternalApiError",
    "GitHubClient",
    "NotFoundError",
    "ReleaseLookup",
    "TTLCache",
]
