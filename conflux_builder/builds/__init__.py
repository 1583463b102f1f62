"""Build requests: registry, matching, dispatch and reconciliation.

This module handles:
- Build records and their dedup lookup (registry)
- Matching release assets to criteria (matcher)
- Dispatching workflows and correlating their runs (correlator)
- The build lifecycle state machine (engine) and its poller
"""

from conflux_builder.builds.models import BuildRecord

__all__ = ["BuildRecord"]
