"""Conflux Builder - custom Conflux node builds on demand.

This package orchestrates build requests against the GitHub Actions
builder repository: deduplicating equivalent requests, dispatching
workflows, correlating webhook and polling signals back to build
records, and matching published release assets to request criteria.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
