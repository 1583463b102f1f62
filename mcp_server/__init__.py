"""MCP server exposing Conflux Builder tools.

This module implements the Model Context Protocol (MCP) server that
lets AI tools and other systems request builds, follow their status
and look up published binaries.

MCP tools:
- Are idempotent where applicable
- Return structured errors with codes
- Map directly to core services
"""

from mcp_server.server import mcp

__all__ = ["mcp"]
