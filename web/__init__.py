"""FastAPI web application for Conflux Builder.

This module provides the HTTP API that mirrors the core services and
receives GitHub webhooks.

All business logic is delegated to core modules in conflux_builder/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
