"""Self-service administration of Keycloak clients."""

from __future__ import annotations

from typing import Any

__version__ = "1.0.0"

from .database import Database, resolve_database_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the web application for prepared services."""

    from .web import create_app as _create_app

    return _create_app(*args, **kwargs)


def create_application(*args: Any, **kwargs: Any):
    """Factory function that wires every service from the environment."""

    from .application import create_application as _create_application

    return _create_application(*args, **kwargs)


__all__ = [
    "Database",
    "__version__",
    "create_app",
    "create_application",
    "resolve_database_path",
]
