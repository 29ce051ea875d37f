"""
FastAPI Dependency Injection

Settings are resolved per request so tests can override them with
app.dependency_overrides.
"""

from ..config import SyncSettings


def get_settings() -> SyncSettings:
    """FastAPI dependency returning settings built from the environment."""
    return SyncSettings.from_env()
