"""Storage backends for login state records."""

from samlflow.config import DatabaseSettings
from samlflow.storage.base import DuplicateSessionError, StateBackend, StorageBackendError
from samlflow.storage.memory import InMemoryStateBackend


def create_backend(settings: DatabaseSettings) -> StateBackend:
    """Postgres when DATABASE_URL is set, memory otherwise."""
    if settings.is_configured:
        from samlflow.storage.postgres import PostgresStateBackend

        return PostgresStateBackend(
            dsn=settings.database_url,
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
        )
    return InMemoryStateBackend()


__all__ = [
    "DuplicateSessionError",
    "InMemoryStateBackend",
    "StateBackend",
    "StorageBackendError",
    "create_backend",
]
