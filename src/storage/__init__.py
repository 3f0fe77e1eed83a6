"""Persistence gateway for conversations and cached endpoint URLs."""

from shared.config import StorageSettings
from shared.logging import get_logger
from storage.base import (
    InMemoryMessageStore,
    MessageStore,
    deserialize_content,
    serialize_content,
    to_history,
)

logger = get_logger(__name__)


def create_message_store(settings: StorageSettings) -> MessageStore:
    """
    Factory function to create the configured message store.

    Supports:
    - memory: In-process store
    - postgres: PostgreSQL via asyncpg

    Raises:
        ValueError: If the backend is not supported or misconfigured
    """
    if settings.backend == "memory":
        store: MessageStore = InMemoryMessageStore()
    elif settings.backend == "postgres":
        if not settings.dsn:
            raise ValueError("STORAGE_DSN is required for the postgres backend")
        from storage.postgres import PostgresMessageStore

        store = PostgresMessageStore(
            settings.dsn,
            min_size=settings.min_pool_size,
            max_size=settings.max_pool_size,
        )
    else:
        raise ValueError(
            f"Unsupported storage backend: {settings.backend}. "
            f"Supported: ['memory', 'postgres']"
        )

    logger.info("Creating message store", backend=settings.backend)
    return store


__all__ = [
    "InMemoryMessageStore",
    "MessageStore",
    "create_message_store",
    "deserialize_content",
    "serialize_content",
    "to_history",
]
