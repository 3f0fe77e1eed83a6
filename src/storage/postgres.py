"""PostgreSQL-backed message store.

Messages are stored as opaque strings and read back in insertion order.
Conversations are upserted on every save so their ``updated_at`` tracks
the latest message.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import asyncpg

from shared.errors import PersistenceFailure
from shared.logging import get_logger
from shared.models import Role, StoredMessage
from storage.base import MessageStore

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversation (
    id TEXT PRIMARY KEY,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS message (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL REFERENCES conversation (id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS message_conversation_id_idx ON message (conversation_id);

CREATE TABLE IF NOT EXISTS customer_account_url (
    conversation_id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);
"""


class PostgresMessageStore(MessageStore):
    """Message store backed by an asyncpg connection pool."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise PersistenceFailure("Message store is not connected")
        return self._pool

    async def connect(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            self.dsn, min_size=self.min_size, max_size=self.max_size
        )
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Message store connected", backend="postgres")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def save_message(self, conversation_id: str, role: Role | str, content: str) -> StoredMessage:
        message_id = str(uuid.uuid4())
        role = Role(role)
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO conversation (id) VALUES ($1)
                    ON CONFLICT (id) DO UPDATE SET updated_at = NOW()
                    """,
                    conversation_id,
                )
                row = await conn.fetchrow(
                    """
                    INSERT INTO message (id, conversation_id, role, content)
                    VALUES ($1, $2, $3, $4)
                    RETURNING created_at
                    """,
                    message_id,
                    conversation_id,
                    role.value,
                    content,
                )
        except asyncpg.PostgresError as e:
            raise PersistenceFailure(f"Failed to save message: {e}") from e

        return StoredMessage(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=row["created_at"],
        )

    async def get_conversation_history(self, conversation_id: str) -> list[StoredMessage]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, conversation_id, role, content, created_at FROM message
                    WHERE conversation_id = $1
                    ORDER BY created_at ASC, seq ASC
                    """,
                    conversation_id,
                )
        except asyncpg.PostgresError as e:
            raise PersistenceFailure(f"Failed to load history: {e}") from e

        return [_to_message(row) for row in rows]

    async def get_customer_account_url(self, conversation_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT url FROM customer_account_url WHERE conversation_id = $1",
                conversation_id,
            )

    async def store_customer_account_url(self, conversation_id: str, url: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO customer_account_url (conversation_id, url) VALUES ($1, $2)
                ON CONFLICT (conversation_id) DO UPDATE SET url = $2, updated_at = NOW()
                """,
                conversation_id,
                url,
            )


def _to_message(row: Any) -> StoredMessage:
    created_at: datetime = row["created_at"]
    return StoredMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=Role(row["role"]),
        content=row["content"],
        created_at=created_at,
    )
