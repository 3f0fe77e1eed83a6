"""Message store contract and the in-memory implementation.

The store is the durable copy of every conversation. From the chat
orchestrator's point of view it is append-only: messages are saved and
read back in order, never updated or deleted.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import HistoryMessage, Role, StoredMessage

logger = get_logger(__name__)


def serialize_content(content: Any) -> str:
    """Turn message content into the opaque string kept by the store."""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def deserialize_content(raw: str) -> Any:
    """
    Turn stored content back into structured form.

    Content that is not valid JSON is returned unchanged; plain-text user
    messages are stored that way.
    """
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def to_history(message: StoredMessage) -> HistoryMessage:
    """Convert a stored row into an in-memory history message."""
    content = deserialize_content(message.content)
    # User text that happens to parse as JSON ("42", "[1, 2]") is not a block list
    if not _is_block_list(content):
        content = message.content
    return HistoryMessage(role=message.role, content=content, created_at=message.created_at)


def _is_block_list(content: Any) -> bool:
    return isinstance(content, list) and all(isinstance(block, dict) for block in content)


class MessageStore(ABC):
    """
    Persistence gateway for conversations.

    Implementations must be safe for concurrent use by independent sessions.
    """

    async def connect(self) -> None:
        """Acquire any resources the store needs."""

    async def close(self) -> None:
        """Release the store's resources."""

    @abstractmethod
    async def save_message(self, conversation_id: str, role: Role | str, content: str) -> StoredMessage:
        """
        Append a message, creating the conversation if needed.

        Args:
            conversation_id: Conversation identifier
            role: Message role (user, assistant, tool)
            content: Serialized message content

        Returns:
            The stored message
        """

    @abstractmethod
    async def get_conversation_history(self, conversation_id: str) -> list[StoredMessage]:
        """
        Get all messages of a conversation in creation order.

        Unknown conversations yield an empty list.
        """

    @abstractmethod
    async def get_customer_account_url(self, conversation_id: str) -> Optional[str]:
        """Get the cached customer account URL for a conversation."""

    @abstractmethod
    async def store_customer_account_url(self, conversation_id: str, url: str) -> None:
        """Cache the customer account URL for a conversation."""


class InMemoryMessageStore(MessageStore):
    """Message store held in process memory. Used for development and tests."""

    def __init__(self) -> None:
        self._messages: dict[str, list[StoredMessage]] = {}
        self._conversations: dict[str, dict[str, datetime]] = {}
        self._account_urls: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save_message(self, conversation_id: str, role: Role | str, content: str) -> StoredMessage:
        message = StoredMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=Role(role),
            content=content,
        )

        async with self._lock:
            timestamps = self._conversations.setdefault(
                conversation_id,
                {"created_at": message.created_at, "updated_at": message.created_at},
            )
            timestamps["updated_at"] = message.created_at
            self._messages.setdefault(conversation_id, []).append(message)

        logger.debug(
            "Message saved",
            conversation_id=conversation_id,
            role=message.role.value
        )
        return message

    async def get_conversation_history(self, conversation_id: str) -> list[StoredMessage]:
        async with self._lock:
            return list(self._messages.get(conversation_id, []))

    async def get_customer_account_url(self, conversation_id: str) -> Optional[str]:
        return self._account_urls.get(conversation_id)

    async def store_customer_account_url(self, conversation_id: str, url: str) -> None:
        async with self._lock:
            self._account_urls[conversation_id] = url

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        return {
            "backend": "memory",
            "total_conversations": len(self._conversations),
            "total_messages": sum(len(m) for m in self._messages.values()),
        }
