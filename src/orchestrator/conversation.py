"""Conversation Manager for the Orchestrator.

Bridges the in-memory history of a chat session and the message store.
"""

import uuid
from typing import Any, Optional

from shared.errors import PersistenceFailure
from shared.logging import get_logger
from shared.models import HistoryMessage, Role
from storage.base import MessageStore, serialize_content, to_history

logger = get_logger(__name__)


class ConversationManager:
    """
    Manages conversation persistence for the orchestrator.

    Responsibilities:
    - Resolve or mint conversation identifiers
    - Save the user's message before any model call
    - Load the full history from the store
    - Append later messages without letting store failures abort a turn
    """

    def __init__(self, store: MessageStore) -> None:
        self.store = store

    @staticmethod
    def resolve_id(conversation_id: Optional[str]) -> str:
        """Use the client-supplied identifier or mint a new one."""
        return conversation_id or uuid.uuid4().hex

    async def add_user_message(self, conversation_id: str, content: str) -> None:
        """
        Durably save the user's message.

        Raises:
            PersistenceFailure: If the store rejects the write
        """
        try:
            await self.store.save_message(conversation_id, Role.USER, content)
        except PersistenceFailure:
            raise
        except Exception as e:
            raise PersistenceFailure(f"Failed to save user message: {e}") from e

    async def load_history(self, conversation_id: str) -> list[HistoryMessage]:
        """
        Load the full history of a conversation.

        Raises:
            PersistenceFailure: If the history cannot be read
        """
        try:
            messages = await self.store.get_conversation_history(conversation_id)
        except PersistenceFailure:
            raise
        except Exception as e:
            raise PersistenceFailure(f"Failed to load conversation history: {e}") from e

        return [to_history(m) for m in messages]

    async def record(self, conversation_id: str, role: Role, content: Any) -> bool:
        """
        Persist a message produced during the turn loop.

        Failures are logged and reported through the return value only;
        the in-memory history stays authoritative for the request.
        """
        try:
            await self.store.save_message(conversation_id, role, serialize_content(content))
        except Exception as e:
            logger.error(
                "Failed to persist message",
                conversation_id=conversation_id,
                role=role.value,
                error=str(e)
            )
            return False
        return True

    async def get_history_for_client(self, conversation_id: str) -> list[dict[str, Any]]:
        """Get the conversation history in the shape returned by the history endpoint."""
        history = await self.load_history(conversation_id)
        return [
            {
                "role": m.role.value,
                "content": m.content,
                "created_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in history
        ]
