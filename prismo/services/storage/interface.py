"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run on SQLite locally and PostgreSQL in production
2. Use in-memory storage for testing
3. Keep the chat pipeline decoupled from the ORM

The interface is intentionally small - just the operations the chat
pipeline and settings page need. All writes to conversations, messages
and AI settings go through these interfaces; nothing else touches
those tables.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from prismo.models.chat import (
    ChatMessage,
    ConversationDetail,
    ConversationSummary,
    NewMessage,
)
from prismo.models.settings import AISettings


class ConversationStorageInterface(ABC):
    """
    Abstract interface for conversation and message storage.

    Every operation is scoped to the owning user: a conversation that
    exists but belongs to someone else is indistinguishable from one
    that does not exist.
    """

    @abstractmethod
    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> ConversationSummary:
        """
        Create an empty conversation.

        Args:
            user_id: Owner
            title: Initial title (defaults to "New Conversation")
            conversation_id: Pre-allocated id, if the caller already has one

        Returns:
            The created conversation
        """
        pass

    @abstractmethod
    async def get_conversation(
        self,
        conversation_id: str,
        user_id: str,
    ) -> ConversationDetail:
        """
        Get a conversation with all its messages in creation order.

        Raises:
            NotFoundError: If absent or not owned by user_id
        """
        pass

    @abstractmethod
    async def get_summary(
        self,
        conversation_id: str,
        user_id: str,
    ) -> ConversationSummary:
        """
        Get a conversation's counters without loading its messages.

        Raises:
            NotFoundError: If absent or not owned by user_id
        """
        pass

    @abstractmethod
    async def append_messages(
        self,
        conversation_id: str,
        user_id: str,
        messages: list[NewMessage],
        expected_total_messages: Optional[int] = None,
        create_title: Optional[str] = None,
    ) -> ConversationSummary:
        """
        Atomically append messages and update the conversation counters.

        In one transaction: inserts the messages, increments
        total_messages and total_tokens_used, and bumps updated_at.

        Args:
            conversation_id: Target conversation
            user_id: Owner
            messages: Messages in transcript order
            expected_total_messages: Optimistic check - fail if the
                conversation's counter moved since the caller read it
            create_title: If set and the conversation does not exist,
                create it with this title in the same transaction

        Returns:
            The updated conversation

        Raises:
            NotFoundError: If the conversation does not exist (and
                create_title is None) or is not owned by user_id
            ConcurrentUpdateError: If expected_total_messages is stale
            PersistenceError: If the store is unavailable
        """
        pass

    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        message: NewMessage,
    ) -> ConversationSummary:
        """Append a single message (see append_messages)."""
        return await self.append_messages(conversation_id, user_id, [message])

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: int = 10,
    ) -> list[ChatMessage]:
        """
        Get the most recent messages of a conversation.

        Returns:
            Up to `limit` messages in chronological order

        Raises:
            NotFoundError: If absent or not owned by user_id
        """
        pass

    @abstractmethod
    async def list_conversations(
        self,
        user_id: str,
        limit: int = 50,
        include_archived: bool = False,
    ) -> list[ConversationSummary]:
        """
        List a user's conversations, most recently updated first.

        Each summary carries a short preview of its last message.
        """
        pass

    @abstractmethod
    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        title: Optional[str] = None,
        is_archived: Optional[bool] = None,
    ) -> ConversationSummary:
        """
        Rename and/or (un)archive a conversation.

        Raises:
            NotFoundError: If absent or not owned by user_id
        """
        pass

    @abstractmethod
    async def delete_conversation(
        self,
        conversation_id: str,
        user_id: str,
    ) -> None:
        """
        Hard-delete a conversation and all its messages.

        Raises:
            NotFoundError: If absent or not owned by user_id
        """
        pass


class SettingsStorageInterface(ABC):
    """
    Abstract interface for per-user AI settings.

    The API key column only ever holds ciphertext; encryption happens
    in the SettingsService before values reach this layer.
    """

    @abstractmethod
    async def get(self, user_id: str) -> Optional[AISettings]:
        """
        Get a user's settings.

        Returns:
            The stored settings, or None if the user never saved any
        """
        pass

    @abstractmethod
    async def upsert(self, user_id: str, values: dict[str, Any]) -> AISettings:
        """
        Insert or update a user's settings.

        Args:
            user_id: Owner
            values: Column values to write (only these are changed)

        Returns:
            The settings after the write
        """
        pass

    @abstractmethod
    async def delete(self, user_id: str) -> bool:
        """
        Delete a user's settings (back to defaults).

        Returns:
            True if a row was deleted
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage (or not owned by the caller)."""
    pass


class ConcurrentUpdateError(StorageError):
    """The conversation changed between read and append."""
    pass


class PersistenceError(StorageError):
    """Storage backend unavailable or the write failed."""
    pass
