"""
Tests for the SQLAlchemy storage layer

Test strategy:
1. A turn's two messages land together or not at all
2. A stale message counter is a ConcurrentUpdateError, never a corrupt transcript
3. Ownership is checked on every read and write
4. Deleting a conversation deletes its messages
"""

import pytest

from conftest import OTHER_USER_ID, USER_ID, count_message_rows
from prismo.models.chat import MessageRole, NewMessage
from prismo.models.settings import AIProvider, DataAccess, DataSource
from prismo.services.storage import (
    ConcurrentUpdateError,
    Database,
    NotFoundError,
    PersistenceError,
    SQLConversationStorage,
    SQLSettingsStorage,
)


def turn(question: str = "How much on food?", answer: str = "RM 85.50") -> list[NewMessage]:
    return [
        NewMessage(role=MessageRole.USER, content=question),
        NewMessage(
            role=MessageRole.ASSISTANT,
            content=answer,
            data_sources=[DataSource.TRANSACTIONS],
            confidence_score=0.87,
            tokens_used=940,
            processing_time_ms=120,
        ),
    ]


@pytest.fixture
def conversations(database):
    return SQLConversationStorage(database)


@pytest.fixture
def settings_store(database):
    return SQLSettingsStorage(database)


class TestConversations:
    """Tests for conversation lifecycle."""

    async def test_create_with_default_title(self, conversations):
        """Test that an untitled conversation gets the default title."""
        summary = await conversations.create_conversation(USER_ID)
        assert summary.title == "New Conversation"
        assert summary.total_messages == 0

    async def test_get_other_users_conversation_fails(self, conversations):
        """Test that a conversation is invisible to anyone but its owner."""
        summary = await conversations.create_conversation(USER_ID, title="Mine")
        with pytest.raises(NotFoundError):
            await conversations.get_conversation(summary.id, OTHER_USER_ID)
        with pytest.raises(NotFoundError):
            await conversations.get_summary(summary.id, OTHER_USER_ID)
        with pytest.raises(NotFoundError):
            await conversations.list_messages(summary.id, OTHER_USER_ID)
        assert (await conversations.get_summary(summary.id, USER_ID)).title == "Mine"

    async def test_list_newest_first_without_archived(self, conversations):
        """Test ordering by last activity and the archive filter."""
        first = await conversations.create_conversation(USER_ID, title="First")
        second = await conversations.create_conversation(USER_ID, title="Second")
        archived = await conversations.create_conversation(USER_ID, title="Old")
        await conversations.update_conversation(archived.id, USER_ID, is_archived=True)
        await conversations.append_messages(first.id, USER_ID, turn())
        await conversations.create_conversation(OTHER_USER_ID, title="Theirs")

        listed = await conversations.list_conversations(USER_ID)
        assert [c.id for c in listed] == [first.id, second.id]
        assert listed[0].last_message_preview == "RM 85.50"

        everything = await conversations.list_conversations(USER_ID, include_archived=True)
        assert {c.id for c in everything} == {first.id, second.id, archived.id}

    async def test_rename(self, conversations):
        """Test a title update."""
        summary = await conversations.create_conversation(USER_ID)
        renamed = await conversations.update_conversation(summary.id, USER_ID, title="Food talk")
        assert renamed.title == "Food talk"

    async def test_delete_removes_messages(self, conversations, db_path):
        """Test that deleting a conversation leaves no orphan messages."""
        summary = await conversations.create_conversation(USER_ID)
        await conversations.append_messages(summary.id, USER_ID, turn())
        assert count_message_rows(db_path, summary.id) == 2

        await conversations.delete_conversation(summary.id, USER_ID)

        assert count_message_rows(db_path, summary.id) == 0
        with pytest.raises(NotFoundError):
            await conversations.get_conversation(summary.id, USER_ID)

    async def test_delete_requires_ownership(self, conversations):
        """Test that another user cannot delete a conversation."""
        summary = await conversations.create_conversation(USER_ID)
        with pytest.raises(NotFoundError):
            await conversations.delete_conversation(summary.id, OTHER_USER_ID)
        assert (await conversations.get_summary(summary.id, USER_ID)).id == summary.id


class TestAppendMessages:
    """Tests for the atomic message pair append."""

    async def test_pair_updates_counters(self, conversations):
        """Test counters, order and provenance after one turn."""
        summary = await conversations.create_conversation(USER_ID)
        updated = await conversations.append_messages(
            summary.id, USER_ID, turn(), expected_total_messages=0
        )
        assert updated.total_messages == 2
        assert updated.total_tokens_used == 940

        detail = await conversations.get_conversation(summary.id, USER_ID)
        assert [m.role for m in detail.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assistant = detail.messages[1]
        assert assistant.data_sources == ["transactions"]
        assert assistant.confidence_score == 0.87
        assert detail.messages[0].data_sources == []

    async def test_stale_counter_writes_nothing(self, conversations, db_path):
        """Test that a second writer with the old count fails and adds no messages."""
        summary = await conversations.create_conversation(USER_ID)
        await conversations.append_messages(summary.id, USER_ID, turn(), expected_total_messages=0)

        with pytest.raises(ConcurrentUpdateError):
            await conversations.append_messages(
                summary.id, USER_ID, turn("again?", "yes"), expected_total_messages=0
            )

        assert count_message_rows(db_path, summary.id) == 2
        detail = await conversations.get_conversation(summary.id, USER_ID)
        assert detail.total_messages == 2

    async def test_lazy_creation(self, conversations):
        """Test that create_title creates the conversation with the first turn."""
        summary = await conversations.append_messages(
            "conv-new", USER_ID, turn(), expected_total_messages=0, create_title="How much on food?"
        )
        assert summary.id == "conv-new"
        assert summary.title == "How much on food?"
        assert summary.total_messages == 2

    async def test_missing_conversation_without_title(self, conversations, db_path):
        """Test that appending to an unknown id fails when not creating."""
        with pytest.raises(NotFoundError):
            await conversations.append_messages("missing", USER_ID, turn())
        assert count_message_rows(db_path, "missing") == 0

    async def test_cannot_create_over_another_users_id(self, conversations, db_path):
        """Test that lazy creation never takes over a foreign conversation."""
        theirs = await conversations.create_conversation(OTHER_USER_ID)
        with pytest.raises(NotFoundError):
            await conversations.append_messages(
                theirs.id, USER_ID, turn(), create_title="hijack"
            )
        assert count_message_rows(db_path, theirs.id) == 0

    async def test_sequence_survives_many_turns(self, conversations):
        """Test that list_messages returns the newest messages in order."""
        summary = await conversations.create_conversation(USER_ID)
        for i in range(3):
            await conversations.append_messages(
                summary.id, USER_ID, turn(f"q{i}", f"a{i}"), expected_total_messages=i * 2
            )
        recent = await conversations.list_messages(summary.id, USER_ID, limit=3)
        assert [m.content for m in recent] == ["a1", "q2", "a2"]
        assert await conversations.list_messages(summary.id, USER_ID, limit=0) == []

        counters = await conversations.get_summary(summary.id, USER_ID)
        assert counters.total_messages == 6
        assert counters.total_tokens_used == 3 * 940

    async def test_single_message_append(self, conversations):
        """Test that append_message adds one message after the existing ones."""
        summary = await conversations.create_conversation(USER_ID)
        await conversations.append_messages(summary.id, USER_ID, turn())

        updated = await conversations.append_message(
            summary.id, USER_ID, NewMessage(role=MessageRole.USER, content="And transport?")
        )
        assert updated.total_messages == 3
        assert updated.last_message_preview == "And transport?"

        recent = await conversations.list_messages(summary.id, USER_ID, limit=2)
        assert [m.content for m in recent] == ["RM 85.50", "And transport?"]
        with pytest.raises(NotFoundError):
            await conversations.append_message(
                summary.id, OTHER_USER_ID, NewMessage(role=MessageRole.USER, content="hi")
            )

    async def test_empty_append_rejected(self, conversations):
        """Test that an append needs messages."""
        summary = await conversations.create_conversation(USER_ID)
        with pytest.raises(ValueError):
            await conversations.append_messages(summary.id, USER_ID, [])


class TestSettingsStorage:
    """Tests for per-user settings rows."""

    async def test_missing_settings(self, settings_store):
        """Test that a user without a row gets None."""
        assert await settings_store.get(USER_ID) is None

    async def test_upsert_creates_with_defaults(self, settings_store):
        """Test that the first write fills in the defaults."""
        stored = await settings_store.upsert(USER_ID, {"temperature": 0.2})
        assert stored.temperature == 0.2
        assert stored.ai_enabled is False
        assert stored.provider == AIProvider.AZURE_OPENAI
        assert stored.data_access == DataAccess()

    async def test_upsert_updates_nested_values(self, settings_store):
        """Test provider and data access round trips."""
        await settings_store.upsert(USER_ID, {"ai_enabled": True})
        stored = await settings_store.upsert(USER_ID, {
            "provider": AIProvider.ANTHROPIC,
            "data_access": DataAccess(tax_data=False),
        })
        assert stored.ai_enabled is True
        assert stored.provider == AIProvider.ANTHROPIC
        assert stored.data_access.tax_data is False

    async def test_delete(self, settings_store):
        """Test removing a settings row."""
        await settings_store.upsert(USER_ID, {})
        assert await settings_store.delete(USER_ID) is True
        assert await settings_store.delete(USER_ID) is False


class TestUnavailableStore:
    """Tests for a database that cannot be reached."""

    async def test_persistence_error(self, tmp_path):
        """Test that connection failures surface as PersistenceError after retries."""
        broken = Database(
            f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'prismo.db'}", retry_attempts=2
        )
        try:
            with pytest.raises(PersistenceError):
                await SQLConversationStorage(broken).list_conversations(USER_ID)
        finally:
            await broken.dispose()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
