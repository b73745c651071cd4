"""
SQLAlchemy Storage Implementation

DESIGN DECISION: Async SQLAlchemy over a plain relational database.
- SQLite (aiosqlite) for local use and tests
- PostgreSQL (asyncpg) in production

Counters on a conversation (total_messages, total_tokens_used) are
updated with a single conditional UPDATE in the same transaction as the
message inserts. Passing expected_total_messages turns that UPDATE into
an optimistic lock: a second writer that read the same counter value
matches zero rows and gets ConcurrentUpdateError instead of silently
corrupting the transcript order.

Transient connection errors are retried with tenacity; anything still
failing surfaces as PersistenceError.
"""

import functools
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from sqlalchemy import event, select, text, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from prismo.config import DatabaseSettings
from prismo.models.chat import (
    ChatMessage,
    ConversationDetail,
    ConversationSummary,
    MessageRole,
    NewMessage,
)
from prismo.models.settings import AIProvider, AISettings, DataAccess
from prismo.services.storage.interface import (
    ConcurrentUpdateError,
    ConversationStorageInterface,
    NotFoundError,
    PersistenceError,
    SettingsStorageInterface,
)
from prismo.services.storage.tables import (
    AISettingsRow,
    Base,
    ConversationRow,
    MessageRow,
    utcnow,
)


logger = structlog.get_logger(__name__)

DEFAULT_TITLE = "New Conversation"
PREVIEW_LENGTH = 100


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns the async engine and session factory.

    One instance per process; repositories share it.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_pre_ping: bool = True,
        retry_attempts: int = 3,
    ):
        self.url = url
        self.retry_attempts = retry_attempts
        self.engine = create_async_engine(url, echo=echo, pool_pre_ping=pool_pre_ping)
        if url.startswith("sqlite"):
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        return cls(
            url=settings.url,
            echo=settings.echo,
            pool_pre_ping=settings.pool_pre_ping,
            retry_attempts=settings.retry_attempts,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Transactional session: commits on success, rolls back on any error.

        Usage:
            async with database.session() as session:
                ...
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def check_connection(self) -> bool:
        """Check if the database answers."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("database_check_failed", error=str(e))
            return False


def _with_retry(method):
    """
    Retry transient OperationalErrors, then translate failures to PersistenceError.

    Domain errors (NotFoundError, ConcurrentUpdateError) pass through untouched.
    """
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(OperationalError),
                stop=stop_after_attempt(self._db.retry_attempts),
                wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
                reraise=True,
            ):
                with attempt:
                    return await method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error("storage_operation_failed", operation=method.__name__, error=str(e))
            raise PersistenceError(f"Storage unavailable during {method.__name__}: {e}") from e

    return wrapper


# ============================================================================
# ROW CONVERSION
# ============================================================================

def _message_from_row(row: MessageRow) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        conversation_id=row.conversation_id,
        role=MessageRole(row.role),
        content=row.content,
        created_at=row.created_at,
        data_sources=list(row.data_sources or []),
        confidence_score=row.confidence_score,
        tokens_used=row.tokens_used,
        processing_time_ms=row.processing_time_ms,
        query_rewritten=bool(row.query_rewritten),
        original_query=row.original_query,
    )


def _summary_from_row(
    row: ConversationRow,
    last_content: Optional[str] = None,
) -> ConversationSummary:
    preview = None
    if last_content:
        preview = last_content[:PREVIEW_LENGTH]
    return ConversationSummary(
        id=row.id,
        title=row.title,
        total_messages=row.total_messages,
        total_tokens_used=row.total_tokens_used,
        is_archived=row.is_archived,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_message_preview=preview,
    )


def _settings_from_row(row: AISettingsRow) -> AISettings:
    return AISettings(
        user_id=row.user_id,
        ai_enabled=row.ai_enabled,
        provider=AIProvider(row.provider),
        model_endpoint=row.model_endpoint,
        model_name=row.model_name,
        encrypted_api_key=row.encrypted_api_key,
        temperature=row.temperature,
        max_tokens=row.max_tokens,
        enable_crag=row.enable_crag,
        relevance_threshold=row.relevance_threshold,
        max_retrieval_docs=row.max_retrieval_docs,
        enable_web_search_fallback=row.enable_web_search_fallback,
        data_access=DataAccess(**(row.data_access or {})),
        anonymize_vendors=row.anonymize_vendors,
        exclude_sensitive_categories=list(row.exclude_sensitive_categories or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _column_value(value: Any) -> Any:
    """Convert model values to JSON/column friendly values."""
    if isinstance(value, DataAccess):
        return value.model_dump()
    if isinstance(value, AIProvider):
        return value.value
    return value


# ============================================================================
# CONVERSATIONS
# ============================================================================

class SQLConversationStorage(ConversationStorageInterface):
    """
    Conversation store on SQLAlchemy.

    Ownership is enforced in every query by filtering on user_id.
    """

    def __init__(self, database: Database):
        self._db = database

    async def _owned(
        self,
        session: AsyncSession,
        conversation_id: str,
        user_id: str,
    ) -> Optional[ConversationRow]:
        result = await session.execute(
            select(ConversationRow).where(
                ConversationRow.id == conversation_id,
                ConversationRow.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @_with_retry
    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> ConversationSummary:
        async with self._db.session() as session:
            row = ConversationRow(user_id=user_id, title=title or DEFAULT_TITLE)
            if conversation_id:
                row.id = conversation_id
            session.add(row)
            await session.flush()
            return _summary_from_row(row)

    @_with_retry
    async def get_conversation(
        self,
        conversation_id: str,
        user_id: str,
    ) -> ConversationDetail:
        async with self._db.session() as session:
            result = await session.execute(
                select(ConversationRow)
                .options(selectinload(ConversationRow.messages))
                .where(
                    ConversationRow.id == conversation_id,
                    ConversationRow.user_id == user_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")

            messages = [_message_from_row(m) for m in row.messages]
            summary = _summary_from_row(
                row, messages[-1].content if messages else None
            )
            return ConversationDetail(**summary.model_dump(), messages=messages)

    @_with_retry
    async def get_summary(
        self,
        conversation_id: str,
        user_id: str,
    ) -> ConversationSummary:
        async with self._db.session() as session:
            row = await self._owned(session, conversation_id, user_id)
            if row is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            return _summary_from_row(row)

    @_with_retry
    async def append_messages(
        self,
        conversation_id: str,
        user_id: str,
        messages: list[NewMessage],
        expected_total_messages: Optional[int] = None,
        create_title: Optional[str] = None,
    ) -> ConversationSummary:
        if not messages:
            raise ValueError("append_messages needs at least one message")

        async with self._db.session() as session:
            row = await self._owned(session, conversation_id, user_id)

            if row is None:
                if create_title is None:
                    raise NotFoundError(f"Conversation {conversation_id} not found")
                # The id may belong to another user's conversation
                taken = await session.get(ConversationRow, conversation_id)
                if taken is not None:
                    raise NotFoundError(f"Conversation {conversation_id} not found")
                row = ConversationRow(
                    id=conversation_id,
                    user_id=user_id,
                    title=create_title or DEFAULT_TITLE,
                )
                session.add(row)
                await session.flush()

            tokens = sum(m.tokens_used or 0 for m in messages)
            stmt = (
                update(ConversationRow)
                .where(
                    ConversationRow.id == conversation_id,
                    ConversationRow.user_id == user_id,
                )
                .values(
                    total_messages=ConversationRow.total_messages + len(messages),
                    total_tokens_used=ConversationRow.total_tokens_used + tokens,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if expected_total_messages is not None:
                stmt = stmt.where(ConversationRow.total_messages == expected_total_messages)

            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise ConcurrentUpdateError(
                    f"Conversation {conversation_id} changed while the turn was running"
                )

            await session.refresh(row)
            first_sequence = row.total_messages - len(messages)
            for offset, message in enumerate(messages):
                session.add(MessageRow(
                    conversation_id=conversation_id,
                    sequence=first_sequence + offset,
                    role=message.role.value,
                    content=message.content,
                    data_sources=[s.value for s in message.data_sources] or None,
                    confidence_score=message.confidence_score,
                    tokens_used=message.tokens_used,
                    processing_time_ms=message.processing_time_ms,
                    query_rewritten=message.query_rewritten,
                    original_query=message.original_query,
                    relevance_grades=message.relevance_grades,
                ))
            await session.flush()

            return _summary_from_row(row, messages[-1].content)

    @_with_retry
    async def list_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: int = 10,
    ) -> list[ChatMessage]:
        async with self._db.session() as session:
            if await self._owned(session, conversation_id, user_id) is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if limit <= 0:
                return []

            result = await session.execute(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.sequence.desc())
                .limit(limit)
            )
            rows = list(result.scalars())
            return [_message_from_row(m) for m in reversed(rows)]

    @_with_retry
    async def list_conversations(
        self,
        user_id: str,
        limit: int = 50,
        include_archived: bool = False,
    ) -> list[ConversationSummary]:
        last_content = (
            select(MessageRow.content)
            .where(MessageRow.conversation_id == ConversationRow.id)
            .order_by(MessageRow.sequence.desc())
            .limit(1)
            .correlate(ConversationRow)
            .scalar_subquery()
        )
        stmt = (
            select(ConversationRow, last_content.label("last_content"))
            .where(ConversationRow.user_id == user_id)
            .order_by(ConversationRow.updated_at.desc(), ConversationRow.created_at.desc())
            .limit(limit)
        )
        if not include_archived:
            stmt = stmt.where(ConversationRow.is_archived.is_(False))

        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [_summary_from_row(row, content) for row, content in result.all()]

    @_with_retry
    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        title: Optional[str] = None,
        is_archived: Optional[bool] = None,
    ) -> ConversationSummary:
        async with self._db.session() as session:
            row = await self._owned(session, conversation_id, user_id)
            if row is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if title is not None:
                row.title = title
            if is_archived is not None:
                row.is_archived = is_archived
            row.updated_at = utcnow()
            await session.flush()
            return _summary_from_row(row)

    @_with_retry
    async def delete_conversation(
        self,
        conversation_id: str,
        user_id: str,
    ) -> None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ConversationRow)
                .options(selectinload(ConversationRow.messages))
                .where(
                    ConversationRow.id == conversation_id,
                    ConversationRow.user_id == user_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            await session.delete(row)


# ============================================================================
# SETTINGS
# ============================================================================

class SQLSettingsStorage(SettingsStorageInterface):
    """Per-user AI settings on SQLAlchemy."""

    def __init__(self, database: Database):
        self._db = database

    async def _row(self, session: AsyncSession, user_id: str) -> Optional[AISettingsRow]:
        result = await session.execute(
            select(AISettingsRow).where(AISettingsRow.user_id == user_id)
        )
        return result.scalar_one_or_none()

    @_with_retry
    async def get(self, user_id: str) -> Optional[AISettings]:
        async with self._db.session() as session:
            row = await self._row(session, user_id)
            return _settings_from_row(row) if row else None

    @_with_retry
    async def upsert(self, user_id: str, values: dict[str, Any]) -> AISettings:
        async with self._db.session() as session:
            row = await self._row(session, user_id)
            if row is None:
                defaults = AISettings(user_id=user_id)
                row = AISettingsRow(
                    user_id=user_id,
                    **{
                        name: _column_value(getattr(defaults, name))
                        for name in (
                            "ai_enabled", "provider", "temperature", "max_tokens",
                            "enable_crag", "relevance_threshold", "max_retrieval_docs",
                            "enable_web_search_fallback", "data_access",
                            "anonymize_vendors", "exclude_sensitive_categories",
                        )
                    },
                )
                session.add(row)

            for name, value in values.items():
                setattr(row, name, _column_value(value))
            row.updated_at = utcnow()

            await session.flush()
            await session.refresh(row)
            return _settings_from_row(row)

    @_with_retry
    async def delete(self, user_id: str) -> bool:
        async with self._db.session() as session:
            row = await self._row(session, user_id)
            if row is None:
                return False
            await session.delete(row)
            return True
