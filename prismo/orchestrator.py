"""
Chat Orchestrator for Prismo

This module ties the assistant together and defines the end-to-end
flow of one chat turn:

    validate -> resolve provider -> lock conversation -> load history
    -> retrieve -> grade [-> correct once -> grade] -> assemble context
    -> generate (stream) -> persist user + assistant pair

DESIGN DECISION: The orchestrator enforces the boundaries:
- No turn starts while AI is disabled or unconfigured
- At most one turn in flight per conversation
- Nothing is persisted unless the model produced a complete answer
  (generation error, timeout, cancellation or client abort discard the
  whole turn - there are no partial assistant messages)
- Every stage is audited under one correlation id

The state of a turn is explicit (ChatTurn), never inferred from the
shape of the message list.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date
from typing import AsyncIterator, Callable, Optional
from uuid import UUID, uuid4

import structlog

from prismo.audit import AuditLogger, create_correlation_id
from prismo.config import Settings, get_settings
from prismo.errors import ChatValidationError, ConfigurationError, TurnInProgressError
from prismo.models.chat import (
    ChatReply,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    MessageMetadata,
    MessageRole,
    MetadataEvent,
    NewMessage,
    ReplyMessage,
    StartEvent,
    StreamEvent,
    TokenUsage,
    TurnState,
)
from prismo.models.retrieval import AssembledContext, GradingResult
from prismo.models.settings import AISettings, ProviderConfig
from prismo.retrieval import (
    ContextAssembler,
    CorrectiveRetrieval,
    QueryRewriter,
    RelevanceGrader,
    Retriever,
    build_system_prompt,
    create_accessors,
)
from prismo.security import KeyCipher
from prismo.services.llm import GenerationError, LLMClient, PromptMessage, create_llm_client
from prismo.services.storage import (
    ConcurrentUpdateError,
    ConversationStorageInterface,
    Database,
    NotFoundError,
    PersistenceError,
    SQLConversationStorage,
    SQLSettingsStorage,
    StorageError,
)
from prismo.settings_service import SettingsService


logger = structlog.get_logger(__name__)

TITLE_SUFFIX = "..."


# ============================================================================
# TURN STATE MACHINE
# ============================================================================

TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.RETRIEVING}),
    TurnState.RETRIEVING: frozenset({TurnState.GRADING}),
    TurnState.GRADING: frozenset({TurnState.CORRECTION_RETRIEVING, TurnState.CONTEXT_ASSEMBLY}),
    TurnState.CORRECTION_RETRIEVING: frozenset({TurnState.GRADING}),
    TurnState.CONTEXT_ASSEMBLY: frozenset({TurnState.GENERATING}),
    TurnState.GENERATING: frozenset({TurnState.PERSISTING}),
    TurnState.PERSISTING: frozenset({TurnState.IDLE}),
    TurnState.ERRORED: frozenset(),
}


class ChatTurn:
    """
    One user message and the work it triggers.

    Starts in IDLE and ends in IDLE (success) or ERRORED. A finished
    turn accepts no further transitions.
    """

    def __init__(
        self,
        user_id: str,
        conversation_id: str,
        message: str,
        is_new_conversation: bool,
        correlation_id: Optional[UUID] = None,
    ):
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.message = message
        self.is_new_conversation = is_new_conversation
        self.correlation_id = correlation_id or create_correlation_id()
        self.started = time.perf_counter()
        self.state = TurnState.IDLE
        self.history: list[TurnState] = [TurnState.IDLE]
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def correction_ran(self) -> bool:
        return TurnState.CORRECTION_RETRIEVING in self.history

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    def advance(self, state: TurnState) -> None:
        """
        Move to the next state.

        Raises:
            RuntimeError: Invalid transition, or the turn already finished
        """
        if self._finished:
            raise RuntimeError(f"Turn already finished in state {self.state.value}")
        if state != TurnState.ERRORED and state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid turn transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)
        if state in (TurnState.IDLE, TurnState.ERRORED):
            self._finished = True

    def fail(self) -> None:
        """Move to ERRORED unless the turn already finished."""
        if not self._finished:
            self.advance(TurnState.ERRORED)


class ConversationLocks:
    """
    Per-conversation locks of ONE orchestrator instance.

    A second turn on a busy conversation is rejected, not queued:
    the client is still showing the first answer streaming in.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    async def acquire(self, conversation_id: str) -> None:
        """
        Raises:
            TurnInProgressError: A turn is already running on this conversation
        """
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        if lock.locked():
            raise TurnInProgressError(conversation_id)
        await lock.acquire()

    def release(self, conversation_id: str) -> None:
        lock = self._locks.get(conversation_id)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._locks.pop(conversation_id, None)


@dataclass
class PreparedTurn:
    """Everything generation needs, produced before the first event."""

    turn: ChatTurn
    settings: AISettings
    config: ProviderConfig
    client: LLMClient
    grading: GradingResult
    context: AssembledContext
    system_prompt: str
    messages: list[PromptMessage] = field(default_factory=list)
    expected_total_messages: int = 0


def derive_title(message: str, max_length: int = 50) -> str:
    """First characters of the opening message, with "..." when cut."""
    text = " ".join(message.split())
    if len(text) <= max_length:
        return text
    return text[:max_length] + TITLE_SUFFIX


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class ChatOrchestrator:
    """
    Runs chat turns.

    Flow per turn:
    1. Validate the message
    2. Resolve provider config (ConfigurationError before any retrieval)
    3. Lock the conversation (TurnInProgressError if busy)
    4. Check ownership and load history
    5. Retrieve, grade, correct at most once
    6. Assemble context and system prompt
    7. Generate
    8. Persist the user + assistant pair atomically

    Steps 1-6 happen before the first stream event, so their failures
    are raised to the caller. From the start event on, failures become
    a single terminal error event.
    """

    def __init__(
        self,
        conversations: ConversationStorageInterface,
        settings_service: SettingsService,
        retrieval: CorrectiveRetrieval,
        assembler: ContextAssembler,
        audit_logger: Optional[AuditLogger] = None,
        client_factory: Callable[[ProviderConfig], LLMClient] = create_llm_client,
        app_settings: Optional[Settings] = None,
    ):
        self._conversations = conversations
        self._settings_service = settings_service
        self._retrieval = retrieval
        self._assembler = assembler
        self._audit = audit_logger or AuditLogger()
        self._client_factory = client_factory
        self._chat = (app_settings or get_settings()).chat
        self._locks = ConversationLocks()

    @property
    def locks(self) -> ConversationLocks:
        return self._locks

    # ========================================================================
    # PREPARATION
    # ========================================================================

    def _validate_message(self, message: str) -> str:
        if message is None or not message.strip():
            raise ChatValidationError("Message cannot be empty")
        if len(message) > self._chat.max_message_length:
            raise ChatValidationError(
                f"Message is too long (max {self._chat.max_message_length} characters)"
            )
        return message.strip()

    async def _prepare_turn(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
    ) -> PreparedTurn:
        """
        Steps 1-6 of a turn. On success the conversation lock is HELD and
        the caller must release it.
        """
        correlation_id = create_correlation_id()
        try:
            message = self._validate_message(message)
            settings, config = await self._settings_service.resolve_provider_config(user_id)
        except (ChatValidationError, ConfigurationError) as e:
            await self._audit.log_turn_rejected(
                user_id=user_id,
                reason=str(e),
                error_type=type(e).__name__,
                correlation_id=correlation_id,
                conversation_id=conversation_id,
            )
            raise

        is_new = conversation_id is None
        conversation_id = conversation_id or str(uuid4())
        turn = ChatTurn(user_id, conversation_id, message, is_new, correlation_id)

        try:
            await self._locks.acquire(conversation_id)
        except TurnInProgressError as e:
            await self._audit.log_turn_rejected(
                user_id=user_id,
                reason=str(e),
                error_type=type(e).__name__,
                correlation_id=correlation_id,
                conversation_id=conversation_id,
            )
            raise

        try:
            return await self._prepare_locked(turn, settings, config)
        except BaseException:
            turn.fail()
            self._locks.release(conversation_id)
            raise

    async def _prepare_locked(
        self,
        turn: ChatTurn,
        settings: AISettings,
        config: ProviderConfig,
    ) -> PreparedTurn:
        expected_total = 0
        history: list[PromptMessage] = []

        if not turn.is_new_conversation:
            try:
                conversation = await self._conversations.get_summary(
                    turn.conversation_id, turn.user_id
                )
                recent = await self._conversations.list_messages(
                    turn.conversation_id, turn.user_id, limit=self._chat.history_limit
                )
            except NotFoundError as e:
                await self._audit.log_turn_rejected(
                    user_id=turn.user_id,
                    reason="conversation not found",
                    error_type="ChatValidationError",
                    correlation_id=turn.correlation_id,
                    conversation_id=turn.conversation_id,
                )
                raise ChatValidationError("Conversation not found") from e
            expected_total = conversation.total_messages
            history = [PromptMessage(role=m.role, content=m.content) for m in recent]

        await self._audit.log_turn_started(
            conversation_id=turn.conversation_id,
            user_id=turn.user_id,
            message_length=len(turn.message),
            is_new_conversation=turn.is_new_conversation,
            correlation_id=turn.correlation_id,
        )

        grading = await self._retrieval.run(
            turn.user_id, turn.message, settings, on_state=turn.advance
        )
        await self._audit_retrieval(turn, settings, grading)

        turn.advance(TurnState.CONTEXT_ASSEMBLY)
        context = self._assembler.assemble(grading, settings.max_tokens)
        system_prompt = build_system_prompt(context, grading.classification.intent)

        history.append(PromptMessage(role=MessageRole.USER, content=turn.message))
        return PreparedTurn(
            turn=turn,
            settings=settings,
            config=config,
            client=self._client_factory(config),
            grading=grading,
            context=context,
            system_prompt=system_prompt,
            messages=history,
            expected_total_messages=expected_total,
        )

    async def _audit_retrieval(
        self,
        turn: ChatTurn,
        settings: AISettings,
        grading: GradingResult,
    ) -> None:
        for source in grading.failed_sources:
            await self._audit.log_source_failed(
                source=source.value,
                error_message="data source unavailable",
                correlation_id=turn.correlation_id,
            )
        if grading.correction_attempted:
            await self._audit.log_correction_triggered(
                conversation_id=turn.conversation_id,
                confidence=grading.confidence,
                threshold=settings.relevance_threshold,
                query_rewritten=grading.query_rewritten,
                correlation_id=turn.correlation_id,
            )
        if grading.needs_external_fallback:
            await self._audit.log_web_fallback(
                conversation_id=turn.conversation_id,
                confidence=grading.confidence,
                correlation_id=turn.correlation_id,
            )
        await self._audit.log_retrieval_completed(
            conversation_id=turn.conversation_id,
            sources_queried=[s.value for s in grading.sources_queried],
            document_count=len(grading.documents),
            confidence=grading.confidence,
            correlation_id=turn.correlation_id,
        )

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    async def _persist(
        self,
        prepared: PreparedTurn,
        content: str,
        tokens_used: int,
        processing_time_ms: int,
    ):
        turn = prepared.turn
        grading = prepared.grading
        pair = [
            NewMessage(role=MessageRole.USER, content=turn.message),
            NewMessage(
                role=MessageRole.ASSISTANT,
                content=content,
                data_sources=prepared.context.data_sources,
                confidence_score=grading.confidence,
                tokens_used=tokens_used,
                processing_time_ms=processing_time_ms,
                query_rewritten=grading.query_rewritten,
                original_query=turn.message if grading.query_rewritten else None,
                relevance_grades=[g.model_dump(mode="json") for g in grading.grades],
            ),
        ]
        summary = await self._conversations.append_messages(
            turn.conversation_id,
            turn.user_id,
            pair,
            expected_total_messages=prepared.expected_total_messages,
            create_title=(
                derive_title(turn.message, self._chat.title_max_length)
                if turn.is_new_conversation else None
            ),
        )
        await self._audit.log_turn_persisted(
            conversation_id=turn.conversation_id,
            user_id=turn.user_id,
            total_messages=summary.total_messages,
            correlation_id=turn.correlation_id,
        )
        return summary

    async def _generation_failed(self, prepared: PreparedTurn, error_type: str, message: str) -> None:
        prepared.turn.fail()
        await self._audit.log_generation_failed(
            conversation_id=prepared.turn.conversation_id,
            provider=prepared.config.provider.value,
            error_type=error_type,
            error_message=message,
            correlation_id=prepared.turn.correlation_id,
        )

    def _metadata(self, prepared: PreparedTurn) -> MetadataEvent:
        return MetadataEvent(
            data_sources=prepared.context.data_sources,
            confidence_score=prepared.grading.confidence,
            query_rewritten=prepared.grading.query_rewritten,
            needs_external_fallback=prepared.grading.needs_external_fallback,
        )

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    async def stream_turn(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one turn as a stream of events.

        Errors of the preparation steps (validation, configuration, busy
        conversation, storage) are RAISED from the first iteration, before
        any event. After the start event the order is:
            start, chunk*, metadata, done
        or a single terminal error event; nothing follows an error.
        """
        prepared = await self._prepare_turn(user_id, message, conversation_id)
        turn = prepared.turn

        try:
            yield StartEvent(conversation_id=turn.conversation_id)
            turn.advance(TurnState.GENERATING)

            parts: list[str] = []
            done: Optional[DoneEvent] = None
            failure: Optional[ErrorEvent] = None
            async for event in prepared.client.stream(
                prepared.system_prompt,
                prepared.messages,
                temperature=prepared.config.temperature,
                max_tokens=prepared.config.max_tokens,
                timeout=self._chat.turn_timeout_seconds,
            ):
                if isinstance(event, ChunkEvent):
                    parts.append(event.content)
                    yield event
                elif isinstance(event, DoneEvent):
                    done = event
                elif isinstance(event, ErrorEvent):
                    failure = event

            content = "".join(parts)
            if failure is None and not content.strip():
                failure = ErrorEvent(
                    message="The model returned an empty response",
                    error_type="GenerationError",
                    retryable=True,
                )
            if failure is not None:
                await self._generation_failed(prepared, failure.error_type, failure.message)
                yield failure
                return

            usage = done.usage if done and done.usage else TokenUsage.estimate(
                prepared.system_prompt + "".join(m.content for m in prepared.messages),
                content,
            )
            await self._audit.log_generation_completed(
                conversation_id=turn.conversation_id,
                provider=prepared.config.provider.value,
                tokens_used=usage.total_tokens,
                latency_ms=done.processing_time_ms if done else 0,
                correlation_id=turn.correlation_id,
            )
            yield self._metadata(prepared)

            turn.advance(TurnState.PERSISTING)
            processing_time_ms = turn.elapsed_ms()
            try:
                await self._persist(prepared, content, usage.total_tokens, processing_time_ms)
            except StorageError as e:
                turn.fail()
                await self._audit.log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    correlation_id=turn.correlation_id,
                )
                yield ErrorEvent(
                    message="Your message could not be saved. Please try again.",
                    error_type=type(e).__name__,
                    retryable=isinstance(e, (ConcurrentUpdateError, PersistenceError)),
                )
                return

            turn.advance(TurnState.IDLE)
            yield DoneEvent(
                tokens_used=usage.total_tokens,
                processing_time_ms=processing_time_ms,
                usage=usage,
            )
        except (GeneratorExit, asyncio.CancelledError):
            # Client went away: discard the whole turn
            if not turn.finished:
                logger.info(
                    "turn_aborted",
                    conversation_id=turn.conversation_id,
                    correlation_id=str(turn.correlation_id),
                    state=turn.state.value,
                )
                turn.fail()
            raise
        except Exception as e:
            turn.fail()
            logger.exception("turn_failed", conversation_id=turn.conversation_id)
            await self._audit.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                correlation_id=turn.correlation_id,
            )
            yield ErrorEvent(
                message="Something went wrong while answering. Please try again.",
                error_type="InternalError",
                retryable=True,
            )
        finally:
            turn.fail()
            self._locks.release(turn.conversation_id)
            await prepared.client.aclose()

    async def send_message(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
    ) -> ChatReply:
        """
        Run one turn without streaming.

        Raises:
            ChatValidationError, ConfigurationError, TurnInProgressError:
                Before any work is done
            GenerationError: The model call failed (nothing persisted)
            StorageError: The answer could not be saved
        """
        prepared = await self._prepare_turn(user_id, message, conversation_id)
        turn = prepared.turn

        try:
            turn.advance(TurnState.GENERATING)
            try:
                completion = await prepared.client.complete(
                    prepared.system_prompt,
                    prepared.messages,
                    temperature=prepared.config.temperature,
                    max_tokens=prepared.config.max_tokens,
                    timeout=self._chat.turn_timeout_seconds,
                )
            except GenerationError as e:
                await self._generation_failed(prepared, e.error_type, str(e))
                raise

            if not completion.content.strip():
                error = GenerationError(
                    "The model returned an empty response",
                    provider=prepared.config.provider.value,
                    code="empty_response",
                    retryable=True,
                )
                await self._generation_failed(prepared, error.error_type, str(error))
                raise error

            await self._audit.log_generation_completed(
                conversation_id=turn.conversation_id,
                provider=prepared.config.provider.value,
                tokens_used=completion.usage.total_tokens,
                latency_ms=completion.latency_ms,
                correlation_id=turn.correlation_id,
            )

            turn.advance(TurnState.PERSISTING)
            processing_time_ms = turn.elapsed_ms()
            await self._persist(
                prepared, completion.content, completion.usage.total_tokens, processing_time_ms
            )
            turn.advance(TurnState.IDLE)

            return ChatReply(
                conversation_id=turn.conversation_id,
                message=ReplyMessage(
                    content=completion.content,
                    metadata=MessageMetadata(
                        data_sources=prepared.context.data_sources,
                        confidence_score=prepared.grading.confidence,
                        tokens_used=completion.usage.total_tokens,
                        processing_time_ms=processing_time_ms,
                        query_rewritten=prepared.grading.query_rewritten,
                        needs_external_fallback=prepared.grading.needs_external_fallback,
                    ),
                ),
            )
        finally:
            turn.fail()
            self._locks.release(turn.conversation_id)
            await prepared.client.aclose()


# ============================================================================
# FACTORY
# ============================================================================

@dataclass
class AppComponents:
    """Everything the API and tests need, wired once per process."""

    settings: Settings
    database: Database
    conversations: SQLConversationStorage
    settings_service: SettingsService
    orchestrator: ChatOrchestrator
    audit_logger: AuditLogger


def create_app_components(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    client_factory: Callable[[ProviderConfig], LLMClient] = create_llm_client,
    clock: Callable[[], date] = date.today,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Application settings (defaults to get_settings())
        database: Pre-built database (tests pass an isolated one)
        client_factory: Provider client factory (tests pass a fake)
        clock: Source of "today" for time windows and forecasts

    Returns:
        AppComponents
    """
    settings = settings or get_settings()
    database = database or Database.from_settings(settings.database)
    audit_logger = AuditLogger()

    conversations = SQLConversationStorage(database)
    settings_service = SettingsService(
        storage=SQLSettingsStorage(database),
        cipher=KeyCipher(settings.security.encryption_secret, settings.security.scrypt_n),
        audit_logger=audit_logger,
        client_factory=client_factory,
    )
    retrieval = CorrectiveRetrieval(
        retriever=Retriever(create_accessors(database, clock), clock),
        grader=RelevanceGrader(
            min_document_score=settings.chat.min_document_score,
            top_k=settings.chat.grading_top_k,
        ),
        rewriter=QueryRewriter(),
    )
    orchestrator = ChatOrchestrator(
        conversations=conversations,
        settings_service=settings_service,
        retrieval=retrieval,
        assembler=ContextAssembler(
            max_context_tokens=settings.chat.max_context_tokens,
            token_buffer=settings.chat.context_token_buffer,
        ),
        audit_logger=audit_logger,
        client_factory=client_factory,
        app_settings=settings,
    )

    return AppComponents(
        settings=settings,
        database=database,
        conversations=conversations,
        settings_service=settings_service,
        orchestrator=orchestrator,
        audit_logger=audit_logger,
    )
