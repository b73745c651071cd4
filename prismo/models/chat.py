"""
Chat Models

Conversations, messages, and the events of a streaming chat turn.

DESIGN DECISION: Messages are append-only. Once stored, a message's
content never changes; the transcript is the ordered list of messages.
Assistant messages carry provenance (which data sources were used, how
confident retrieval was, tokens, latency) so every answer can be traced
back to the records it was built from.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from prismo.models.settings import CamelModel, DataSource


# ============================================================================
# ENUMS
# ============================================================================

class MessageRole(str, Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnState(str, Enum):
    """
    States of one chat turn.

    Idle -> Retrieving -> Grading -> [CorrectionRetrieving -> Grading]
         -> ContextAssembly -> Generating -> Persisting -> Idle
    Errored is reachable from any state.
    """
    IDLE = "idle"
    RETRIEVING = "retrieving"
    GRADING = "grading"
    CORRECTION_RETRIEVING = "correction_retrieving"
    CONTEXT_ASSEMBLY = "context_assembly"
    GENERATING = "generating"
    PERSISTING = "persisting"
    ERRORED = "errored"


# ============================================================================
# TOKENS
# ============================================================================

class TokenUsage(BaseModel):
    """Token accounting reported by a provider."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @classmethod
    def estimate(cls, prompt_text: str, completion_text: str) -> "TokenUsage":
        """Rough 4-characters-per-token estimate for providers that report nothing."""
        prompt = estimate_tokens(prompt_text)
        completion = estimate_tokens(completion_text)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


# ============================================================================
# MESSAGES AND CONVERSATIONS
# ============================================================================

class NewMessage(BaseModel):
    """A message about to be appended to a conversation."""

    role: MessageRole
    content: str = Field(..., min_length=1)

    # Assistant-only provenance
    data_sources: list[DataSource] = Field(default_factory=list)
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tokens_used: Optional[int] = Field(default=None, ge=0)
    processing_time_ms: Optional[int] = Field(default=None, ge=0)
    query_rewritten: bool = False
    original_query: Optional[str] = None
    relevance_grades: Optional[list[dict]] = None

    @model_validator(mode='after')
    def validate_provenance_on_assistant_only(self) -> 'NewMessage':
        """User and system messages never carry retrieval provenance."""
        if self.role != MessageRole.ASSISTANT:
            if (
                self.data_sources
                or self.confidence_score is not None
                or self.tokens_used is not None
                or self.processing_time_ms is not None
            ):
                raise ValueError(
                    f"{self.role.value} messages cannot carry assistant metadata"
                )
        return self


class ChatMessage(CamelModel):
    """A stored message."""

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime

    data_sources: list[str] = Field(default_factory=list)
    confidence_score: Optional[float] = None
    tokens_used: Optional[int] = None
    processing_time_ms: Optional[int] = None
    query_rewritten: bool = False
    original_query: Optional[str] = None


class ConversationSummary(CamelModel):
    """Conversation row as shown in the conversation list."""

    id: str
    title: str
    total_messages: int = 0
    total_tokens_used: int = 0
    is_archived: bool = False
    created_at: datetime
    updated_at: datetime
    last_message_preview: Optional[str] = None


class ConversationDetail(ConversationSummary):
    """Conversation with its full transcript."""

    messages: list[ChatMessage] = Field(default_factory=list)


# ============================================================================
# TURN RESULTS
# ============================================================================

class MessageMetadata(CamelModel):
    """Provenance returned alongside an answer."""

    data_sources: list[DataSource] = Field(default_factory=list)
    confidence_score: float = 0.0
    tokens_used: int = 0
    processing_time_ms: int = 0
    query_rewritten: bool = False
    needs_external_fallback: bool = False


class ReplyMessage(CamelModel):
    content: str
    metadata: MessageMetadata


class ChatReply(CamelModel):
    """Result of a non-streaming chat turn."""

    conversation_id: str
    message: ReplyMessage


# ============================================================================
# STREAM EVENTS
# ============================================================================

class StreamEvent(CamelModel):
    """
    Base for events of a streaming turn.

    Order within one turn: start, chunk*, metadata, done - or a single
    terminal error, after which nothing else is sent.
    """

    type: str

    def to_sse(self) -> str:
        """Frame as a server-sent event."""
        return f"data: {self.model_dump_json(by_alias=True)}\n\n"


class StartEvent(StreamEvent):
    type: Literal["start"] = "start"
    conversation_id: str


class ChunkEvent(StreamEvent):
    type: Literal["chunk"] = "chunk"
    content: str


class MetadataEvent(StreamEvent):
    type: Literal["metadata"] = "metadata"
    data_sources: list[DataSource] = Field(default_factory=list)
    confidence_score: float = 0.0
    query_rewritten: bool = False
    needs_external_fallback: bool = False


class DoneEvent(StreamEvent):
    type: Literal["done"] = "done"
    tokens_used: int = 0
    processing_time_ms: int = 0
    usage: Optional[TokenUsage] = None


class ErrorEvent(StreamEvent):
    type: Literal["error"] = "error"
    message: str
    error_type: str = "GenerationError"
    retryable: bool = False
