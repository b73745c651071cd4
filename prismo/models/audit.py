"""
Audit Models for Prismo

Each stage of a chat turn leaves a typed event behind, so an answer can
be traced back to the sources it used. Settings changes are audited too.

DESIGN DECISION: Audit events never contain API keys, in any form.
Message content is not logged either - only its length and ids.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Event types, one per stage of a chat turn plus settings and
    conversation management.
    """
    # Turn life cycle
    TURN_STARTED = "turn_started"
    TURN_REJECTED = "turn_rejected"
    TURN_PERSISTED = "turn_persisted"

    # Retrieval
    RETRIEVAL_COMPLETED = "retrieval_completed"
    RETRIEVAL_SOURCE_FAILED = "retrieval_source_failed"
    CORRECTION_TRIGGERED = "correction_triggered"
    WEB_FALLBACK_FLAGGED = "web_fallback_flagged"

    # Generation
    GENERATION_COMPLETED = "generation_completed"
    GENERATION_FAILED = "generation_failed"

    # Settings and conversations
    SETTINGS_UPDATED = "settings_updated"
    CONNECTION_TESTED = "connection_tested"
    CONVERSATION_DELETED = "conversation_deleted"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One audited occurrence, serialized to a single structured log line.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    user_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'conversation', 'settings')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - all events of one chat turn share this
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one turn)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Static factories, one per event type.

    Example:
        event = AuditEventBuilder.turn_started(conversation_id, user_id, ...)
        event = AuditEventBuilder.generation_failed(conversation_id, error, ...)
    """

    @staticmethod
    def turn_started(
        conversation_id: str,
        user_id: str,
        message_length: int,
        is_new_conversation: bool,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TURN_STARTED,
            user_id=user_id,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description="Chat turn started",
            details={
                "message_length": message_length,
                "is_new_conversation": is_new_conversation,
            },
        )

    @staticmethod
    def turn_rejected(
        user_id: str,
        reason: str,
        error_type: str,
        correlation_id: UUID,
        conversation_id: Optional[str] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TURN_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description=f"Chat turn rejected: {error_type}",
            error_code=error_type,
            error_message=reason,
        )

    @staticmethod
    def retrieval_completed(
        conversation_id: str,
        sources_queried: list[str],
        document_count: int,
        confidence: float,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RETRIEVAL_COMPLETED,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description=f"Retrieved {document_count} documents with {confidence:.0%} confidence",
            details={
                "sources_queried": sources_queried,
                "document_count": document_count,
                "confidence": confidence,
            },
        )

    @staticmethod
    def retrieval_source_failed(
        source: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RETRIEVAL_SOURCE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="data_source",
            entity_id=source,
            correlation_id=correlation_id,
            description=f"Data source '{source}' failed and was skipped",
            error_message=error_message,
        )

    @staticmethod
    def correction_triggered(
        conversation_id: str,
        confidence: float,
        threshold: float,
        query_rewritten: bool,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CORRECTION_TRIGGERED,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description=f"Confidence {confidence:.2f} below {threshold:.2f}, re-retrieving",
            details={
                "confidence": confidence,
                "threshold": threshold,
                "query_rewritten": query_rewritten,
            },
        )

    @staticmethod
    def web_fallback_flagged(
        conversation_id: str,
        confidence: float,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WEB_FALLBACK_FLAGGED,
            severity=AuditSeverity.WARNING,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description="Context flagged as limited after correction",
            details={"confidence": confidence},
        )

    @staticmethod
    def generation_completed(
        conversation_id: str,
        provider: str,
        tokens_used: int,
        latency_ms: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GENERATION_COMPLETED,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description=f"{provider} answered in {latency_ms} ms",
            details={
                "provider": provider,
                "tokens_used": tokens_used,
                "latency_ms": latency_ms,
            },
        )

    @staticmethod
    def generation_failed(
        conversation_id: str,
        provider: str,
        error_type: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GENERATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description=f"Generation failed: {error_type}",
            details={"provider": provider},
            error_code=error_type,
            error_message=error_message,
        )

    @staticmethod
    def turn_persisted(
        conversation_id: str,
        user_id: str,
        total_messages: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TURN_PERSISTED,
            user_id=user_id,
            entity_type="conversation",
            entity_id=conversation_id,
            correlation_id=correlation_id,
            description="User and assistant messages saved",
            details={"total_messages": total_messages},
        )

    @staticmethod
    def settings_updated(
        user_id: str,
        fields: list[str],
        api_key_action: Optional[str]
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTINGS_UPDATED,
            user_id=user_id,
            entity_type="settings",
            entity_id=user_id,
            description=f"AI settings updated ({len(fields)} fields)",
            details={
                "fields": sorted(fields),
                "api_key": api_key_action or "unchanged",
            },
        )

    @staticmethod
    def connection_tested(
        user_id: str,
        provider: str,
        success: bool,
        latency_ms: Optional[int],
        error_type: Optional[str] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONNECTION_TESTED,
            severity=AuditSeverity.INFO if success else AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="settings",
            entity_id=user_id,
            description=f"Connection test to {provider}: {'ok' if success else 'failed'}",
            details={
                "provider": provider,
                "latency_ms": latency_ms,
            },
            error_code=error_type,
        )

    @staticmethod
    def conversation_deleted(
        conversation_id: str,
        user_id: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONVERSATION_DELETED,
            user_id=user_id,
            entity_type="conversation",
            entity_id=conversation_id,
            description="Conversation and its messages deleted",
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
