"""
Audit Logger

DESIGN DECISION: Logging must never break a turn. A sink that fails is
reported through the standard logging module and the turn carries on.

All events of one turn share a correlation id, so a single grep over the
JSON lines reconstructs the turn from retrieval to persistence. The
methods are async to match their call sites in the pipeline.
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from prismo.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """
    Route stdlib logging (and therefore structlog) to stdout.

    structlog's level filter defers to the stdlib logger level, so this
    must run once at process start for INFO events to appear.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )


class AuditLogger:
    """
    Writes AuditEvents to structlog.

    Writes every AuditEvent as one structured JSON log line,
    routed to the log level matching the event severity.
    """

    def __init__(self, logger_name: str = "prismo.audit"):
        self._logger = structlog.get_logger(logger_name)

    async def log(self, event: AuditEvent) -> bool:
        """
        Write one event.

        Returns True if the event was written. Never raises.
        """
        try:
            log_dict = event.to_log_dict()

            if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
                self._logger.error("audit_event", **log_dict)
            elif event.severity == AuditSeverity.WARNING:
                self._logger.warning("audit_event", **log_dict)
            elif event.severity == AuditSeverity.DEBUG:
                self._logger.debug("audit_event", **log_dict)
            else:
                self._logger.info("audit_event", **log_dict)
        except Exception as e:
            # Log failure but don't raise
            logging.getLogger(__name__).error("audit logging failed: %s", e)
            return False

        return True

    async def log_turn_started(
        self,
        conversation_id: str,
        user_id: str,
        message_length: int,
        is_new_conversation: bool,
        correlation_id: UUID,
    ) -> None:
        """Log the start of a chat turn."""
        await self.log(AuditEventBuilder.turn_started(
            conversation_id=conversation_id,
            user_id=user_id,
            message_length=message_length,
            is_new_conversation=is_new_conversation,
            correlation_id=correlation_id,
        ))

    async def log_turn_rejected(
        self,
        user_id: str,
        reason: str,
        error_type: str,
        correlation_id: UUID,
        conversation_id: Optional[str] = None,
    ) -> None:
        """Log a turn refused before any retrieval or generation."""
        await self.log(AuditEventBuilder.turn_rejected(
            user_id=user_id,
            reason=reason,
            error_type=error_type,
            correlation_id=correlation_id,
            conversation_id=conversation_id,
        ))

    async def log_retrieval_completed(
        self,
        conversation_id: str,
        sources_queried: list[str],
        document_count: int,
        confidence: float,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.retrieval_completed(
            conversation_id=conversation_id,
            sources_queried=sources_queried,
            document_count=document_count,
            confidence=confidence,
            correlation_id=correlation_id,
        ))

    async def log_source_failed(
        self,
        source: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a data source that degraded to an empty result."""
        await self.log(AuditEventBuilder.retrieval_source_failed(
            source=source,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_correction_triggered(
        self,
        conversation_id: str,
        confidence: float,
        threshold: float,
        query_rewritten: bool,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.correction_triggered(
            conversation_id=conversation_id,
            confidence=confidence,
            threshold=threshold,
            query_rewritten=query_rewritten,
            correlation_id=correlation_id,
        ))

    async def log_web_fallback(
        self,
        conversation_id: str,
        confidence: float,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.web_fallback_flagged(
            conversation_id=conversation_id,
            confidence=confidence,
            correlation_id=correlation_id,
        ))

    async def log_generation_completed(
        self,
        conversation_id: str,
        provider: str,
        tokens_used: int,
        latency_ms: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.generation_completed(
            conversation_id=conversation_id,
            provider=provider,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
            correlation_id=correlation_id,
        ))

    async def log_generation_failed(
        self,
        conversation_id: str,
        provider: str,
        error_type: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.generation_failed(
            conversation_id=conversation_id,
            provider=provider,
            error_type=error_type,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_turn_persisted(
        self,
        conversation_id: str,
        user_id: str,
        total_messages: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.turn_persisted(
            conversation_id=conversation_id,
            user_id=user_id,
            total_messages=total_messages,
            correlation_id=correlation_id,
        ))

    async def log_settings_updated(
        self,
        user_id: str,
        fields: list[str],
        api_key_action: Optional[str] = None,
    ) -> None:
        """Log a settings change. Only field names are logged, never values."""
        await self.log(AuditEventBuilder.settings_updated(
            user_id=user_id,
            fields=fields,
            api_key_action=api_key_action,
        ))

    async def log_connection_tested(
        self,
        user_id: str,
        provider: str,
        success: bool,
        latency_ms: Optional[int],
        error_type: Optional[str] = None,
    ) -> None:
        await self.log(AuditEventBuilder.connection_tested(
            user_id=user_id,
            provider=provider,
            success=success,
            latency_ms=latency_ms,
            error_type=error_type,
        ))

    async def log_conversation_deleted(
        self,
        conversation_id: str,
        user_id: str,
    ) -> None:
        await self.log(AuditEventBuilder.conversation_deleted(
            conversation_id=conversation_id,
            user_id=user_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    New id for one chat turn; every audit event of that turn carries it.
    """
    return uuid4()
