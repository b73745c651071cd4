"""
Data Models Package

This package contains all Pydantic models used in Prismo.
All data flowing through the chat pipeline must conform to these schemas.
"""

from prismo.models.settings import (
    MAX_TOKEN_TIERS,
    AIProvider,
    AISettings,
    AISettingsUpdate,
    AISettingsView,
    CamelModel,
    ConnectionTestRequest,
    ConnectionTestResult,
    DataAccess,
    DataSource,
    ProviderConfig,
)
from prismo.models.retrieval import (
    AssembledContext,
    DocumentGrade,
    GradingResult,
    IntentClassification,
    QueryIntent,
    RetrievalResult,
    RetrievalWindow,
    RetrievedDocument,
)
from prismo.models.chat import (
    ChatMessage,
    ChatReply,
    ChunkEvent,
    ConversationDetail,
    ConversationSummary,
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
    estimate_tokens,
)
from prismo.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Settings models
    "MAX_TOKEN_TIERS",
    "AIProvider",
    "AISettings",
    "AISettingsUpdate",
    "AISettingsView",
    "CamelModel",
    "ConnectionTestRequest",
    "ConnectionTestResult",
    "DataAccess",
    "DataSource",
    "ProviderConfig",
    # Retrieval models
    "AssembledContext",
    "DocumentGrade",
    "GradingResult",
    "IntentClassification",
    "QueryIntent",
    "RetrievalResult",
    "RetrievalWindow",
    "RetrievedDocument",
    # Chat models
    "ChatMessage",
    "ChatReply",
    "ChunkEvent",
    "ConversationDetail",
    "ConversationSummary",
    "DoneEvent",
    "ErrorEvent",
    "MessageMetadata",
    "MessageRole",
    "MetadataEvent",
    "NewMessage",
    "ReplyMessage",
    "StartEvent",
    "StreamEvent",
    "TokenUsage",
    "TurnState",
    "estimate_tokens",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
