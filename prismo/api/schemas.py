"""Request and response bodies of the HTTP API that have no domain model."""

from typing import Optional

from pydantic import Field

from prismo.models.settings import CamelModel


class ChatRequest(CamelModel):
    """
    Body of POST /api/ai/chat.

    The message is validated by the orchestrator so that an empty or
    oversized message is rejected the same way on every entry point.
    """

    message: str
    conversation_id: Optional[str] = None
    stream: bool = True


class ConversationCreate(CamelModel):
    title: Optional[str] = Field(default=None, max_length=200)


class ConversationUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    is_archived: Optional[bool] = None


class DeleteResult(CamelModel):
    success: bool = True


class ErrorDetail(CamelModel):
    type: str
    message: str


class ErrorBody(CamelModel):
    error: ErrorDetail
