"""
Routes of the assistant API, all under /api/ai.

Settings:
- GET    /settings            masked settings (defaults if none saved)
- POST   /settings            partial update, apiKey tri-state
- DELETE /settings            back to defaults
- POST   /test-connection     live call with a candidate config

Conversations:
- GET    /conversations       list, newest first
- POST   /conversations       create an empty conversation
- GET    /conversations/{id}  conversation with its messages
- PATCH  /conversations/{id}  rename or archive
- DELETE /conversations/{id}  hard delete with messages

Chat:
- POST   /chat                one turn, SSE stream by default
"""

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse, StreamingResponse

from prismo.api.dependencies import (
    get_components,
    get_conversations,
    get_orchestrator,
    get_rate_limiter,
    get_settings_service,
    get_user_id,
)
from prismo.api.ratelimit import RateLimiter
from prismo.api.schemas import ChatRequest, ConversationCreate, ConversationUpdate, DeleteResult
from prismo.models.chat import ConversationDetail, ConversationSummary, StreamEvent
from prismo.models.settings import (
    AISettingsUpdate,
    AISettingsView,
    ConnectionTestRequest,
    ConnectionTestResult,
)
from prismo.orchestrator import AppComponents, ChatOrchestrator
from prismo.services.storage import ConversationStorageInterface
from prismo.settings_service import SettingsService


router = APIRouter(prefix="/api/ai", tags=["ai"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


# ============================================================================
# SETTINGS
# ============================================================================

@router.get("/settings", response_model=AISettingsView)
async def get_ai_settings(
    user_id: str = Depends(get_user_id),
    service: SettingsService = Depends(get_settings_service),
) -> AISettingsView:
    return await service.get_settings(user_id)


@router.post("/settings", response_model=AISettingsView)
async def update_ai_settings(
    update: AISettingsUpdate,
    user_id: str = Depends(get_user_id),
    service: SettingsService = Depends(get_settings_service),
) -> AISettingsView:
    return await service.update_settings(user_id, update)


@router.delete("/settings", response_model=AISettingsView)
async def reset_ai_settings(
    user_id: str = Depends(get_user_id),
    service: SettingsService = Depends(get_settings_service),
) -> AISettingsView:
    return await service.reset_settings(user_id)


@router.post("/test-connection", response_model=ConnectionTestResult)
async def test_connection(
    request: ConnectionTestRequest,
    user_id: str = Depends(get_user_id),
    service: SettingsService = Depends(get_settings_service),
) -> ConnectionTestResult:
    return await service.test_connection(user_id, request)


# ============================================================================
# CONVERSATIONS
# ============================================================================

@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    limit: int = Query(default=50, ge=1, le=200),
    include_archived: bool = Query(default=False, alias="includeArchived"),
    user_id: str = Depends(get_user_id),
    conversations: ConversationStorageInterface = Depends(get_conversations),
) -> list[ConversationSummary]:
    return await conversations.list_conversations(
        user_id, limit=limit, include_archived=include_archived
    )


@router.post(
    "/conversations",
    response_model=ConversationSummary,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    body: ConversationCreate,
    user_id: str = Depends(get_user_id),
    conversations: ConversationStorageInterface = Depends(get_conversations),
) -> ConversationSummary:
    return await conversations.create_conversation(user_id, title=body.title)


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    conversations: ConversationStorageInterface = Depends(get_conversations),
) -> ConversationDetail:
    return await conversations.get_conversation(conversation_id, user_id)


@router.patch("/conversations/{conversation_id}", response_model=ConversationSummary)
async def update_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    user_id: str = Depends(get_user_id),
    conversations: ConversationStorageInterface = Depends(get_conversations),
) -> ConversationSummary:
    return await conversations.update_conversation(
        conversation_id, user_id, title=body.title, is_archived=body.is_archived
    )


@router.delete("/conversations/{conversation_id}", response_model=DeleteResult)
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> DeleteResult:
    await components.conversations.delete_conversation(conversation_id, user_id)
    await components.audit_logger.log_conversation_deleted(
        conversation_id=conversation_id, user_id=user_id
    )
    return DeleteResult()


# ============================================================================
# CHAT
# ============================================================================

@router.post("/chat")
async def chat(
    body: ChatRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Run one chat turn.

    Streaming: the first event is pulled BEFORE the response starts, so
    validation, configuration and busy-conversation errors come back as
    plain HTTP errors instead of a 200 stream holding an error event.
    """
    limiter.check(user_id)

    if not body.stream:
        reply = await orchestrator.send_message(user_id, body.message, body.conversation_id)
        return JSONResponse(reply.model_dump(mode="json", by_alias=True))

    events = orchestrator.stream_turn(user_id, body.message, body.conversation_id)
    first: StreamEvent = await anext(events)

    async def frames():
        try:
            yield first.to_sse()
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)
