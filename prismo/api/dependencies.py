"""
FastAPI dependencies.

Components are wired once by create_app() and read from app.state;
nothing here builds services per request.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from prismo.api.ratelimit import RateLimiter
from prismo.orchestrator import AppComponents, ChatOrchestrator
from prismo.services.storage import ConversationStorageInterface
from prismo.settings_service import SettingsService


def get_components(request: Request) -> AppComponents:
    return request.app.state.components


def get_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    """
    Caller identity.

    Authentication happens upstream; this only requires that the
    gateway forwarded a user id.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


def get_orchestrator(components: AppComponents = Depends(get_components)) -> ChatOrchestrator:
    return components.orchestrator


def get_settings_service(components: AppComponents = Depends(get_components)) -> SettingsService:
    return components.settings_service


def get_conversations(
    components: AppComponents = Depends(get_components),
) -> ConversationStorageInterface:
    return components.conversations


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
