"""
FastAPI application for the Prismo AI assistant.

DESIGN DECISION: create_app() takes ready-made components. The process
entry point builds them from the environment; tests build them around
an isolated database and a fake provider client. Routes never
construct services themselves.

Every error leaves the API as:
    {"error": {"type": "<ErrorClass>", "message": "<text>"}}
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from prismo import __version__
from prismo.api.ratelimit import RateLimiter, RateLimitExceededError
from prismo.api.routes import router
from prismo.audit import configure_logging
from prismo.errors import ChatValidationError, ConfigurationError, TurnInProgressError
from prismo.orchestrator import AppComponents, create_app_components
from prismo.security import EncryptionError
from prismo.services.llm import (
    AuthenticationError,
    ContentFilterError,
    GenerationError,
    GenerationTimeoutError,
    ModelNotFoundError,
    ProviderUnavailableError,
    RateLimitError,
)
from prismo.services.storage import (
    ConcurrentUpdateError,
    NotFoundError,
    PersistenceError,
    StorageError,
)


logger = structlog.get_logger(__name__)


# ============================================================================
# ERROR MAPPING
# ============================================================================

# Most specific class first
ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (ConfigurationError, status.HTTP_412_PRECONDITION_FAILED),
    (ChatValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TurnInProgressError, status.HTTP_409_CONFLICT),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrentUpdateError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (EncryptionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ProviderUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ModelNotFoundError, status.HTTP_404_NOT_FOUND),
    (ContentFilterError, status.HTTP_400_BAD_REQUEST),
    (GenerationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GenerationError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(error: Exception) -> int:
    for error_class, code in ERROR_STATUS:
        if isinstance(error, error_class):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(status_code: int, error_type: str, message: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
        headers=headers,
    )


async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.warning("request_failed", path=request.url.path, error_type=type(exc).__name__)
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(int(exc.retry_after) + 1)}
    return error_response(code, type(exc).__name__, str(exc), headers)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "ValidationError", message)


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_type = "Unauthorized" if exc.status_code == 401 else "HTTPError"
    return error_response(exc.status_code, error_type, str(exc.detail), getattr(exc, "headers", None))


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(components: Optional[AppComponents] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        components: Wired services; built from the environment when omitted
    """
    components = components or create_app_components()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await components.database.create_all()
        logger.info("api_started", environment=components.settings.app.app_environment)
        yield
        await components.database.dispose()

    app = FastAPI(
        title="Prismo AI Assistant",
        description="Corrective-RAG personal finance assistant",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.components = components
    app.state.rate_limiter = RateLimiter(components.settings.chat.rate_limit_per_minute)

    for error_class, _ in ERROR_STATUS:
        app.add_exception_handler(error_class, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)

    @app.get("/health")
    async def health() -> dict:
        database_ok = await components.database.check_connection()
        return {"status": "ok" if database_ok else "degraded", "database": database_ok}

    app.include_router(router)
    return app


def run() -> None:
    """Console entry point: uvicorn on the configured port."""
    import uvicorn

    from prismo.config import get_settings

    settings = get_settings()
    configure_logging(settings.app.log_level)
    uvicorn.run(create_app(), host=settings.app.api_host, port=settings.app.api_port)
