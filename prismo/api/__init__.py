"""HTTP API package: FastAPI app, routes and SSE streaming."""

from prismo.api.main import create_app, run
from prismo.api.ratelimit import RateLimiter, RateLimitExceededError

__all__ = [
    "RateLimitExceededError",
    "RateLimiter",
    "create_app",
    "run",
]
