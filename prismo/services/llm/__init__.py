"""
LLM Services Package

One client per provider behind the LLMClient interface, selected by
create_llm_client() from the user's AI settings.
"""

from prismo.services.llm.base import (
    AuthenticationError,
    Completion,
    ContentFilterError,
    GenerationError,
    GenerationTimeoutError,
    LLMClient,
    ModelNotFoundError,
    PromptMessage,
    ProviderUnavailableError,
    RateLimitError,
    merge_consecutive,
)
from prismo.services.llm.factory import CLIENTS, DEFAULT_MODELS, create_llm_client

__all__ = [
    # Interface
    "Completion",
    "LLMClient",
    "PromptMessage",
    "merge_consecutive",
    # Exceptions
    "AuthenticationError",
    "ContentFilterError",
    "GenerationError",
    "GenerationTimeoutError",
    "ModelNotFoundError",
    "ProviderUnavailableError",
    "RateLimitError",
    # Factory
    "CLIENTS",
    "DEFAULT_MODELS",
    "create_llm_client",
]
