"""
Gemini client (google-generativeai).

DESIGN DECISION: genai.configure() is process-global, but keys are
per-user. The model binds its transport on its first request, so we
hold a lock across configure() and that first request. Different users'
calls can therefore never pick up each other's key; streaming continues
outside the lock on the already-bound transport.
"""

import asyncio
from typing import AsyncIterator, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from prismo.models.chat import MessageRole, TokenUsage
from prismo.models.settings import AIProvider, ProviderConfig
from prismo.services.llm.base import (
    AuthenticationError,
    ContentFilterError,
    GenerationError,
    GenerationTimeoutError,
    LLMClient,
    ModelNotFoundError,
    PromptMessage,
    ProviderUnavailableError,
    RateLimitError,
    RawStreamItem,
    merge_consecutive,
)


_configure_lock = asyncio.Lock()


def _usage(response) -> Optional[TokenUsage]:
    metadata = getattr(response, "usage_metadata", None)
    if not metadata or not getattr(metadata, "total_token_count", 0):
        return None
    return TokenUsage(
        prompt_tokens=metadata.prompt_token_count or 0,
        completion_tokens=metadata.candidates_token_count or 0,
        total_tokens=metadata.total_token_count or 0,
    )


def _text(response) -> str:
    """Text of a response or chunk; empty when the candidate has no parts."""
    try:
        return response.text
    except ValueError:
        return ""


class GeminiClient(LLMClient):
    """Client for Google Gemini models."""

    provider = AIProvider.GEMINI

    def _model(self, system_prompt: str, temperature: float, max_tokens: int) -> genai.GenerativeModel:
        return genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_prompt,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_tokens,
            },
        )

    def _contents(self, messages: list[PromptMessage]) -> list[dict]:
        contents = []
        for m in merge_consecutive(messages):
            role = "model" if m.role == MessageRole.ASSISTANT else "user"
            contents.append({"role": role, "parts": [m.content]})
        return contents

    async def _generate(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
        stream: bool,
    ):
        async with _configure_lock:
            genai.configure(api_key=self._config.api_key.get_secret_value())
            model = self._model(system_prompt, temperature, max_tokens)
            return await model.generate_content_async(
                self._contents(messages),
                stream=stream,
            )

    async def _complete(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, Optional[TokenUsage]]:
        response = await self._generate(
            system_prompt, messages, temperature, max_tokens, stream=False
        )
        return _text(response).strip(), _usage(response)

    async def _stream_tokens(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[RawStreamItem]:
        response = await self._generate(
            system_prompt, messages, temperature, max_tokens, stream=True
        )
        usage = None
        async for chunk in response:
            text = _text(chunk)
            if text:
                yield text
            usage = _usage(chunk) or usage
        if usage is not None:
            yield usage

    def _translate_error(self, error: Exception) -> GenerationError:
        provider = self.provider.value
        message = str(error)

        if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
            return AuthenticationError(
                "Invalid API key or insufficient permissions",
                provider=provider,
                code="auth_error",
            )
        if isinstance(error, google_exceptions.InvalidArgument) and "API key" in message:
            return AuthenticationError("Invalid API key", provider=provider, code="auth_error")
        if isinstance(error, google_exceptions.ResourceExhausted):
            return RateLimitError(
                "Rate limit exceeded. Please try again later.",
                provider=provider,
                code="rate_limit",
            )
        if isinstance(error, google_exceptions.NotFound):
            return ModelNotFoundError(
                "Model not found. Check the model name.",
                provider=provider,
                code="model_not_found",
            )
        if isinstance(error, google_exceptions.DeadlineExceeded):
            return GenerationTimeoutError(message, provider=provider, code="timeout")
        if isinstance(error, (
            google_exceptions.ServiceUnavailable,
            google_exceptions.InternalServerError,
        )):
            return ProviderUnavailableError(message, provider=provider, code="server_error")
        if isinstance(error, (
            genai.types.BlockedPromptException,
            genai.types.StopCandidateException,
        )):
            return ContentFilterError(
                "The request was blocked by the provider's safety filter",
                provider=provider,
                code="content_filter",
            )
        return GenerationError(message, provider=provider, code="unknown")
