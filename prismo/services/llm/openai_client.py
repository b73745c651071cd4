"""
OpenAI and Azure OpenAI clients.

Both speak the Chat Completions API through the official `openai` SDK;
Azure differs only in how the client is constructed (endpoint +
deployment + api-version) and in not supporting usage on streams for
the api-version we pin.
"""

from typing import AsyncIterator, Optional

import openai

from prismo.models.chat import TokenUsage
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
)


AZURE_API_VERSION = "2024-02-15-preview"


def translate_openai_error(error: Exception, provider: str) -> GenerationError:
    """Map openai SDK exceptions to typed generation errors."""
    message = getattr(error, "message", None) or str(error)

    # APITimeoutError subclasses APIConnectionError - check it first
    if isinstance(error, openai.APITimeoutError):
        return GenerationTimeoutError(message, provider=provider, code="timeout")
    if isinstance(error, openai.APIConnectionError):
        return ProviderUnavailableError(message, provider=provider, code="connection_error")
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthenticationError(
            "Invalid API key or insufficient permissions",
            provider=provider,
            code="auth_error",
        )
    if isinstance(error, openai.RateLimitError):
        return RateLimitError(
            "Rate limit exceeded. Please try again later.",
            provider=provider,
            code="rate_limit",
        )
    if isinstance(error, openai.NotFoundError):
        return ModelNotFoundError(
            "Model or deployment not found. Check the model name.",
            provider=provider,
            code="model_not_found",
        )
    if isinstance(error, openai.BadRequestError) and getattr(error, "code", None) == "content_filter":
        return ContentFilterError(
            "The request was blocked by the provider's content filter",
            provider=provider,
            code="content_filter",
        )
    if isinstance(error, openai.InternalServerError):
        return ProviderUnavailableError(message, provider=provider, code="server_error")
    if isinstance(error, openai.APIStatusError):
        return GenerationError(
            message,
            provider=provider,
            code=f"http_{error.status_code}",
            retryable=error.status_code >= 500,
        )
    return GenerationError(message, provider=provider, code="unknown")


def _usage(raw) -> Optional[TokenUsage]:
    if raw is None:
        return None
    return TokenUsage(
        prompt_tokens=raw.prompt_tokens or 0,
        completion_tokens=raw.completion_tokens or 0,
        total_tokens=raw.total_tokens or 0,
    )


class OpenAIClient(LLMClient):
    """Client for OpenAI and OpenAI-compatible endpoints."""

    provider = AIProvider.OPENAI
    include_stream_usage = True

    def __init__(self, config: ProviderConfig, client: Optional[openai.AsyncOpenAI] = None):
        super().__init__(config)
        self._owns_client = client is None
        self._client = client or self._build_client(config)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    def _build_client(self, config: ProviderConfig) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=config.api_key.get_secret_value(),
            base_url=config.model_endpoint or None,
            max_retries=0,
        )

    def _messages(self, system_prompt: str, messages: list[PromptMessage]) -> list[dict]:
        return [{"role": "system", "content": system_prompt}] + [
            {"role": m.role.value, "content": m.content} for m in messages
        ]

    async def _complete(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, Optional[TokenUsage]]:
        response = await self._client.chat.completions.create(
            model=self.model_name,
            messages=self._messages(system_prompt, messages),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content if response.choices else ""
        return content or "", _usage(response.usage)

    async def _stream_tokens(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[RawStreamItem]:
        extra = {}
        if self.include_stream_usage:
            extra["stream_options"] = {"include_usage": True}

        stream = await self._client.chat.completions.create(
            model=self.model_name,
            messages=self._messages(system_prompt, messages),
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
            **extra,
        )
        # Closing the stream releases the HTTP response on abort or timeout
        async with stream:
            async for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield delta
                usage = _usage(getattr(chunk, "usage", None))
                if usage is not None:
                    yield usage

    def _translate_error(self, error: Exception) -> GenerationError:
        return translate_openai_error(error, self.provider.value)


class AzureOpenAIClient(OpenAIClient):
    """
    Client for Azure OpenAI deployments.

    model_name is the deployment name; model_endpoint is required.
    """

    provider = AIProvider.AZURE_OPENAI
    include_stream_usage = False

    def _build_client(self, config: ProviderConfig) -> openai.AsyncAzureOpenAI:
        return openai.AsyncAzureOpenAI(
            api_key=config.api_key.get_secret_value(),
            azure_endpoint=(config.model_endpoint or "").rstrip("/"),
            azure_deployment=config.model_name,
            api_version=AZURE_API_VERSION,
            max_retries=0,
        )
