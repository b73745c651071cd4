"""
Anthropic client.

The Messages API takes the system prompt as a separate parameter and
requires strictly alternating user/assistant turns, so history is merged
before sending.
"""

from typing import AsyncIterator, Optional

import anthropic

from prismo.models.chat import MessageRole, TokenUsage
from prismo.models.settings import AIProvider, ProviderConfig
from prismo.services.llm.base import (
    AuthenticationError,
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


def _usage(raw) -> Optional[TokenUsage]:
    if raw is None:
        return None
    prompt = raw.input_tokens or 0
    completion = raw.output_tokens or 0
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
    )


class AnthropicClient(LLMClient):
    """Client for Anthropic (and Anthropic-compatible) endpoints."""

    provider = AIProvider.ANTHROPIC

    def __init__(self, config: ProviderConfig, client: Optional[anthropic.AsyncAnthropic] = None):
        super().__init__(config)
        self._owns_client = client is None
        self._client = client or anthropic.AsyncAnthropic(
            api_key=config.api_key.get_secret_value(),
            base_url=config.model_endpoint or None,
            max_retries=0,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    def _messages(self, messages: list[PromptMessage]) -> list[dict]:
        # System messages in history are folded into the user side
        conversational = [
            PromptMessage(
                role=MessageRole.USER if m.role == MessageRole.SYSTEM else m.role,
                content=m.content,
            )
            for m in messages
        ]
        return [
            {"role": m.role.value, "content": m.content}
            for m in merge_consecutive(conversational)
        ]

    async def _complete(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, Optional[TokenUsage]]:
        response = await self._client.messages.create(
            model=self.model_name,
            system=system_prompt,
            messages=self._messages(messages),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return text, _usage(response.usage)

    async def _stream_tokens(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[RawStreamItem]:
        async with self._client.messages.stream(
            model=self.model_name,
            system=system_prompt,
            messages=self._messages(messages),
            temperature=temperature,
            max_tokens=max_tokens,
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text
            final = await stream.get_final_message()
            usage = _usage(final.usage)
            if usage is not None:
                yield usage

    def _translate_error(self, error: Exception) -> GenerationError:
        provider = self.provider.value
        message = getattr(error, "message", None) or str(error)

        if isinstance(error, anthropic.APITimeoutError):
            return GenerationTimeoutError(message, provider=provider, code="timeout")
        if isinstance(error, anthropic.APIConnectionError):
            return ProviderUnavailableError(message, provider=provider, code="connection_error")
        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return AuthenticationError(
                "Invalid API key or insufficient permissions",
                provider=provider,
                code="auth_error",
            )
        if isinstance(error, anthropic.RateLimitError):
            return RateLimitError(
                "Rate limit exceeded. Please try again later.",
                provider=provider,
                code="rate_limit",
            )
        if isinstance(error, anthropic.NotFoundError):
            return ModelNotFoundError(
                "Model not found. Check the model name.",
                provider=provider,
                code="model_not_found",
            )
        if isinstance(error, anthropic.APIStatusError):
            # 529 = overloaded
            if error.status_code >= 500:
                return ProviderUnavailableError(
                    message, provider=provider, code=f"http_{error.status_code}"
                )
            return GenerationError(message, provider=provider, code=f"http_{error.status_code}")
        return GenerationError(message, provider=provider, code="unknown")
