"""
Model Invoker Base

DESIGN DECISION: One client class per provider behind a single interface.
The orchestrator never branches on provider - it asks the factory for a
client and calls complete() or stream().

The base class owns everything that must behave identically across
providers:
- stream event ordering (chunks in generation order, then exactly one
  done OR exactly one error, nothing after)
- the overall deadline of a call
- translation of SDK exceptions into the typed GenerationError family
- the token-usage fallback estimate

Subclasses only implement the raw provider calls.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Union

from pydantic import BaseModel, Field

from prismo.models.chat import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    MessageRole,
    StreamEvent,
    TokenUsage,
)
from prismo.models.settings import AIProvider, ConnectionTestResult, ProviderConfig


CONNECTION_TEST_PROMPT = 'Say "Connection successful" in exactly 2 words.'
CONNECTION_TEST_MAX_TOKENS = 10


# ============================================================================
# ERRORS
# ============================================================================

class GenerationError(Exception):
    """
    The provider call failed.

    Distinct from "no relevant data" - a GenerationError means there is
    no answer at all, and nothing may be persisted as if there were.
    """

    default_retryable = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.code = code
        self.retryable = self.default_retryable if retryable is None else retryable

    @property
    def error_type(self) -> str:
        return type(self).__name__


class AuthenticationError(GenerationError):
    """Invalid or revoked API key."""
    pass


class RateLimitError(GenerationError):
    """Provider returned 429."""
    default_retryable = True


class ProviderUnavailableError(GenerationError):
    """Network failure, 5xx, or provider overloaded."""
    default_retryable = True


class ModelNotFoundError(GenerationError):
    """Model or deployment name does not exist."""
    pass


class ContentFilterError(GenerationError):
    """Prompt or answer blocked by the provider's safety filter."""
    pass


class GenerationTimeoutError(GenerationError):
    """The call did not finish within the turn deadline."""
    default_retryable = True


# ============================================================================
# MESSAGES
# ============================================================================

class PromptMessage(BaseModel):
    """One entry of the conversation history sent to a provider."""

    role: MessageRole
    content: str


class Completion(BaseModel):
    """Result of a non-streaming call."""

    content: str
    usage: TokenUsage
    latency_ms: int = Field(ge=0)
    model: str


def merge_consecutive(messages: list[PromptMessage]) -> list[PromptMessage]:
    """
    Merge consecutive messages with the same role.

    Anthropic and Gemini reject two user (or two assistant) turns in a row,
    which happens when an earlier turn failed after its user message was shown.
    """
    merged: list[PromptMessage] = []
    for message in messages:
        if merged and merged[-1].role == message.role:
            merged[-1] = PromptMessage(
                role=message.role,
                content=f"{merged[-1].content}\n\n{message.content}",
            )
        else:
            merged.append(message)
    return merged


# Raw provider streams yield text deltas, optionally followed by usage
RawStreamItem = Union[str, TokenUsage]


# ============================================================================
# CLIENT INTERFACE
# ============================================================================

class LLMClient(ABC):
    """
    Abstract provider client.

    RESPONSIBILITIES:
    - Send system prompt + history to one provider
    - Report token usage and latency
    - Surface every failure as a GenerationError subclass
    - Own the SDK client it built; callers MUST aclose() it (or use
      `async with`) when the turn or connection test is over

    BOUNDARIES:
    - NEVER retries within a turn (the user may resubmit)
    - NEVER logs the API key or message content
    """

    provider: AIProvider

    def __init__(self, config: ProviderConfig):
        self._config = config

    @property
    def model_name(self) -> str:
        return self._config.model_name

    async def aclose(self) -> None:
        """Release the SDK client's connection pool. Safe to call twice."""
        pass

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ----- provider hooks -----

    @abstractmethod
    async def _complete(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, Optional[TokenUsage]]:
        """Single request/response call. Returns (text, usage or None)."""
        pass

    @abstractmethod
    def _stream_tokens(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[RawStreamItem]:
        """Async generator of text deltas, optionally ending with a TokenUsage."""
        pass

    @abstractmethod
    def _translate_error(self, error: Exception) -> GenerationError:
        """Map an SDK exception to the GenerationError family."""
        pass

    # ----- public API -----

    def _error(self, error: Exception) -> GenerationError:
        if isinstance(error, GenerationError):
            return error
        if isinstance(error, TimeoutError):
            return GenerationTimeoutError(
                "The model took too long to respond",
                provider=self.provider.value,
                code="timeout",
            )
        return self._translate_error(error)

    async def complete(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Completion:
        """
        Non-streaming call.

        Raises:
            GenerationError: Any provider, network or timeout failure
        """
        temperature = self._config.temperature if temperature is None else temperature
        max_tokens = max_tokens or self._config.max_tokens
        started = time.perf_counter()

        try:
            async with asyncio.timeout(timeout):
                content, usage = await self._complete(
                    system_prompt, messages, temperature, max_tokens
                )
        except Exception as e:
            raise self._error(e) from e

        if usage is None:
            usage = TokenUsage.estimate(
                system_prompt + "".join(m.content for m in messages), content
            )

        return Completion(
            content=content,
            usage=usage,
            latency_ms=int((time.perf_counter() - started) * 1000),
            model=self.model_name,
        )

    async def stream(
        self,
        system_prompt: str,
        messages: list[PromptMessage],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Streaming call.

        Yields ChunkEvents in generation order, then exactly one DoneEvent.
        On failure yields a single ErrorEvent and stops - no chunk ever
        follows an error, and no done follows an error.

        The timeout is one deadline for the whole stream, not per chunk.
        """
        temperature = self._config.temperature if temperature is None else temperature
        max_tokens = max_tokens or self._config.max_tokens
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        started = time.perf_counter()

        parts: list[str] = []
        usage: Optional[TokenUsage] = None
        error: Optional[GenerationError] = None

        tokens = self._stream_tokens(system_prompt, messages, temperature, max_tokens)
        try:
            while True:
                try:
                    async with asyncio.timeout_at(deadline):
                        item = await anext(tokens)
                except StopAsyncIteration:
                    break
                except Exception as e:
                    error = self._error(e)
                    break

                if isinstance(item, TokenUsage):
                    usage = item
                elif item:
                    parts.append(item)
                    yield ChunkEvent(content=item)
        finally:
            await tokens.aclose()

        if error is not None:
            yield ErrorEvent(
                message=str(error),
                error_type=error.error_type,
                retryable=error.retryable,
            )
            return

        if usage is None:
            usage = TokenUsage.estimate(
                system_prompt + "".join(m.content for m in messages), "".join(parts)
            )
        yield DoneEvent(
            tokens_used=usage.total_tokens,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            usage=usage,
        )

    async def test_connection(self) -> ConnectionTestResult:
        """
        Minimal live call to verify endpoint, model and key.

        Raises:
            GenerationError: If the provider rejects the call
        """
        completion = await self.complete(
            system_prompt="You are a connection test.",
            messages=[PromptMessage(role=MessageRole.USER, content=CONNECTION_TEST_PROMPT)],
            temperature=0.0,
            max_tokens=CONNECTION_TEST_MAX_TOKENS,
            timeout=30.0,
        )
        return ConnectionTestResult(
            success=True,
            message=f"Connected to {self.model_name}",
            latency_ms=completion.latency_ms,
        )
