"""
Tests for provider client lifetimes

Test strategy:
1. A client closes the SDK client it built, never one it was handed
2. A streamed response is released when the consumer stops early
3. No network: OpenAI calls go through an httpx mock transport
"""

import json

import httpx
import openai
import pytest

from conftest import TEST_API_KEY
from prismo.models.chat import MessageRole, TokenUsage
from prismo.models.settings import AIProvider, ProviderConfig
from prismo.services.llm import PromptMessage, create_llm_client
from prismo.services.llm.openai_client import OpenAIClient


def config_for(provider: AIProvider, **values) -> ProviderConfig:
    defaults = {
        "provider": provider,
        "model_name": "gpt-4o-mini",
        "api_key": TEST_API_KEY,
    }
    defaults.update(values)
    return ProviderConfig(**defaults)


def sse_chunk(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def delta(content: str) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}],
    }


USAGE_CHUNK = {
    "id": "chatcmpl-1",
    "object": "chat.completion.chunk",
    "created": 0,
    "model": "gpt-4o-mini",
    "choices": [],
    "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
}


class TrackingStream(httpx.AsyncByteStream):
    """Response body that records whether it was closed."""

    def __init__(self, frames: list[bytes]):
        self.frames = frames
        self.closed = False

    async def __aiter__(self):
        for frame in self.frames:
            yield frame

    async def aclose(self):
        self.closed = True


def mocked_openai(body: TrackingStream) -> openai.AsyncOpenAI:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=body
        )

    return openai.AsyncOpenAI(
        api_key=TEST_API_KEY,
        base_url="http://provider.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


QUESTION = [PromptMessage(role=MessageRole.USER, content="How much on food?")]


class TestClientClosing:
    """Tests for releasing SDK connection pools."""

    @pytest.mark.parametrize("provider, values", [
        (AIProvider.OPENAI, {}),
        (AIProvider.AZURE_OPENAI, {"model_endpoint": "https://prismo.openai.azure.com"}),
        (AIProvider.ANTHROPIC, {"model_name": "claude-sonnet-4-5"}),
    ])
    async def test_owned_client_closed(self, provider, values):
        """Test that aclose() closes the SDK client the wrapper built."""
        client = create_llm_client(config_for(provider, **values))
        assert not client._client.is_closed()

        await client.aclose()
        assert client._client.is_closed()
        await client.aclose()

    async def test_async_with_closes(self):
        """Test the context manager form used by connection tests."""
        async with create_llm_client(config_for(AIProvider.OPENAI)) as client:
            sdk = client._client
        assert sdk.is_closed()

    async def test_injected_client_left_open(self):
        """Test that a client handed in by the caller stays the caller's."""
        sdk = openai.AsyncOpenAI(api_key=TEST_API_KEY, max_retries=0)
        try:
            client = OpenAIClient(config_for(AIProvider.OPENAI), client=sdk)
            await client.aclose()
            assert not sdk.is_closed()
        finally:
            await sdk.close()


class TestOpenAIStreaming:
    """Tests for streamed OpenAI responses."""

    async def test_chunks_and_usage(self):
        """Test deltas in order followed by the reported usage."""
        body = TrackingStream([
            sse_chunk(delta("RM ")), sse_chunk(delta("85.50")),
            sse_chunk(USAGE_CHUNK), b"data: [DONE]\n\n",
        ])
        sdk = mocked_openai(body)
        try:
            client = OpenAIClient(config_for(AIProvider.OPENAI), client=sdk)
            events = [event async for event in client.stream("system", QUESTION)]
        finally:
            await sdk.close()

        assert [e.type for e in events] == ["chunk", "chunk", "done"]
        assert "".join(e.content for e in events[:2]) == "RM 85.50"
        assert events[-1].usage == TokenUsage(prompt_tokens=12, completion_tokens=3, total_tokens=15)
        assert body.closed

    async def test_early_stop_releases_response(self):
        """Test that closing the stream after one chunk closes the HTTP response."""
        body = TrackingStream([
            sse_chunk(delta("RM ")), sse_chunk(delta("85.50")), b"data: [DONE]\n\n",
        ])
        sdk = mocked_openai(body)
        try:
            client = OpenAIClient(config_for(AIProvider.OPENAI), client=sdk)
            events = client.stream("system", QUESTION)
            first = await anext(events)
            await events.aclose()
        finally:
            await sdk.close()

        assert first.content == "RM "
        assert body.closed


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
