"""
Tests for the HTTP API

Test strategy:
1. Every error leaves the API as {"error": {"type", "message"}} with a mapped status
2. Errors before the first stream event are plain HTTP errors
3. The plaintext API key never appears in any response
"""

import pytest

from conftest import (
    OTHER_USER_ID,
    TEST_API_KEY,
    count_message_rows,
    enable_ai_over_http,
    read_sse,
    user_headers,
)
from prismo.api import RateLimiter, RateLimitExceededError
from prismo.services.llm import RateLimitError


FOOD_QUESTION = "How much did I spend on food this month?"


def chat(client, message=FOOD_QUESTION, conversation_id=None, stream=True, user_id=None):
    body = {"message": message, "stream": stream}
    if conversation_id:
        body["conversationId"] = conversation_id
    headers = user_headers(user_id) if user_id else user_headers()
    return client.post("/api/ai/chat", json=body, headers=headers)


def error_of(response) -> dict:
    return response.json()["error"]


# ============================================================================
# RATE LIMITER
# ============================================================================

class TestRateLimiter:
    """Tests for the sliding window limiter."""

    def test_window_slides(self):
        """Test that old hits fall out of the window."""
        now = [0.0]
        limiter = RateLimiter(2, clock=lambda: now[0])
        limiter.check("u")
        limiter.check("u")
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.check("u")
        assert exc_info.value.retry_after == 60.0

        now[0] = 60.0
        limiter.check("u")
        assert limiter.remaining("u") == 1

    def test_users_are_independent(self):
        """Test that one user's traffic never limits another."""
        limiter = RateLimiter(1, clock=lambda: 0.0)
        limiter.check("a")
        limiter.check("b")
        assert limiter.remaining("a") == 0

    def test_idle_users_are_forgotten(self):
        """Test that users whose window emptied hold no memory."""
        now = [0.0]
        limiter = RateLimiter(5, clock=lambda: now[0])
        for user_id in ("a", "b", "c"):
            limiter.check(user_id)
        assert set(limiter._hits) == {"a", "b", "c"}

        now[0] = 61.0
        assert limiter.remaining("a") == 5
        assert "a" not in limiter._hits

        limiter.check("d")
        assert set(limiter._hits) == {"d"}
        assert limiter.remaining("nobody") == 5
        assert "nobody" not in limiter._hits


# ============================================================================
# IDENTITY AND ERRORS
# ============================================================================

class TestErrors:
    """Tests for error envelopes and status mapping."""

    def test_missing_user_header(self, api_client):
        """Test that every route needs a caller identity."""
        response = api_client.get("/api/ai/settings")
        assert response.status_code == 401
        assert error_of(response)["type"] == "Unauthorized"

    def test_invalid_settings_body(self, api_client):
        """Test that schema violations are 422 ValidationError."""
        response = api_client.post(
            "/api/ai/settings", json={"relevanceThreshold": 0.3}, headers=user_headers()
        )
        assert response.status_code == 422
        assert error_of(response)["type"] == "ValidationError"
        assert "relevanceThreshold" in error_of(response)["message"]

    def test_health(self, api_client):
        """Test the health endpoint."""
        response = api_client.get("/health")
        assert response.json() == {"status": "ok", "database": True}


# ============================================================================
# SETTINGS
# ============================================================================

class TestSettingsRoutes:
    """Tests for the settings routes."""

    def test_defaults(self, api_client):
        """Test camelCase defaults for a new user."""
        body = api_client.get("/api/ai/settings", headers=user_headers()).json()
        assert body["aiEnabled"] is False
        assert body["provider"] == "azure_openai"
        assert body["hasApiKey"] is False
        assert body["dataAccess"]["taxData"] is True

    def test_key_never_returned(self, api_client):
        """Test that no settings response carries the plaintext key."""
        saved = api_client.post(
            "/api/ai/settings", json={"apiKey": TEST_API_KEY}, headers=user_headers()
        )
        fetched = api_client.get("/api/ai/settings", headers=user_headers())

        for response in (saved, fetched):
            assert response.status_code == 200
            assert TEST_API_KEY not in response.text
            body = response.json()
            assert body["hasApiKey"] is True
            assert body["maskedApiKey"].endswith(TEST_API_KEY[-4:])
            assert "apiKey" not in body
            assert "encryptedApiKey" not in body

    def test_clear_key(self, api_client):
        """Test that an empty apiKey removes the key."""
        enable_ai_over_http(api_client)
        body = api_client.post(
            "/api/ai/settings", json={"apiKey": ""}, headers=user_headers()
        ).json()
        assert body["hasApiKey"] is False
        assert body["aiEnabled"] is True

    def test_reset(self, api_client):
        """Test DELETE /settings."""
        enable_ai_over_http(api_client)
        body = api_client.delete("/api/ai/settings", headers=user_headers()).json()
        assert body["aiEnabled"] is False
        assert body["hasApiKey"] is False

    def test_connection(self, api_client):
        """Test a connection test with a candidate key."""
        response = api_client.post(
            "/api/ai/test-connection",
            json={"provider": "openai", "apiKey": TEST_API_KEY},
            headers=user_headers(),
        )
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert TEST_API_KEY not in response.text
        settings = api_client.get("/api/ai/settings", headers=user_headers()).json()
        assert settings["hasApiKey"] is False


# ============================================================================
# CHAT
# ============================================================================

class TestChatRoute:
    """Tests for POST /chat."""

    def test_ai_disabled(self, api_client):
        """Test that a disabled assistant is 412 and creates no conversation."""
        response = chat(api_client)
        assert response.status_code == 412
        assert error_of(response)["type"] == "ConfigurationError"
        listed = api_client.get("/api/ai/conversations", headers=user_headers()).json()
        assert listed == []

    def test_stream(self, api_client):
        """Test SSE headers and event order of a streamed turn."""
        enable_ai_over_http(api_client)
        response = chat(api_client)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = read_sse(response)
        assert [e["type"] for e in events] == ["start", "chunk", "chunk", "metadata", "done"]
        assert events[3]["dataSources"] == ["transactions"]
        assert events[4]["tokensUsed"] == 940
        assert TEST_API_KEY not in response.text

        conversation_id = events[0]["conversationId"]
        detail = api_client.get(
            f"/api/ai/conversations/{conversation_id}", headers=user_headers()
        ).json()
        assert detail["totalMessages"] == 2
        assert detail["messages"][1]["dataSources"] == ["transactions"]
        assert isinstance(detail["messages"][1]["confidenceScore"], float)

    def test_non_stream(self, api_client):
        """Test the JSON reply of a non-streamed turn."""
        enable_ai_over_http(api_client)
        response = chat(api_client, stream=False)
        assert response.status_code == 200
        body = response.json()
        assert body["conversationId"]
        assert body["message"]["content"].startswith("You spent")
        assert body["message"]["metadata"]["dataSources"] == ["transactions"]

    def test_provider_error_mid_stream(self, api_client, script):
        """Test that a 429 from the provider ends the stream with one error event."""
        enable_ai_over_http(api_client)
        script.error = RateLimitError("Rate limit exceeded", provider="openai")
        script.error_after = 1

        response = chat(api_client)
        assert response.status_code == 200
        events = read_sse(response)
        assert [e["type"] for e in events] == ["start", "chunk", "error"]
        assert events[-1]["errorType"] == "RateLimitError"
        assert api_client.get("/api/ai/conversations", headers=user_headers()).json() == []

    def test_provider_error_without_stream(self, api_client, script):
        """Test status mapping of provider errors on the JSON path."""
        enable_ai_over_http(api_client)
        script.error = RateLimitError("Rate limit exceeded", provider="openai")
        response = chat(api_client, stream=False)
        assert response.status_code == 429
        assert error_of(response)["type"] == "RateLimitError"

    def test_empty_message(self, api_client):
        """Test that a blank message is a 422 before any stream starts."""
        enable_ai_over_http(api_client)
        response = chat(api_client, "  ")
        assert response.status_code == 422
        assert error_of(response)["type"] == "ChatValidationError"

    def test_unknown_conversation(self, api_client):
        """Test that posting into a missing conversation is rejected."""
        enable_ai_over_http(api_client)
        response = chat(api_client, conversation_id="nope")
        assert response.status_code == 422

    def test_busy_conversation(self, api_client):
        """Test that a conversation with a running turn answers 409."""
        enable_ai_over_http(api_client)
        conversation_id = read_sse(chat(api_client))[0]["conversationId"]
        locks = api_client.app.state.components.orchestrator.locks

        api_client.portal.call(locks.acquire, conversation_id)
        try:
            response = chat(api_client, "again", conversation_id)
        finally:
            api_client.portal.call(locks.release, conversation_id)
        assert response.status_code == 409
        assert error_of(response)["type"] == "TurnInProgressError"

    def test_rate_limited(self, api_client):
        """Test 429 with Retry-After once the window is full."""
        enable_ai_over_http(api_client)
        api_client.app.state.rate_limiter = RateLimiter(1)
        assert chat(api_client).status_code == 200

        response = chat(api_client)
        assert response.status_code == 429
        assert error_of(response)["type"] == "RateLimitExceededError"
        assert int(response.headers["retry-after"]) >= 1


# ============================================================================
# CONVERSATIONS
# ============================================================================

class TestConversationRoutes:
    """Tests for conversation management."""

    def test_create_rename_archive(self, api_client):
        """Test the conversation life cycle short of deletion."""
        created = api_client.post(
            "/api/ai/conversations", json={"title": "Budget talk"}, headers=user_headers()
        )
        assert created.status_code == 201
        conversation_id = created.json()["id"]

        renamed = api_client.patch(
            f"/api/ai/conversations/{conversation_id}",
            json={"title": "Food budget"},
            headers=user_headers(),
        )
        assert renamed.json()["title"] == "Food budget"

        api_client.patch(
            f"/api/ai/conversations/{conversation_id}",
            json={"isArchived": True},
            headers=user_headers(),
        )
        assert api_client.get("/api/ai/conversations", headers=user_headers()).json() == []
        archived = api_client.get(
            "/api/ai/conversations", params={"includeArchived": "true"}, headers=user_headers()
        ).json()
        assert [c["id"] for c in archived] == [conversation_id]

    def test_transcript_only_grows(self, api_client):
        """Test that repeated reads never lose or change earlier messages."""
        enable_ai_over_http(api_client)
        conversation_id = chat(api_client, stream=False).json()["conversationId"]
        url = f"/api/ai/conversations/{conversation_id}"

        before = api_client.get(url, headers=user_headers()).json()["messages"]
        chat(api_client, "And budgets?", conversation_id, stream=False)
        after = api_client.get(url, headers=user_headers()).json()["messages"]

        assert len(after) == len(before) + 2
        assert [m["content"] for m in after[: len(before)]] == [m["content"] for m in before]

    def test_delete_removes_all_messages(self, api_client, db_path):
        """Test that deleting a ten-message conversation leaves nothing behind."""
        enable_ai_over_http(api_client)
        conversation_id = chat(api_client, stream=False).json()["conversationId"]
        for i in range(4):
            chat(api_client, f"Follow-up {i}", conversation_id, stream=False)
        url = f"/api/ai/conversations/{conversation_id}"
        assert api_client.get(url, headers=user_headers()).json()["totalMessages"] == 10

        response = api_client.delete(url, headers=user_headers())
        assert response.json() == {"success": True}

        missing = api_client.get(url, headers=user_headers())
        assert missing.status_code == 404
        assert error_of(missing)["type"] == "NotFoundError"
        assert count_message_rows(db_path, conversation_id) == 0

    def test_other_users_conversation_is_not_found(self, api_client):
        """Test that conversations are private to their owner."""
        created = api_client.post(
            "/api/ai/conversations", json={}, headers=user_headers()
        ).json()
        url = f"/api/ai/conversations/{created['id']}"
        assert api_client.get(url, headers=user_headers(OTHER_USER_ID)).status_code == 404
        assert api_client.delete(url, headers=user_headers(OTHER_USER_ID)).status_code == 404
        assert api_client.get(url, headers=user_headers()).status_code == 200


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
