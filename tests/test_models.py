"""
Tests for Prismo models

Test strategy:
1. Bounds and tiers of the per-user AI settings
2. camelCase on the wire, snake_case in Python
3. Stream event framing and audit event shapes
"""

import json
from uuid import uuid4

import pytest
from pydantic import ValidationError

from prismo.models.audit import AuditEventBuilder, AuditEventType, AuditSeverity
from prismo.models.chat import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    MessageRole,
    NewMessage,
    StartEvent,
    TokenUsage,
    estimate_tokens,
)
from prismo.models.settings import (
    AIProvider,
    AISettings,
    AISettingsUpdate,
    DataAccess,
    DataSource,
)


class TestAISettings:
    """Tests for the stored settings record."""

    def test_defaults(self):
        """Test that a fresh record has the documented defaults."""
        settings = AISettings(user_id="u1")
        assert settings.ai_enabled is False
        assert settings.provider == AIProvider.AZURE_OPENAI
        assert settings.temperature == 0.7
        assert settings.max_tokens == 2048
        assert settings.enable_crag is True
        assert settings.relevance_threshold == 0.7
        assert settings.max_retrieval_docs == 10
        assert settings.enable_web_search_fallback is False
        assert settings.has_api_key is False

    def test_relevance_threshold_bounds(self):
        """Test that the threshold must stay within 0.5-0.95."""
        with pytest.raises(ValidationError):
            AISettings(user_id="u1", relevance_threshold=0.3)
        with pytest.raises(ValidationError):
            AISettings(user_id="u1", relevance_threshold=0.99)

    def test_max_tokens_must_be_a_tier(self):
        """Test that max_tokens only accepts the offered tiers."""
        assert AISettings(user_id="u1", max_tokens=8192).max_tokens == 8192
        with pytest.raises(ValidationError):
            AISettings(user_id="u1", max_tokens=3000)

    def test_max_retrieval_docs_bounds(self):
        """Test the 1-50 document range."""
        with pytest.raises(ValidationError):
            AISettings(user_id="u1", max_retrieval_docs=0)
        with pytest.raises(ValidationError):
            AISettings(user_id="u1", max_retrieval_docs=51)

    def test_repr_hides_encrypted_key(self):
        """Test that the ciphertext never shows up in repr."""
        settings = AISettings(user_id="u1", encrypted_api_key="c2VjcmV0")
        assert "c2VjcmV0" not in repr(settings)


class TestDataAccess:
    """Tests for per-source permissions."""

    def test_all_sources_enabled_by_default(self):
        """Test that every source is readable by default, in canonical order."""
        assert DataAccess().enabled_sources() == list(DataSource)

    def test_tax_flag_maps_to_tax_source(self):
        """Test that taxData controls the tax source."""
        access = DataAccess(tax_data=False)
        assert not access.allows(DataSource.TAX)
        assert DataSource.TAX not in access.enabled_sources()

    def test_camel_case_input(self):
        """Test that the wire names are accepted."""
        access = DataAccess.model_validate({"creditCards": False, "taxData": False})
        assert access.credit_cards is False
        assert access.tax_data is False


class TestAISettingsUpdate:
    """Tests for partial settings updates."""

    def test_only_sent_fields_are_values(self):
        """Test that unset fields are not written."""
        update = AISettingsUpdate.model_validate({"aiEnabled": True, "temperature": 0.2})
        assert update.settings_values() == {"ai_enabled": True, "temperature": 0.2}

    def test_api_key_is_not_a_settings_value(self):
        """Test that the key never goes through settings_values()."""
        update = AISettingsUpdate.model_validate({"apiKey": "sk-123456789012"})
        assert "api_key" in update.model_fields_set
        assert update.settings_values() == {}

    def test_empty_api_key_is_kept_as_empty(self):
        """Test that "" survives validation (it means: clear the key)."""
        update = AISettingsUpdate.model_validate({"apiKey": ""})
        assert update.api_key == ""

    def test_invalid_tier_rejected(self):
        """Test that tier validation also applies to updates."""
        with pytest.raises(ValidationError):
            AISettingsUpdate(max_tokens=1000)


class TestChatModels:
    """Tests for messages and tokens."""

    def test_user_message_cannot_carry_provenance(self):
        """Test that only assistant messages have retrieval metadata."""
        with pytest.raises(ValidationError):
            NewMessage(
                role=MessageRole.USER,
                content="hi",
                data_sources=[DataSource.TRANSACTIONS],
            )

    def test_assistant_message_with_provenance(self):
        """Test a complete assistant message."""
        message = NewMessage(
            role=MessageRole.ASSISTANT,
            content="You spent RM 85.50",
            data_sources=[DataSource.TRANSACTIONS],
            confidence_score=0.87,
            tokens_used=940,
        )
        assert message.data_sources == [DataSource.TRANSACTIONS]

    def test_empty_content_rejected(self):
        """Test that an empty message cannot be stored."""
        with pytest.raises(ValidationError):
            NewMessage(role=MessageRole.ASSISTANT, content="")

    def test_token_estimate_rounds_up(self):
        """Test the 4-characters-per-token estimate."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

        usage = TokenUsage.estimate("a" * 40, "b" * 9)
        assert usage.prompt_tokens == 10
        assert usage.completion_tokens == 3
        assert usage.total_tokens == 13


class TestStreamEvents:
    """Tests for SSE framing."""

    def test_sse_frame_format(self):
        """Test that an event is framed as data: {json} and a blank line."""
        frame = StartEvent(conversation_id="c1").to_sse()
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {"type": "start", "conversationId": "c1"}

    def test_events_use_camel_case(self):
        """Test wire names of done and error events."""
        done = json.loads(DoneEvent(tokens_used=10, processing_time_ms=5).to_sse()[6:])
        assert done["tokensUsed"] == 10
        assert done["processingTimeMs"] == 5

        error = json.loads(ErrorEvent(message="slow down", error_type="RateLimitError").to_sse()[6:])
        assert error == {
            "type": "error",
            "message": "slow down",
            "errorType": "RateLimitError",
            "retryable": False,
        }

    def test_chunk_keeps_whitespace(self):
        """Test that chunk content is passed through untouched."""
        assert ChunkEvent(content="  RM ").content == "  RM "


class TestAuditModels:
    """Tests for audit event construction."""

    def test_turn_started_event(self):
        """Test the turn_started event shape."""
        correlation_id = uuid4()
        event = AuditEventBuilder.turn_started(
            conversation_id="c1",
            user_id="u1",
            message_length=42,
            is_new_conversation=True,
            correlation_id=correlation_id,
        )
        assert event.event_type == AuditEventType.TURN_STARTED
        assert event.correlation_id == correlation_id
        assert event.details["is_new_conversation"] is True

    def test_turn_rejected_is_a_warning(self):
        """Test that rejected turns are logged as warnings with the error type."""
        event = AuditEventBuilder.turn_rejected(
            user_id="u1",
            reason="AI disabled",
            error_type="ConfigurationError",
            correlation_id=uuid4(),
        )
        assert event.severity == AuditSeverity.WARNING
        assert event.error_code == "ConfigurationError"

    def test_settings_updated_never_holds_the_key(self):
        """Test that the settings event records only the key action."""
        event = AuditEventBuilder.settings_updated(
            user_id="u1", fields=["temperature"], api_key_action="replaced"
        )
        log = event.to_log_dict()
        assert log["details"] == {"fields": ["temperature"], "api_key": "replaced"}
        assert log["event_type"] == "settings_updated"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
