"""
Settings Service

The Settings Store of the assistant: per-user AI settings, the encrypted
provider key, and the connection test.

RESPONSIBILITIES:
- Read settings with the key MASKED (defaults when none were saved)
- Apply partial updates; apiKey is tri-state (omitted / "" / value)
- Build the ProviderConfig for a turn - the ONLY place a key is decrypted
- Test a candidate provider config without writing anything

CRITICAL: No return value of this service except ProviderConfig ever
carries the plaintext key, and ProviderConfig holds it as a SecretStr.
"""

from typing import Callable, Optional

import structlog

from prismo.audit import AuditLogger
from prismo.errors import ConfigurationError
from prismo.models.settings import (
    AIProvider,
    AISettings,
    AISettingsUpdate,
    AISettingsView,
    ConnectionTestRequest,
    ConnectionTestResult,
    ProviderConfig,
)
from prismo.security import KeyCipher
from prismo.services.llm import DEFAULT_MODELS, GenerationError, LLMClient, create_llm_client
from prismo.services.storage import SettingsStorageInterface


logger = structlog.get_logger(__name__)

ClientFactory = Callable[[ProviderConfig], LLMClient]


class SettingsService:
    """
    Per-user AI settings.

    All writes to ai_settings go through SettingsStorageInterface.upsert().
    """

    def __init__(
        self,
        storage: SettingsStorageInterface,
        cipher: KeyCipher,
        audit_logger: Optional[AuditLogger] = None,
        client_factory: ClientFactory = create_llm_client,
    ):
        self._storage = storage
        self._cipher = cipher
        self._audit = audit_logger or AuditLogger()
        self._client_factory = client_factory

    # ========================================================================
    # READS
    # ========================================================================

    async def get_record(self, user_id: str) -> AISettings:
        """Stored settings, or the defaults when the user never saved any."""
        record = await self._storage.get(user_id)
        return record or AISettings(user_id=user_id)

    def _view(self, record: AISettings) -> AISettingsView:
        return AISettingsView(
            **record.model_dump(
                include=set(AISettingsView.model_fields) - {"has_api_key", "masked_api_key"}
            ),
            has_api_key=record.has_api_key,
            masked_api_key=self._cipher.mask(record.encrypted_api_key),
        )

    async def get_settings(self, user_id: str) -> AISettingsView:
        return self._view(await self.get_record(user_id))

    # ========================================================================
    # WRITES
    # ========================================================================

    async def update_settings(self, user_id: str, update: AISettingsUpdate) -> AISettingsView:
        """
        Apply a partial update.

        Only fields present in the request are written. api_key:
        - omitted or null: the stored key is left untouched
        - "": the stored key is removed
        - any other value: encrypted and stored

        Raises:
            ConfigurationError: A key was sent but no encryption secret is configured
        """
        values = update.settings_values()
        api_key_action = None

        if "api_key" in update.model_fields_set and update.api_key is not None:
            if update.api_key == "":
                values["encrypted_api_key"] = None
                api_key_action = "cleared"
            else:
                values["encrypted_api_key"] = self._cipher.encrypt(update.api_key)
                api_key_action = "replaced"

        record = await self._storage.upsert(user_id, values)
        await self._audit.log_settings_updated(
            user_id=user_id,
            fields=sorted(k for k in values if k != "encrypted_api_key"),
            api_key_action=api_key_action,
        )
        return self._view(record)

    async def reset_settings(self, user_id: str) -> AISettingsView:
        """Delete the stored settings (and key); the defaults apply again."""
        deleted = await self._storage.delete(user_id)
        if deleted:
            await self._audit.log_settings_updated(
                user_id=user_id, fields=["*"], api_key_action="cleared"
            )
        return self._view(AISettings(user_id=user_id))

    # ========================================================================
    # PROVIDER CONFIG
    # ========================================================================

    def _build_config(
        self,
        provider: AIProvider,
        api_key: str,
        model_name: Optional[str],
        model_endpoint: Optional[str],
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> ProviderConfig:
        if provider == AIProvider.AZURE_OPENAI and not model_endpoint:
            raise ConfigurationError("Azure OpenAI requires a model endpoint")
        name = model_name or DEFAULT_MODELS.get(provider)
        if not name:
            raise ConfigurationError(f"A model or deployment name is required for {provider.value}")
        return ProviderConfig(
            provider=provider,
            model_name=name,
            api_key=api_key,
            model_endpoint=model_endpoint or None,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def resolve_provider_config(self, user_id: str) -> tuple[AISettings, ProviderConfig]:
        """
        Settings and decrypted provider config for one turn.

        Raises:
            ConfigurationError: AI disabled, no key stored, or incomplete provider settings
        """
        record = await self.get_record(user_id)
        if not record.ai_enabled:
            raise ConfigurationError(
                "The AI assistant is disabled. Enable it in AI settings."
            )
        if not record.has_api_key:
            raise ConfigurationError(
                "No API key configured. Add your provider API key in AI settings."
            )

        api_key = self._cipher.decrypt(record.encrypted_api_key)
        config = self._build_config(
            provider=record.provider,
            api_key=api_key,
            model_name=record.model_name,
            model_endpoint=record.model_endpoint,
            temperature=record.temperature,
            max_tokens=record.max_tokens,
        )
        return record, config

    # ========================================================================
    # CONNECTION TEST
    # ========================================================================

    async def test_connection(
        self,
        user_id: str,
        request: ConnectionTestRequest,
    ) -> ConnectionTestResult:
        """
        Minimal live call with a candidate config.

        Uses the key from the request, or the stored key when the request
        has none. NEVER writes settings.

        Raises:
            ConfigurationError: No key available, or incomplete provider settings
        """
        api_key = request.api_key
        if not api_key:
            record = await self.get_record(user_id)
            if not record.has_api_key:
                raise ConfigurationError("An API key is required to test the connection")
            api_key = self._cipher.decrypt(record.encrypted_api_key)

        config = self._build_config(
            provider=request.provider,
            api_key=api_key,
            model_name=request.model_name,
            model_endpoint=request.model_endpoint,
        )
        try:
            async with self._client_factory(config) as client:
                result = await client.test_connection()
        except GenerationError as e:
            logger.info("connection_test_failed", provider=request.provider.value, code=e.code)
            result = ConnectionTestResult(
                success=False,
                message=str(e),
                error_type=e.error_type,
            )

        await self._audit.log_connection_tested(
            user_id=user_id,
            provider=request.provider.value,
            success=result.success,
            latency_ms=result.latency_ms,
            error_type=result.error_type,
        )
        return result
