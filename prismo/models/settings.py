"""
AI Settings Models

One AISettings record exists per user. It decides:
- whether the assistant may run at all (ai_enabled)
- which provider/model answers
- how aggressively retrieval is corrected (CRAG tuning)
- which financial data sources may be read (data_access)

DESIGN DECISION: The API key is a write-only field.
AISettings (internal) carries only the ciphertext, AISettingsView (what
any read path returns) carries only a masked form and a presence flag.
The plaintext key exists solely inside ProviderConfig, as a SecretStr,
for the duration of one provider call.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel


# Token tiers offered to users
MAX_TOKEN_TIERS = (1024, 2048, 4096, 8192)


class CamelModel(BaseModel):
    """Base for models that cross the HTTP boundary (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ============================================================================
# ENUMS
# ============================================================================

class AIProvider(str, Enum):
    """Supported model providers."""
    AZURE_OPENAI = "azure_openai"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


class DataSource(str, Enum):
    """
    Financial data sources the assistant can read.

    Declaration order is the canonical source order used for routing
    and tie-breaking.
    """
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"
    GOALS = "goals"
    SUBSCRIPTIONS = "subscriptions"
    CREDIT_CARDS = "credit_cards"
    TAX = "tax"
    INCOME = "income"
    FORECASTS = "forecasts"


# ============================================================================
# DATA ACCESS PERMISSIONS
# ============================================================================

class DataAccess(CamelModel):
    """
    Per-source read permissions.

    CRITICAL: A source switched off here is never queried, no matter
    what the question seems to need.
    """

    transactions: bool = True
    budgets: bool = True
    goals: bool = True
    subscriptions: bool = True
    credit_cards: bool = True
    tax_data: bool = True
    income: bool = True
    forecasts: bool = True

    def allows(self, source: DataSource) -> bool:
        return getattr(self, _PERMISSION_FIELDS[source])

    def enabled_sources(self) -> list[DataSource]:
        """Enabled sources in canonical order."""
        return [source for source in DataSource if self.allows(source)]


_PERMISSION_FIELDS = {
    DataSource.TRANSACTIONS: "transactions",
    DataSource.BUDGETS: "budgets",
    DataSource.GOALS: "goals",
    DataSource.SUBSCRIPTIONS: "subscriptions",
    DataSource.CREDIT_CARDS: "credit_cards",
    DataSource.TAX: "tax_data",
    DataSource.INCOME: "income",
    DataSource.FORECASTS: "forecasts",
}


def _check_token_tier(v: Optional[int]) -> Optional[int]:
    if v is not None and v not in MAX_TOKEN_TIERS:
        raise ValueError(f"max_tokens must be one of {MAX_TOKEN_TIERS}")
    return v


# ============================================================================
# SETTINGS RECORDS
# ============================================================================

class AISettingsBase(CamelModel):
    """Fields shared by the stored record and its public view."""

    model_config = ConfigDict(str_strip_whitespace=True)

    ai_enabled: bool = Field(
        default=False,
        description="Master switch - no chat turn starts while this is off"
    )
    provider: AIProvider = Field(
        default=AIProvider.AZURE_OPENAI,
        description="Which provider answers"
    )
    model_endpoint: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Provider endpoint URL (required for Azure)"
    )
    model_name: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Model or deployment name"
    )
    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
    )
    max_tokens: int = Field(
        default=2048,
        description="Response token limit, one of MAX_TOKEN_TIERS"
    )

    # CRAG tuning
    enable_crag: bool = True
    relevance_threshold: float = Field(
        default=0.7,
        ge=0.5,
        le=0.95,
        description="Confidence below which the correction cycle runs"
    )
    max_retrieval_docs: int = Field(
        default=10,
        ge=1,
        le=50,
    )
    enable_web_search_fallback: bool = False

    # Privacy
    data_access: DataAccess = Field(default_factory=DataAccess)
    anonymize_vendors: bool = False
    exclude_sensitive_categories: list[str] = Field(default_factory=list)

    @field_validator('max_tokens')
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        return _check_token_tier(v)


class AISettings(AISettingsBase):
    """
    Stored settings record.

    Internal only - never returned from an API route.
    """

    user_id: str
    encrypted_api_key: Optional[str] = Field(default=None, repr=False)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_api_key(self) -> bool:
        return bool(self.encrypted_api_key)


class AISettingsView(AISettingsBase):
    """What read paths return: the settings with the key masked."""

    has_api_key: bool = False
    masked_api_key: Optional[str] = None
    updated_at: Optional[datetime] = None


class AISettingsUpdate(CamelModel):
    """
    Partial settings update.

    Only fields present in the request are written. For api_key:
    - omitted (or null): stored key untouched
    - "": stored key cleared
    - anything else: re-encrypted and stored
    """

    ai_enabled: Optional[bool] = None
    provider: Optional[AIProvider] = None
    model_endpoint: Optional[str] = Field(default=None, max_length=500)
    model_name: Optional[str] = Field(default=None, max_length=100)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_tokens: Optional[int] = None
    enable_crag: Optional[bool] = None
    relevance_threshold: Optional[float] = Field(default=None, ge=0.5, le=0.95)
    max_retrieval_docs: Optional[int] = Field(default=None, ge=1, le=50)
    enable_web_search_fallback: Optional[bool] = None
    data_access: Optional[DataAccess] = None
    anonymize_vendors: Optional[bool] = None
    exclude_sensitive_categories: Optional[list[str]] = None
    api_key: Optional[str] = Field(default=None, repr=False)

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator('max_tokens')
    @classmethod
    def validate_max_tokens(cls, v: Optional[int]) -> Optional[int]:
        return _check_token_tier(v)

    def settings_values(self) -> dict:
        """Fields explicitly sent, excluding the API key."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "api_key" and getattr(self, name) is not None
        }


# ============================================================================
# PROVIDER CONFIG
# ============================================================================

class ProviderConfig(BaseModel):
    """
    Everything a provider client needs for one call.

    Built by the SettingsService after decryption; never persisted.
    """

    provider: AIProvider
    model_name: str
    api_key: SecretStr
    model_endpoint: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    max_tokens: int = 2048


class ConnectionTestRequest(CamelModel):
    """Candidate provider config for a connection test."""

    provider: AIProvider
    model_endpoint: Optional[str] = None
    model_name: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)


class ConnectionTestResult(CamelModel):
    """Outcome of a connection test. Never includes the key."""

    success: bool
    message: str
    latency_ms: Optional[int] = None
    error_type: Optional[str] = None
