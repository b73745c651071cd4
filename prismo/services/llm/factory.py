"""Provider client factory."""

from prismo.errors import ConfigurationError
from prismo.models.settings import AIProvider, ProviderConfig
from prismo.services.llm.anthropic_client import AnthropicClient
from prismo.services.llm.base import LLMClient
from prismo.services.llm.gemini_client import GeminiClient
from prismo.services.llm.openai_client import AzureOpenAIClient, OpenAIClient


CLIENTS: dict[AIProvider, type[LLMClient]] = {
    AIProvider.AZURE_OPENAI: AzureOpenAIClient,
    AIProvider.OPENAI: OpenAIClient,
    AIProvider.ANTHROPIC: AnthropicClient,
    AIProvider.GEMINI: GeminiClient,
}

# Used when the user saved no model name
DEFAULT_MODELS: dict[AIProvider, str] = {
    AIProvider.OPENAI: "gpt-4o-mini",
    AIProvider.ANTHROPIC: "claude-sonnet-4-5",
    AIProvider.GEMINI: "gemini-1.5-flash",
}


def create_llm_client(config: ProviderConfig) -> LLMClient:
    """
    Build the client for config.provider.

    Raises:
        ConfigurationError: Unknown provider, or Azure without endpoint
    """
    client_class = CLIENTS.get(config.provider)
    if client_class is None:
        raise ConfigurationError(f"Unsupported AI provider: {config.provider}")
    if config.provider == AIProvider.AZURE_OPENAI and not config.model_endpoint:
        raise ConfigurationError("Azure OpenAI requires a model endpoint")
    return client_class(config)
