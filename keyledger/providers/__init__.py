"""Provider clients for key listing, usage and spend reporting."""

from keyledger.providers.anthropic_provider import AnthropicProviderClient
from keyledger.providers.base import CostQuery, CredentialError, KeyFilters, ProviderClient, UsageQuery
from keyledger.providers.openai_provider import OpenAIProviderClient
from keyledger.providers.openrouter_provider import OpenRouterProviderClient
from keyledger.providers.volcengine_provider import VolcengineProviderClient

PROVIDER_CLIENTS: dict[str, type[ProviderClient]] = {
    "openai": OpenAIProviderClient,
    "anthropic": AnthropicProviderClient,
    "openrouter": OpenRouterProviderClient,
    "volcengine": VolcengineProviderClient,
}


def build_provider_client(platform: str, credential: str) -> ProviderClient:
    """Construct the client for ``platform``; raises ``CredentialError`` on a bad credential."""
    client_cls = PROVIDER_CLIENTS.get(platform)
    if client_cls is None:
        raise CredentialError(f"Unsupported platform: {platform}", platform=platform)
    return client_cls(credential)


__all__ = [
    "AnthropicProviderClient",
    "CostQuery",
    "CredentialError",
    "KeyFilters",
    "OpenAIProviderClient",
    "OpenRouterProviderClient",
    "PROVIDER_CLIENTS",
    "ProviderClient",
    "UsageQuery",
    "VolcengineProviderClient",
    "build_provider_client",
]
