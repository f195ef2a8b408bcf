"""Provider manager registry."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from agent_dispatch.providers.base import BaseProvider
from agent_dispatch.providers.claude_code import ClaudeCodeProvider
from agent_dispatch.providers.codex import CodexProvider
from agent_dispatch.providers.gemini_cli import GeminiCliProvider

LOG = logging.getLogger(__name__)

DEFAULT_REGISTRY: Dict[str, Type[BaseProvider]] = {
    "claude-code": ClaudeCodeProvider,
    "codex": CodexProvider,
    "gemini-cli": GeminiCliProvider,
}


class UnknownProviderError(RuntimeError):
    """Raised when a provider key is not registered."""


class ProviderManager:
    """Factory for provider instances keyed by provider name."""

    def __init__(self, registry: Optional[Dict[str, Type[BaseProvider]]] = None) -> None:
        self._registry: Dict[str, Type[BaseProvider]] = dict(registry or DEFAULT_REGISTRY)

    def register(self, provider_key: str, provider_cls: Type[BaseProvider]) -> None:
        self._registry[provider_key] = provider_cls

    def get_provider(self, provider_key: str) -> BaseProvider:
        if provider_key not in self._registry:
            raise UnknownProviderError(f"Provider '{provider_key}' is not registered.")
        return self._registry[provider_key]()

    def available_providers(self) -> Dict[str, bool]:
        availability = {}
        for key, provider_cls in self._registry.items():
            availability[key] = provider_cls().is_available()
        LOG.debug("Provider availability: %s", availability)
        return availability
