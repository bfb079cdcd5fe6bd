"""
Provider selection.

Maps the `provider` configuration option to a provider class.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from ..exceptions import InvalidConfigurationError
from .base import BaseLLMProvider, LLMProviderConfig
from .rate_limit import EndpointRateLimiter

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    """Supported providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"

    @classmethod
    def parse(cls, value: str | LLMProvider) -> LLMProvider:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidConfigurationError(
                f"Unknown provider: {value!r} "
                f"(expected one of: {', '.join(p.value for p in cls)})"
            ) from None


# Conventional API key variable per provider
API_KEY_ENV_VARS = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    LLMProvider.GOOGLE: "GOOGLE_API_KEY",
}

DEFAULT_MODELS = {
    LLMProvider.OPENAI: "gpt-4o-mini",
    LLMProvider.ANTHROPIC: "claude-3-5-haiku-latest",
    LLMProvider.GOOGLE: "gemini-2.0-flash",
}


def create_provider(
    provider: str | LLMProvider,
    config: LLMProviderConfig,
    rate_limiter: Optional[EndpointRateLimiter] = None,
) -> BaseLLMProvider:
    """Instantiate the provider adapter for `provider`.

    SDK modules are imported here, so only the selected provider's SDK
    needs to be installed.

    Raises:
        InvalidConfigurationError: For unknown providers or bad settings
        ImportError: If the provider's SDK is missing
    """
    kind = LLMProvider.parse(provider)

    if kind is LLMProvider.OPENAI:
        from .openai import OpenAIProvider

        provider_cls = OpenAIProvider
    elif kind is LLMProvider.ANTHROPIC:
        from .anthropic import AnthropicProvider

        provider_cls = AnthropicProvider
    else:
        from .google import GoogleProvider

        provider_cls = GoogleProvider

    logger.info(f"Using {kind.value} provider with model {config.model}")
    return provider_cls(config, rate_limiter)
