"""LLM provider adapters."""

from .base import BaseLLMProvider, LLMProviderConfig, split_into_chunks
from .factory import API_KEY_ENV_VARS, DEFAULT_MODELS, LLMProvider, create_provider
from .rate_limit import EndpointLimit, EndpointRateLimiter, parse_reset_seconds

__all__ = [
    "API_KEY_ENV_VARS",
    "BaseLLMProvider",
    "DEFAULT_MODELS",
    "EndpointLimit",
    "EndpointRateLimiter",
    "LLMProvider",
    "LLMProviderConfig",
    "create_provider",
    "parse_reset_seconds",
    "split_into_chunks",
]
