"""
Configuration for murmur.

MurmurConfig gathers every recognised option in one dataclass. Values can
be given directly or loaded from the environment (and a `.env` file) with
`MurmurConfig.from_env()`.

Environment Variables:
- MURMUR_PROVIDER: openai | anthropic | google (default: openai)
- MURMUR_API_KEY: API key; falls back to OPENAI_API_KEY / ANTHROPIC_API_KEY /
  GOOGLE_API_KEY for the selected provider
- MURMUR_MODEL: Model name (default depends on provider)
- MURMUR_BASE_URL: Custom API base URL
- MURMUR_TEMPERATURE, MURMUR_MAX_TOKENS, MURMUR_TOP_P, MURMUR_TOP_K
- MURMUR_STOP_SEQUENCES: Comma-separated stop sequences
- MURMUR_TIMEOUT: Per-call timeout in seconds (default: 30)
- MURMUR_MAX_RETRIES: Attempts per call (default: 3)
- MURMUR_RETRY_DELAY: Base retry delay in seconds (default: 1)
- MURMUR_MAX_MESSAGES: History length bound (default: 50)
- MURMUR_HISTORY_MAX_TOKENS: History token bound (default: 4000)
- MURMUR_ENABLE_CACHE: Cache responses (default: false)
- MURMUR_CACHE_TIMEOUT: Cache TTL in seconds (default: 3600)
- MURMUR_THREAD_ID: Conversation thread to bind
- MURMUR_STREAM: Stream responses by default (default: false)
- MURMUR_LOG_LEVEL: Logging level for configure_logging (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .exceptions import InvalidConfigurationError
from .providers.base import BaseLLMProvider, LLMProviderConfig
from .providers.factory import API_KEY_ENV_VARS, DEFAULT_MODELS, LLMProvider, create_provider

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging for applications embedding murmur.

    The library itself never installs handlers.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise InvalidConfigurationError(
            f"Environment variable {name} must be a {cast.__name__}, got {value!r}"
        ) from None


@dataclass
class MurmurConfig:
    """Complete configuration surface.

    Attributes:
        provider: Which provider client to bind
        api_key: Provider API key
        model_name: Model forwarded to the provider
        temperature, max_tokens, top_p, top_k, stop_sequences: Forwarded
            verbatim into provider calls
        base_url: Custom API base URL
        timeout: Per-call timeout in seconds
        max_retries: Attempts per provider call
        retry_delay: Base of the exponential retry backoff in seconds
        max_messages: History length bound
        history_max_tokens: History token bound
        enable_cache: Cache normalized responses
        cache_timeout: Response cache TTL in seconds
        thread_id: Conversation thread for the bound history
        stream: Default streaming mode for Agent.execute
        log_level: Level used by configure_logging
    """

    provider: LLMProvider = LLMProvider.OPENAI
    api_key: str = ""
    model_name: str = ""
    temperature: Optional[float] = 0.7
    max_tokens: int = 1024
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Optional[list[str]] = None
    base_url: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    max_messages: int = 50
    history_max_tokens: int = 4000
    enable_cache: bool = False
    cache_timeout: float = 3600.0
    thread_id: Optional[str] = None
    stream: bool = False
    log_level: str = "INFO"
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        self.provider = LLMProvider.parse(self.provider)
        if not self.model_name:
            self.model_name = DEFAULT_MODELS[self.provider]

    def validate(self) -> None:
        """Fail fast on settings a provider call could never succeed with.

        Raises:
            InvalidConfigurationError: Listing every missing key
        """
        missing = []
        if not self.api_key:
            missing.append("api_key")
        if not self.model_name:
            missing.append("model_name")
        if missing:
            raise InvalidConfigurationError(
                f"Missing configuration: {', '.join(missing)}",
                missing_keys=missing,
            )
        if self.timeout <= 0:
            raise InvalidConfigurationError("timeout must be positive")
        if self.max_retries < 1:
            raise InvalidConfigurationError("max_retries must be at least 1")
        if self.max_messages < 1:
            raise InvalidConfigurationError("max_messages must be positive")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise InvalidConfigurationError("temperature must be between 0 and 2")

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> MurmurConfig:
        """Build a config from `.env` and MURMUR_* environment variables.

        Keyword overrides win over the environment.
        """
        load_dotenv(dotenv_path)

        provider = LLMProvider.parse(overrides.pop("provider", None) or os.getenv("MURMUR_PROVIDER", "openai"))
        api_key = os.getenv("MURMUR_API_KEY") or os.getenv(API_KEY_ENV_VARS[provider], "")
        stop = os.getenv("MURMUR_STOP_SEQUENCES")

        values = dict(
            provider=provider,
            api_key=api_key,
            model_name=os.getenv("MURMUR_MODEL", ""),
            base_url=os.getenv("MURMUR_BASE_URL") or None,
            temperature=_env_number("MURMUR_TEMPERATURE", 0.7, float),
            max_tokens=_env_number("MURMUR_MAX_TOKENS", 1024, int),
            top_p=_env_number("MURMUR_TOP_P", None, float),
            top_k=_env_number("MURMUR_TOP_K", None, int),
            stop_sequences=[s.strip() for s in stop.split(",") if s.strip()] if stop else None,
            timeout=_env_number("MURMUR_TIMEOUT", 30.0, float),
            max_retries=_env_number("MURMUR_MAX_RETRIES", 3, int),
            retry_delay=_env_number("MURMUR_RETRY_DELAY", 1.0, float),
            max_messages=_env_number("MURMUR_MAX_MESSAGES", 50, int),
            history_max_tokens=_env_number("MURMUR_HISTORY_MAX_TOKENS", 4000, int),
            enable_cache=_env_bool("MURMUR_ENABLE_CACHE", False),
            cache_timeout=_env_number("MURMUR_CACHE_TIMEOUT", 3600.0, float),
            thread_id=os.getenv("MURMUR_THREAD_ID") or None,
            stream=_env_bool("MURMUR_STREAM", False),
            log_level=os.getenv("MURMUR_LOG_LEVEL", "INFO"),
        )
        values.update(overrides)
        return cls(**values)

    def to_provider_config(self) -> LLMProviderConfig:
        self.validate()
        return LLMProviderConfig(
            api_key=self.api_key,
            model=self.model_name,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            top_k=self.top_k,
            stop_sequences=self.stop_sequences,
            extra=dict(self.extra),
        )

    def create_provider(self) -> BaseLLMProvider:
        """Instantiate the configured provider."""
        return create_provider(self.provider, self.to_provider_config())
