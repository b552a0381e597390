"""
Provider factories.

Each factory is an ordinary object owned by whoever builds the pipeline,
holding its own instance cache. Equal configurations share one provider
instance.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, Generic, TypeVar

import httpx

import config
from providers.base import BaseProvider, ProviderUnavailableError
from providers.embeddings import EmbeddingProvider, OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from providers.generation import (
    AnthropicGenerationProvider,
    GenerationProvider,
    OllamaGenerationProvider,
    OpenAIGenerationProvider,
)
from providers.models import ProviderConfig, ProviderStats
from utils.logger import setup_logger

logger = setup_logger(__name__)

P = TypeVar("P", bound=BaseProvider)


class EmbeddingProviderType(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    SENTENCE_TRANSFORMERS = "sentence_transformers"


class GenerationProviderType(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


REMOTE_PROVIDERS = {"openai", "anthropic"}


def _resolve_type(enum_cls, provider: str | Enum, role: str):
    value = provider.value if isinstance(provider, Enum) else str(provider).lower()
    try:
        return enum_cls(value)
    except ValueError:
        options = [member.value for member in enum_cls]
        raise ValueError(f"Unknown {role} provider: {provider}. Options: {options}")


def _default_config(provider_type: Enum) -> ProviderConfig:
    if provider_type.value in REMOTE_PROVIDERS:
        return ProviderConfig.remote()
    return ProviderConfig.local()


def _config_key(provider_config: ProviderConfig) -> str:
    return ",".join(f"{name}={value}" for name, value in sorted(provider_config.model_dump().items()))


class _ProviderFactory(ABC, Generic[P]):
    role = ""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        """
        Args:
            transport: httpx transport handed to HTTP providers (tests use MockTransport)
        """
        self._cache: Dict[str, P] = {}
        self._transport = transport

    def _cached(self, key: str, build: Callable[[], P]) -> P:
        if key not in self._cache:
            self._cache[key] = build()
            logger.info(f"Created {self.role} provider: {key}")
        return self._cache[key]

    async def create_with_fallback(self, primary: str, secondary: str, **options) -> P:
        """Return the first provider whose connection test passes.

        Args:
            primary: Preferred provider name
            secondary: Provider to use when the primary is unavailable
            **options: Passed to create() for both providers

        Raises:
            ProviderUnavailableError: Neither provider is reachable
        """
        candidates = (primary, secondary)
        for position, name in enumerate(candidates):
            try:
                provider = self.create(provider=name, **options)
            except Exception as e:
                logger.warning(f"Could not create {self.role} provider {name}: {e}")
                continue
            if await provider.test_connection():
                if position > 0:
                    logger.warning(f"Primary {self.role} provider {primary} unavailable, using {name}")
                return provider
            logger.warning(f"{self.role.capitalize()} provider {name} failed its connection test")

        raise ProviderUnavailableError(
            f"Both {primary} and {secondary} {self.role} services are unavailable"
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_service_stats(self) -> Dict[str, ProviderStats]:
        return {key: provider.get_stats() for key, provider in self._cache.items()}

    async def test_all_services(self) -> Dict[str, bool]:
        return {key: await provider.test_connection() for key, provider in self._cache.items()}

    @abstractmethod
    def create(self, provider=None, **options) -> P:
        """Create (or reuse) a provider by name; unset options come from config."""
        pass


class EmbeddingProviderFactory(_ProviderFactory[EmbeddingProvider]):
    """Resolves and caches embedding providers."""

    role = "embedding"

    def create(
        self,
        provider: str | EmbeddingProviderType | None = None,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        dimensions: int | None = None,
        provider_config: ProviderConfig | None = None
    ) -> EmbeddingProvider:
        """Create (or reuse) an embedding provider.

        Unset arguments come from config: EMBEDDING_PROVIDER, EMBEDDING_MODEL
        (only for the configured provider), the per-provider model name,
        OLLAMA_BASE_URL, OPENAI_API_KEY and EMBEDDING_DIMENSIONS.

        Raises:
            ValueError: Unknown provider name
            ProviderConfigurationError: Missing key, unsupported model or bad dimensions
        """
        provider_type = _resolve_type(EmbeddingProviderType, provider or config.EMBEDDING_PROVIDER, self.role)
        provider_config = provider_config or _default_config(provider_type)
        # One dimensionality per deployment, checked by every provider
        dimensions = dimensions or config.EMBEDDING_DIMENSIONS

        if model is None and config.EMBEDDING_MODEL and provider_type.value == config.EMBEDDING_PROVIDER:
            model = config.EMBEDDING_MODEL

        if provider_type == EmbeddingProviderType.OLLAMA:
            model = model or config.OLLAMA_EMBEDDING_MODEL
            base_url = base_url or config.OLLAMA_BASE_URL
            build = lambda: OllamaEmbeddingProvider(
                model=model,
                base_url=base_url,
                dimensions=dimensions,
                provider_config=provider_config,
                transport=self._transport
            )
        elif provider_type == EmbeddingProviderType.OPENAI:
            model = model or config.OPENAI_EMBEDDING_MODEL
            base_url = base_url or config.OPENAI_BASE_URL
            api_key = api_key or config.OPENAI_API_KEY
            build = lambda: OpenAIEmbeddingProvider(
                api_key=api_key,
                model=model,
                dimensions=dimensions,
                base_url=base_url,
                provider_config=provider_config,
                transport=self._transport
            )
        else:
            model = model or config.SENTENCE_TRANSFORMER_MODEL

            def build():
                # Imported here so torch only loads when this provider is used
                from providers.local_embeddings import SentenceTransformerEmbeddingProvider
                return SentenceTransformerEmbeddingProvider(
                    model=model,
                    dimensions=dimensions,
                    provider_config=provider_config
                )

        key = "|".join([
            provider_type.value,
            model,
            base_url or "",
            (api_key or "")[:10],
            str(dimensions),
            _config_key(provider_config),
        ])
        return self._cached(key, build)


class GenerationProviderFactory(_ProviderFactory[GenerationProvider]):
    """Resolves and caches generation providers."""

    role = "generation"

    def create(
        self,
        provider: str | GenerationProviderType | None = None,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        provider_config: ProviderConfig | None = None
    ) -> GenerationProvider:
        """Create (or reuse) a generation provider.

        Unset arguments come from config: LLM_PROVIDER, LLM_MODEL (only for
        the configured provider), the per-provider model name,
        OLLAMA_BASE_URL, OPENAI_API_KEY and ANTHROPIC_API_KEY.

        Raises:
            ValueError: Unknown provider name
            ProviderConfigurationError: Missing API key
        """
        provider_type = _resolve_type(GenerationProviderType, provider or config.LLM_PROVIDER, self.role)
        provider_config = provider_config or _default_config(provider_type)
        temperature = 0.7 if temperature is None else temperature

        if model is None and config.LLM_MODEL and provider_type.value == config.LLM_PROVIDER:
            model = config.LLM_MODEL

        if provider_type == GenerationProviderType.OLLAMA:
            model = model or config.OLLAMA_LLM_MODEL
            base_url = base_url or config.OLLAMA_BASE_URL
            max_tokens = max_tokens or 4096
            build = lambda: OllamaGenerationProvider(
                model=model,
                base_url=base_url,
                max_tokens=max_tokens,
                temperature=temperature,
                provider_config=provider_config,
                transport=self._transport
            )
        elif provider_type == GenerationProviderType.OPENAI:
            model = model or config.OPENAI_LLM_MODEL
            base_url = base_url or config.OPENAI_BASE_URL
            api_key = api_key or config.OPENAI_API_KEY
            max_tokens = max_tokens or 4000
            build = lambda: OpenAIGenerationProvider(
                api_key=api_key,
                model=model,
                base_url=base_url,
                max_tokens=max_tokens,
                temperature=temperature,
                provider_config=provider_config,
                transport=self._transport
            )
        else:
            model = model or config.ANTHROPIC_MODEL
            api_key = api_key or config.ANTHROPIC_API_KEY
            max_tokens = max_tokens or 4096
            build = lambda: AnthropicGenerationProvider(
                api_key=api_key,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                provider_config=provider_config
            )

        key = "|".join([
            provider_type.value,
            model,
            base_url or "",
            (api_key or "")[:10],
            str(max_tokens),
            str(temperature),
            _config_key(provider_config),
        ])
        return self._cached(key, build)
