"""Test provider factories: resolution, caching and fallback."""
import httpx
import pytest

import config
from providers.base import ProviderConfigurationError, ProviderUnavailableError
from providers.embeddings import OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from providers.factory import EmbeddingProviderFactory, GenerationProviderFactory, _ProviderFactory
from providers.generation import OllamaGenerationProvider
from fakes import fast_config


@pytest.fixture(autouse=True)
def default_config(monkeypatch):
    """Pin the config values the factories read."""
    monkeypatch.setattr(config, "EMBEDDING_PROVIDER", "ollama")
    monkeypatch.setattr(config, "EMBEDDING_MODEL", None)
    monkeypatch.setattr(config, "EMBEDDING_DIMENSIONS", 768)
    monkeypatch.setattr(config, "OLLAMA_EMBEDDING_MODEL", "nomic-embed-text")
    monkeypatch.setattr(config, "OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    monkeypatch.setattr(config, "OLLAMA_LLM_MODEL", "mistral")
    monkeypatch.setattr(config, "OPENAI_BASE_URL", "https://api.openai.com/v1")
    monkeypatch.setattr(config, "LLM_PROVIDER", "ollama")
    monkeypatch.setattr(config, "LLM_MODEL", None)
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", None)


def test_equal_configurations_share_an_instance():
    factory = EmbeddingProviderFactory()

    first = factory.create("ollama")
    second = factory.create("ollama")
    other = factory.create("ollama", model="mxbai-embed-large", dimensions=1024)

    assert first is second
    assert other is not first
    assert isinstance(first, OllamaEmbeddingProvider)
    assert first.dimensions == 768
    assert len(factory.get_service_stats()) == 2

    factory.clear_cache()
    assert factory.create("ollama") is not first


def test_defaults_come_from_config():
    provider = EmbeddingProviderFactory().create()
    assert provider.provider_name == "ollama"
    assert provider.model == "nomic-embed-text"

    generator = GenerationProviderFactory().create()
    assert isinstance(generator, OllamaGenerationProvider)


def test_embedding_model_override_applies_to_configured_provider_only(monkeypatch):
    monkeypatch.setattr(config, "EMBEDDING_MODEL", "mxbai-embed-large")
    factory = EmbeddingProviderFactory()

    ollama = factory.create("ollama", dimensions=1024)
    openai = factory.create("openai", api_key="sk-test")

    assert ollama.model == "mxbai-embed-large"
    assert openai.model == config.OPENAI_EMBEDDING_MODEL


def test_provider_config_is_part_of_the_cache_key():
    """Different retry, timeout or batch settings get their own provider instance."""
    generators = GenerationProviderFactory()
    default = generators.create("ollama")
    strict = generators.create("ollama", provider_config=fast_config(max_retries=1, timeout=5))

    assert strict is not default
    assert strict.config.max_retries == 1
    assert strict.config.timeout == 5
    assert generators.create("ollama", provider_config=fast_config(max_retries=1, timeout=5)) is strict

    embedders = EmbeddingProviderFactory()
    quick = embedders.create("ollama", provider_config=fast_config(timeout=5))
    slow = embedders.create("ollama", provider_config=fast_config(timeout=120))

    assert slow is not quick
    assert slow.config.timeout == 120


def test_factory_base_cannot_be_instantiated():
    with pytest.raises(TypeError):
        _ProviderFactory()


def test_unknown_provider_lists_options():
    with pytest.raises(ValueError, match="Unknown embedding provider: cohere"):
        EmbeddingProviderFactory().create("cohere")
    with pytest.raises(ValueError, match="Unknown generation provider: bard"):
        GenerationProviderFactory().create("bard")


def test_missing_keys_fail_at_construction():
    with pytest.raises(ProviderConfigurationError):
        GenerationProviderFactory().create("anthropic")


@pytest.mark.asyncio
async def test_fallback_to_secondary_when_primary_down():
    def handler(request):
        if request.url.path == "/api/tags":
            return httpx.Response(500)
        return httpx.Response(200, json={"data": [{"embedding": [0.3] * 768}]})

    factory = EmbeddingProviderFactory(transport=httpx.MockTransport(handler))

    provider = await factory.create_with_fallback("ollama", "openai", api_key="sk-test", provider_config=fast_config())

    assert isinstance(provider, OpenAIEmbeddingProvider)


@pytest.mark.asyncio
async def test_fallback_raises_when_both_down():
    factory = EmbeddingProviderFactory(transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    with pytest.raises(ProviderUnavailableError, match="Both ollama and openai embedding services are unavailable"):
        await factory.create_with_fallback("ollama", "openai", api_key="sk-test", provider_config=fast_config())


@pytest.mark.asyncio
async def test_test_all_services():
    def handler(request):
        return httpx.Response(200, json={"models": [{"name": "mistral:latest"}]})

    factory = GenerationProviderFactory(transport=httpx.MockTransport(handler))
    factory.create("ollama")

    status = await factory.test_all_services()

    assert list(status.values()) == [True]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
