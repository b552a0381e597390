"""
Embedding providers.

Ollama (local) and OpenAI (remote) speak HTTP through httpx. The in-process
sentence-transformers provider lives in providers/local_embeddings.py so
that importing this module does not load torch.
"""

import asyncio
import time
from abc import abstractmethod
from typing import Dict, List, Sequence

import httpx

import config
from providers.base import (
    BaseProvider,
    DimensionMismatchError,
    ProviderConfigurationError,
    ProviderError,
    ProviderValidationError,
)
from providers.models import (
    BatchEmbeddingResult,
    EmbeddingResult,
    ItemError,
    ModelInfo,
    ProviderConfig,
)
from utils.logger import setup_logger
from utils.tokens import count_tokens

logger = setup_logger(__name__)


def text_preview(text: str, length: int = 100) -> str:
    return text[:length] + "..."


class EmbeddingProvider(BaseProvider):
    """Uniform interface over embedding backends."""

    MAX_TEXT_LENGTH = 8192  # characters

    def __init__(self, model: str, dimensions: int, provider_config: ProviderConfig):
        super().__init__(model, provider_config)
        self.dimensions = dimensions

    def validate_text(self, text: str) -> None:
        if not text or not text.strip():
            raise ProviderValidationError("Text cannot be empty")
        if len(text) > self.MAX_TEXT_LENGTH:
            raise ProviderValidationError(
                f"Text too long: {len(text)} characters (max {self.MAX_TEXT_LENGTH})"
            )

    def cost_for(self, tokens: int) -> float:
        return 0.0

    async def generate(self, text: str) -> EmbeddingResult:
        """Embed one text.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult whose vector has exactly `dimensions` entries

        Raises:
            ProviderValidationError: Empty or oversized text
            DimensionMismatchError: Backend returned a vector of the wrong size
            Exception: The backend's last error once retries are exhausted
        """
        self.validate_text(text)
        started = time.perf_counter()
        try:
            vector = await self._with_retry(self._embed, text)
            if len(vector) != self.dimensions:
                raise DimensionMismatchError(
                    f"{self.provider_name} model {self.model} returned {len(vector)} dimensions, "
                    f"expected {self.dimensions}"
                )
        except Exception:
            self._record(self._elapsed(started), failed=True)
            raise

        tokens = count_tokens(text)
        elapsed = self._elapsed(started)
        self._record(elapsed, tokens=tokens, cost=self.cost_for(tokens))
        return EmbeddingResult(
            vector=vector,
            dimensions=len(vector),
            model=self.model,
            token_count=tokens,
            processing_time=elapsed
        )

    async def generate_batch(self, texts: Sequence[str]) -> BatchEmbeddingResult:
        """Embed many texts.

        Sub-batches of max_batch_size run one after another, with the texts
        inside a sub-batch embedded concurrently. A failed text is recorded
        and the rest of the batch carries on.

        Args:
            texts: Texts to embed

        Returns:
            BatchEmbeddingResult aligned with `texts`
        """
        started = time.perf_counter()
        results: List[EmbeddingResult | None] = [None] * len(texts)
        errors: List[ItemError] = []

        batches = self.split_batch(list(texts), self.config.max_batch_size)
        offset = 0
        for batch_number, batch in enumerate(batches):
            if batch_number > 0 and self.config.batch_delay:
                await asyncio.sleep(self.config.batch_delay)

            outcomes = await asyncio.gather(
                *(self.generate(text) for text in batch),
                return_exceptions=True
            )
            for position, outcome in enumerate(outcomes):
                index = offset + position
                if isinstance(outcome, Exception):
                    errors.append(ItemError(
                        index=index,
                        error=str(outcome) or type(outcome).__name__,
                        text_preview=text_preview(batch[position])
                    ))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results[index] = outcome
            offset += len(batch)

            logger.debug(f"Embedded batch {batch_number + 1}/{len(batches)}")

        if errors:
            logger.warning(f"{len(errors)} of {len(texts)} embeddings failed")

        return BatchEmbeddingResult(
            results=results,
            total_tokens=sum(r.token_count for r in results if r is not None),
            processing_time=self._elapsed(started),
            errors=errors
        )

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(name=self.model, provider=self.provider_name, dimensions=self.dimensions)

    @abstractmethod
    async def _embed(self, text: str) -> List[float]:
        """One backend call; retried by the caller."""
        pass


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server."""

    provider_name = "ollama"

    MODEL_DIMENSIONS: Dict[str, int] = {
        "nomic-embed-text": 768,
        "all-minilm": 384,
        "bge-small": 384,
        "bge-large": 1024,
        "mxbai-embed-large": 1024,
    }

    def __init__(
        self,
        model: str = config.OLLAMA_EMBEDDING_MODEL,
        base_url: str = config.OLLAMA_BASE_URL,
        dimensions: int | None = None,
        provider_config: ProviderConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        base_name = model.split(":")[0]
        if dimensions is None:
            if base_name not in self.MODEL_DIMENSIONS:
                raise ProviderConfigurationError(
                    f"Unknown Ollama embedding model: {model}. "
                    f"Options: {list(self.MODEL_DIMENSIONS)} (or pass dimensions explicitly)"
                )
            dimensions = self.MODEL_DIMENSIONS[base_name]
        elif base_name in self.MODEL_DIMENSIONS and self.MODEL_DIMENSIONS[base_name] != dimensions:
            raise DimensionMismatchError(
                f"Ollama model {model} produces {self.MODEL_DIMENSIONS[base_name]} dimensions, "
                f"configured for {dimensions}"
            )

        super().__init__(model, dimensions, provider_config or ProviderConfig.local())
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.config.timeout, transport=self._transport)

    async def _embed(self, text: str) -> List[float]:
        async with self._client() as client:
            response = await client.post("/api/embeddings", json={"model": self.model, "prompt": text})
            response.raise_for_status()
            data = response.json()

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise ProviderError("Invalid embedding response from Ollama")
        return [float(v) for v in embedding]

    async def test_connection(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
                data = response.json()
        except Exception as e:
            logger.warning(f"Ollama connection test failed: {e}")
            return False

        names = [m.get("name", "") for m in data.get("models", [])]
        wanted = self.model.split(":")[0]
        available = any(name == self.model or name.split(":")[0] == wanted for name in names)
        if not available:
            logger.warning(f"Ollama model {self.model} not found. Available: {names}")
        return available


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API with configurable dimensions."""

    provider_name = "openai"

    # model -> (max dimensions, USD per 1K tokens)
    MODELS: Dict[str, tuple] = {
        "text-embedding-3-small": (1536, 0.00002),
        "text-embedding-3-large": (3072, 0.00013),
    }

    def __init__(
        self,
        api_key: str | None = config.OPENAI_API_KEY,
        model: str = config.OPENAI_EMBEDDING_MODEL,
        dimensions: int = config.EMBEDDING_DIMENSIONS,
        base_url: str = config.OPENAI_BASE_URL,
        provider_config: ProviderConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        if not api_key:
            raise ProviderConfigurationError("OPENAI_API_KEY is required for the openai embedding provider")
        if model == "text-embedding-ada-002":
            raise ProviderConfigurationError(
                "text-embedding-ada-002 has fixed 1536 dimensions; use text-embedding-3-small or -large"
            )
        if model not in self.MODELS:
            raise ProviderConfigurationError(f"Unknown OpenAI embedding model: {model}. Options: {list(self.MODELS)}")
        max_dimensions = self.MODELS[model][0]
        if not 1 <= dimensions <= max_dimensions:
            raise ProviderConfigurationError(
                f"{model} supports 1-{max_dimensions} dimensions, got {dimensions}"
            )

        super().__init__(model, dimensions, provider_config or ProviderConfig.remote())
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.config.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport
        )

    def cost_for(self, tokens: int) -> float:
        return tokens / 1000 * self.MODELS[self.model][1]

    async def _embed(self, text: str) -> List[float]:
        payload = {"model": self.model, "input": text, "dimensions": self.dimensions}
        async with self._client() as client:
            response = await client.post("/embeddings", json=payload)
            response.raise_for_status()
            data = response.json()

        try:
            return [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Invalid embedding response from OpenAI: {e}")

    async def test_connection(self) -> bool:
        try:
            await self._embed("connection test")
            return True
        except Exception as e:
            logger.warning(f"OpenAI embedding connection test failed: {e}")
            return False
