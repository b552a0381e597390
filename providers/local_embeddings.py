"""In-process embeddings with sentence-transformers."""
import asyncio
from typing import List

from sentence_transformers import SentenceTransformer

import config
from providers.base import DimensionMismatchError
from providers.embeddings import EmbeddingProvider
from providers.models import ProviderConfig
from utils.logger import setup_logger

logger = setup_logger(__name__)


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Runs a sentence-transformers model in a worker thread."""

    provider_name = "sentence_transformers"

    def __init__(
        self,
        model: str = config.SENTENCE_TRANSFORMER_MODEL,
        dimensions: int | None = None,
        provider_config: ProviderConfig | None = None,
        encoder=None
    ):
        """
        Args:
            model: sentence-transformers model name
            dimensions: Expected dimensionality; checked against the model
            provider_config: Retry and batching settings
            encoder: Preloaded model (anything with encode()); loaded by name if omitted
        """
        if encoder is None:
            logger.info(f"Loading embedding model: {model}")
            encoder = SentenceTransformer(model)
        self.encoder = encoder

        model_dimensions = encoder.get_sentence_embedding_dimension()
        if dimensions is not None and model_dimensions != dimensions:
            raise DimensionMismatchError(
                f"Model {model} produces {model_dimensions} dimensions, configured for {dimensions}"
            )
        super().__init__(model, model_dimensions, provider_config or ProviderConfig.local(batch_delay=0.0))

    async def _embed(self, text: str) -> List[float]:
        vector = await asyncio.to_thread(self.encoder.encode, text)
        return [float(v) for v in vector]

    async def test_connection(self) -> bool:
        try:
            await self._embed("connection test")
            return True
        except Exception as e:
            logger.warning(f"Local embedding model failed: {e}")
            return False
