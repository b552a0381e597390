"""
Document ingestion pipeline.

Runs one document through download, extraction, chunking, embedding and
storage. Each stage is written to the status store before its work starts,
so a crash leaves the document showing the stage it died in.
"""

import asyncio
import time
from typing import List, Protocol, Sequence

from execution.models import (
    DocumentProcessingState,
    IngestionJob,
    ProcessingStage,
    calculate_progress,
)
from ingestion.chunker import ChunkingEngine
from ingestion.hierarchical_chunker import HierarchicalChunkingEngine
from ingestion.models import Chunk, PageContent
from ingestion.pdf_extractor import PDFExtractor
from providers.embeddings import EmbeddingProvider
from storage.database import Database
from storage.models import StorageResult
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class StageError(Exception):
    """Raised when an ingestion stage fails; the message is stored as-is."""
    pass


class FileStore(Protocol):
    async def download(self, file_path: str) -> bytes: ...


class ChunkStore(Protocol):
    async def store_chunks(
        self,
        chunks: Sequence[Chunk],
        document_id: str,
        user_id: str,
        embedding_model: str,
        document_name: str | None = None
    ) -> StorageResult: ...


def build_chunker(strategy: str = config.CHUNKING_STRATEGY) -> ChunkingEngine:
    """Chunking engine for a strategy name: "hierarchical" or "standard"."""
    if strategy == "hierarchical":
        return HierarchicalChunkingEngine()
    if strategy == "standard":
        return ChunkingEngine()
    raise ValueError(f"Unknown chunking strategy: {strategy}. Options: ['hierarchical', 'standard']")


class DocumentPipeline:
    """Drives the per-document processing state machine."""

    def __init__(
        self,
        file_store: FileStore,
        extractor: PDFExtractor,
        chunker: ChunkingEngine,
        embedding_provider: EmbeddingProvider,
        chunk_store: ChunkStore,
        status_store: Database,
        batch_size: int = config.EMBEDDING_BATCH_SIZE
    ):
        self.file_store = file_store
        self.extractor = extractor
        self.chunker = chunker
        self.embedding_provider = embedding_provider
        self.chunk_store = chunk_store
        self.status_store = status_store
        self.batch_size = batch_size

    async def process(self, job: IngestionJob) -> DocumentProcessingState | None:
        """Process one document to a terminal state.

        Failures are recorded on the document rather than raised.

        Args:
            job: Document to process

        Returns:
            The document's state after the run, None if the document is unknown
        """
        document_id = job.document_id
        started = time.perf_counter()
        logger.info(f"Processing document {job.filename} ({document_id})")

        if not await self._enter(document_id, ProcessingStage.DOWNLOADING):
            logger.warning(f"Document {document_id} is missing or already finished, skipping")
            return await self._read_state(document_id)

        try:
            data = await self._download(job)

            await self._advance(document_id, ProcessingStage.EXTRACTING)
            pages = await self._extract(data, job.filename)

            await self._advance(document_id, ProcessingStage.CHUNKING)
            chunks = await self._chunk(pages, document_id)

            await self._advance(document_id, ProcessingStage.EMBEDDING)
            chunks = await self._embed(chunks)

            await self._advance(document_id, ProcessingStage.STORING)
            await self._store(chunks, job)

            await asyncio.to_thread(self.status_store.mark_completed, document_id, len(pages), len(chunks))
        except Exception as e:
            await self._fail(document_id, e)
            return await self._read_state(document_id)

        state = await self._read_state(document_id)
        logger.info(
            f"Completed {job.filename}: {state.total_pages} pages, {state.total_chunks} chunks "
            f"in {time.perf_counter() - started:.1f}s"
        )
        return state

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _download(self, job: IngestionJob) -> bytes:
        try:
            return await self.file_store.download(job.file_path)
        except Exception as e:
            raise StageError(f"Failed to download file from storage: {e}")

    async def _extract(self, data: bytes, filename: str) -> List[PageContent]:
        result = await asyncio.to_thread(self.extractor.extract, data, filename)
        if not result.success:
            raise StageError(f"Text extraction failed: {result.error}")
        if not result.pages:
            raise StageError("Text extraction failed: No text content found")
        return result.pages

    async def _chunk(self, pages: List[PageContent], document_id: str) -> List[Chunk]:
        result = await asyncio.to_thread(self.chunker.chunk, pages, document_id)
        if not result.chunks:
            raise StageError("Chunking failed: No chunks generated")
        return list(result.chunks)

    async def _embed(self, chunks: List[Chunk]) -> List[Chunk]:
        """Embed every chunk; the first failed item fails the stage."""
        embedded: List[Chunk] = []
        batches = [chunks[i:i + self.batch_size] for i in range(0, len(chunks), self.batch_size)]

        for number, batch in enumerate(batches, start=1):
            result = await self.embedding_provider.generate_batch([chunk.text for chunk in batch])
            if result.errors:
                first = min(result.errors, key=lambda error: error.index)
                raise StageError(first.error)

            for chunk, embedding in zip(batch, result.results):
                embedded.append(chunk.model_copy(update={
                    "embedding": embedding.vector,
                    "embedding_model": embedding.model
                }))
            logger.debug(f"Embedded batch {number}/{len(batches)}")

        logger.info(f"Generated {len(embedded)} embeddings")
        return embedded

    async def _store(self, chunks: List[Chunk], job: IngestionJob) -> None:
        result = await self.chunk_store.store_chunks(
            chunks,
            job.document_id,
            job.user_id,
            self.embedding_provider.model,
            document_name=job.filename
        )
        if not result.success:
            raise StageError(result.errors[0].error if result.errors else "Chunk storage failed")

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def _enter(self, document_id: str, stage: ProcessingStage) -> bool:
        return await asyncio.to_thread(self.status_store.mark_processing, document_id, stage.value)

    async def _advance(self, document_id: str, stage: ProcessingStage) -> None:
        if not await self._enter(document_id, stage):
            raise StageError(f"Document {document_id} left processing before {stage.value}")
        logger.info(f"Document {document_id}: {stage.value}")

    async def _fail(self, document_id: str, error: Exception) -> None:
        state = await self._read_state(document_id)
        stage = state.stage if state is not None and state.stage else ProcessingStage.DOWNLOADING.value
        message = str(error) or type(error).__name__

        logger.error(f"Document {document_id} failed at {stage}: {message}")
        await asyncio.to_thread(self.status_store.mark_failed, document_id, stage, message)

    async def _read_state(self, document_id: str) -> DocumentProcessingState | None:
        return await asyncio.to_thread(self.status_store.get_state, document_id)

    async def progress(self, document_id: str):
        """Progress percentage and label for a document, or None if unknown."""
        state = await self._read_state(document_id)
        return calculate_progress(state) if state is not None else None
