"""ChromaDB vector store: chunk storage and nearest-neighbour search."""
import asyncio
import time
from pathlib import Path
from typing import Any, Dict, List, Sequence

import chromadb
from chromadb.config import Settings

from ingestion.models import Chunk
from retrieval.models import SearchRequest, SearchResult
from storage.database import Database
from storage.models import ChunkStorageError, StorageResult
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class StorageError(Exception):
    """Raised when the vector store cannot serve a request."""
    pass


class VectorStore:
    """Stores embedded chunks in one cosine-space ChromaDB collection.

    Chunk records are also written to the SQLite database when one is given,
    which is where document names for search results come from.
    """

    UPSERT_BATCH_SIZE = 100

    def __init__(
        self,
        chroma_path: Path = config.CHROMA_PATH,
        database: Database | None = None,
        dimensions: int = config.EMBEDDING_DIMENSIONS,
        collection_name: str = "document_chunks",
        client: Any = None
    ):
        """Initialize ChromaDB client and collection.

        Args:
            chroma_path: Path to ChromaDB persistence directory
            database: SQLite database for chunk records and document names
            dimensions: Embedding dimensionality of this deployment
            collection_name: Chroma collection holding all chunks
            client: Preconfigured Chroma client (tests pass an EphemeralClient)
        """
        if client is None:
            Path(chroma_path).mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=str(chroma_path),
                settings=Settings(anonymized_telemetry=False)
            )
        self.client = client
        self.database = database
        self.dimensions = dimensions
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"}
        )
        logger.info(f"Vector store initialized: {collection_name} ({dimensions} dimensions)")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def store_chunks(
        self,
        chunks: Sequence[Chunk],
        document_id: str,
        user_id: str,
        embedding_model: str,
        document_name: str | None = None
    ) -> StorageResult:
        """Persist embedded chunks for a document."""
        return await asyncio.to_thread(
            self._store_chunks, list(chunks), document_id, user_id, embedding_model, document_name
        )

    def _store_chunks(
        self,
        chunks: List[Chunk],
        document_id: str,
        user_id: str,
        embedding_model: str,
        document_name: str | None
    ) -> StorageResult:
        started = time.perf_counter()
        errors: List[ChunkStorageError] = []
        valid: List[Chunk] = []

        for chunk in chunks:
            if len(chunk.embedding) != self.dimensions:
                errors.append(ChunkStorageError(
                    chunk_index=chunk.chunk_index,
                    error=f"Embedding has {len(chunk.embedding)} dimensions, expected {self.dimensions}"
                ))
            else:
                valid.append(chunk)

        if document_name is None:
            document_name = self._lookup_names([document_id]).get(document_id, document_id)

        stored: List[Chunk] = []
        for start in range(0, len(valid), self.UPSERT_BATCH_SIZE):
            batch = valid[start:start + self.UPSERT_BATCH_SIZE]
            try:
                self.collection.upsert(
                    ids=[c.id for c in batch],
                    embeddings=[c.embedding for c in batch],
                    documents=[c.text for c in batch],
                    metadatas=[self._metadata(c, user_id, embedding_model, document_name) for c in batch]
                )
                stored.extend(batch)
            except Exception as e:
                logger.error(f"Chroma upsert failed for {len(batch)} chunks: {e}")
                errors.extend(ChunkStorageError(chunk_index=c.chunk_index, error=str(e)) for c in batch)

        if errors and stored:
            # A document is searchable only when every chunk stored
            logger.warning(f"Rolling back {len(stored)} stored chunks for document {document_id}")
            self.delete_document(document_id)
            stored = []

        if self.database is not None and stored:
            self.database.insert_chunks([
                {**c.to_record(user_id), 'embedding_model': embedding_model} for c in stored
            ])

        errors.sort(key=lambda e: e.chunk_index)
        logger.info(f"Stored {len(stored)}/{len(chunks)} chunks for document {document_id}")
        return StorageResult(
            success=not errors,
            stored_count=len(stored),
            failed_count=len(errors),
            errors=errors,
            processing_time=time.perf_counter() - started
        )

    @staticmethod
    def _metadata(chunk: Chunk, user_id: str, embedding_model: str, document_name: str) -> Dict[str, Any]:
        # Chroma metadata values must be non-null scalars
        metadata = {
            "document_id": chunk.document_id,
            "document_name": document_name,
            "user_id": user_id,
            "page_number": chunk.page_number,
            "chunk_index": chunk.chunk_index,
            "chunk_tokens": chunk.token_count,
            "embedding_model": embedding_model,
        }
        if chunk.section_title:
            metadata["section_title"] = chunk.section_title
        return metadata

    def _lookup_names(self, document_ids: List[str]) -> Dict[str, str]:
        if self.database is None:
            return {}
        return self.database.get_document_names(document_ids)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, request: SearchRequest) -> List[SearchResult]:
        """Nearest chunks to the query vector within the user's scope.

        Returns:
            Results with similarity >= threshold, most similar first
        """
        return await asyncio.to_thread(self._search, request)

    def _search(self, request: SearchRequest) -> List[SearchResult]:
        if len(request.query_embedding) != self.dimensions:
            raise StorageError(
                f"Query embedding has {len(request.query_embedding)} dimensions, expected {self.dimensions}"
            )
        if self.collection.count() == 0:
            return []

        where: Dict[str, Any] = {"user_id": request.user_id}
        if request.document_ids:
            where = {"$and": [where, {"document_id": {"$in": list(request.document_ids)}}]}

        results = self.collection.query(
            query_embeddings=[request.query_embedding],
            n_results=request.top_k,
            where=where,
            include=["documents", "metadatas", "distances"]
        )

        hits: List[SearchResult] = []
        if not results['ids'] or not results['ids'][0]:
            return hits

        for i, chunk_id in enumerate(results['ids'][0]):
            # Cosine distance is 1 - cosine similarity
            similarity = max(0.0, min(1.0, 1.0 - results['distances'][0][i]))
            if similarity < request.similarity_threshold:
                continue
            metadata = results['metadatas'][0][i]
            hits.append(SearchResult(
                chunk_id=chunk_id,
                document_id=metadata["document_id"],
                document_name=metadata.get("document_name", metadata["document_id"]),
                page_number=int(metadata["page_number"]),
                section_title=metadata.get("section_title"),
                text=results['documents'][0][i],
                similarity_score=similarity
            ))

        hits.sort(key=lambda hit: hit.similarity_score, reverse=True)
        return hits

    def delete_document(self, document_id: str) -> None:
        """Delete all vectors for a document."""
        try:
            self.collection.delete(where={"document_id": document_id})
            logger.info(f"Deleted vectors for document {document_id}")
        except Exception as e:
            logger.warning(f"Could not delete vectors for {document_id}: {e}")
