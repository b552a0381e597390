"""Test the CLI's retry of a failed ingestion."""
import uuid

import chromadb
import pytest
from chromadb.config import Settings

from execution.models import ProcessingStatus
from ingestion.models import Chunk
from main import reset_failed_document
from retrieval.models import SearchRequest
from storage.vector_store import VectorStore


@pytest.mark.asyncio
async def test_retry_clears_vectors_and_uses_new_upload(database):
    """A failed document is retried from the new upload with nothing left searchable."""
    store = VectorStore(
        database=database,
        dimensions=3,
        collection_name=f"test_{uuid.uuid4().hex}",
        client=chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))
    )
    document_id = database.create_document("local", "pump.pdf", "local/old_pump.pdf", document_id="doc-a")
    await store.store_chunks([
        Chunk(
            id="doc-a-chunk-0",
            document_id=document_id,
            page_number=1,
            chunk_index=0,
            text="Stale chunk",
            token_count=2,
            page_position_start=0,
            page_position_end=11,
            embedding=[1.0, 0.0, 0.0]
        )
    ], document_id, "local", "fake-embed")
    database.mark_processing(document_id, "storing")
    database.mark_failed(document_id, "storing", "Chunk storage failed")

    reset_failed_document(database, store, document_id, "local/new_pump.pdf")

    assert await store.search(SearchRequest(query_embedding=[1.0, 0.0, 0.0], user_id="local")) == []
    assert database.get_chunks(document_id) == []
    assert database.get_state(document_id).status == ProcessingStatus.PENDING
    assert database.get_document(document_id)["file_path"] == "local/new_pump.pdf"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
