"""Test the ChromaDB vector store and local file store."""
import uuid

import chromadb
import pytest
from chromadb.config import Settings

from ingestion.models import Chunk
from retrieval.models import SearchRequest
from storage.file_store import FileStoreError, LocalFileStore
from storage.vector_store import StorageError, VectorStore


def make_chunk(document_id, index, embedding, page=1, section=None):
    return Chunk(
        id=f"{document_id}-chunk-{index}",
        document_id=document_id,
        page_number=page,
        chunk_index=index,
        text=f"Chunk {index} of {document_id}",
        token_count=5,
        page_position_start=0,
        page_position_end=20,
        section_title=section,
        embedding=embedding
    )


class FlakyCollection:
    """Chroma collection wrapper whose n-th upsert fails."""

    def __init__(self, collection, fail_on_call):
        self._collection = collection
        self._fail_on_call = fail_on_call
        self.calls = 0

    def upsert(self, **kwargs):
        self.calls += 1
        if self.calls == self._fail_on_call:
            raise RuntimeError("disk full")
        return self._collection.upsert(**kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


@pytest.fixture
def store(database):
    """Vector store on an in-memory Chroma client with a unique collection."""
    client = chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))
    return VectorStore(
        database=database,
        dimensions=3,
        collection_name=f"test_{uuid.uuid4().hex}",
        client=client
    )


@pytest.fixture
def two_documents(database, store):
    database.create_document("user-1", "pump.pdf", "user-1/pump.pdf", document_id="doc-a")
    database.create_document("user-1", "valve.pdf", "user-1/valve.pdf", document_id="doc-b")
    database.create_document("user-2", "private.pdf", "user-2/private.pdf", document_id="doc-c")
    return store


@pytest.mark.asyncio
async def test_store_and_search(two_documents, database):
    store = two_documents
    result = await store.store_chunks(
        [
            make_chunk("doc-a", 0, [1.0, 0.0, 0.0], page=2, section="Installation"),
            make_chunk("doc-a", 1, [0.0, 1.0, 0.0]),
        ],
        "doc-a", "user-1", "fake-embed"
    )

    assert result.success
    assert result.stored_count == 2
    assert len(database.get_chunks("doc-a")) == 2

    hits = await store.search(SearchRequest(
        query_embedding=[1.0, 0.1, 0.0], user_id="user-1", similarity_threshold=0.5
    ))

    assert len(hits) == 1
    hit = hits[0]
    assert hit.chunk_id == "doc-a-chunk-0"
    assert hit.document_name == "pump.pdf"
    assert hit.page_number == 2
    assert hit.section_title == "Installation"
    assert hit.similarity_score > 0.9


@pytest.mark.asyncio
async def test_search_is_scoped_to_user_and_documents(two_documents):
    store = two_documents
    vector = [0.0, 0.0, 1.0]
    await store.store_chunks([make_chunk("doc-a", 0, vector)], "doc-a", "user-1", "fake-embed")
    await store.store_chunks([make_chunk("doc-b", 0, vector)], "doc-b", "user-1", "fake-embed")
    await store.store_chunks([make_chunk("doc-c", 0, vector)], "doc-c", "user-2", "fake-embed")

    everything = await store.search(SearchRequest(query_embedding=vector, user_id="user-1"))
    only_b = await store.search(SearchRequest(query_embedding=vector, user_id="user-1", document_ids=["doc-b"]))

    assert {hit.document_id for hit in everything} == {"doc-a", "doc-b"}
    assert [hit.document_id for hit in only_b] == ["doc-b"]


@pytest.mark.asyncio
async def test_results_sorted_by_similarity(two_documents):
    store = two_documents
    await store.store_chunks(
        [
            make_chunk("doc-a", 0, [0.6, 0.8, 0.0]),
            make_chunk("doc-a", 1, [1.0, 0.0, 0.0]),
            make_chunk("doc-a", 2, [0.8, 0.6, 0.0]),
        ],
        "doc-a", "user-1", "fake-embed"
    )

    hits = await store.search(SearchRequest(query_embedding=[1.0, 0.0, 0.0], user_id="user-1", similarity_threshold=0.0))

    scores = [hit.similarity_score for hit in hits]
    assert scores == sorted(scores, reverse=True)
    assert hits[0].chunk_id == "doc-a-chunk-1"


@pytest.mark.asyncio
async def test_wrong_dimensions_rejected_per_chunk(two_documents, database):
    """One bad chunk fails the store and leaves nothing of the document searchable."""
    store = two_documents

    result = await store.store_chunks(
        [make_chunk("doc-a", 0, [1.0, 0.0, 0.0]), make_chunk("doc-a", 1, [1.0, 0.0])],
        "doc-a", "user-1", "fake-embed"
    )

    assert not result.success
    assert result.stored_count == 0
    assert result.failed_count == 1
    assert result.errors[0].chunk_index == 1
    assert result.errors[0].error == "Embedding has 2 dimensions, expected 3"
    assert await store.search(SearchRequest(query_embedding=[1.0, 0.0, 0.0], user_id="user-1")) == []
    assert database.get_chunks("doc-a") == []


@pytest.mark.asyncio
async def test_failed_upsert_rolls_back_earlier_batches(two_documents, database):
    store = two_documents
    store.UPSERT_BATCH_SIZE = 1
    store.collection = FlakyCollection(store.collection, fail_on_call=2)

    result = await store.store_chunks(
        [make_chunk("doc-a", 0, [1.0, 0.0, 0.0]), make_chunk("doc-a", 1, [0.0, 1.0, 0.0])],
        "doc-a", "user-1", "fake-embed"
    )

    assert not result.success
    assert result.stored_count == 0
    assert result.errors[0].error == "disk full"
    assert await store.search(SearchRequest(query_embedding=[1.0, 0.0, 0.0], user_id="user-1")) == []
    assert database.get_chunks("doc-a") == []


@pytest.mark.asyncio
async def test_search_edge_cases(store):
    assert await store.search(SearchRequest(query_embedding=[1.0, 0.0, 0.0], user_id="user-1")) == []

    with pytest.raises(StorageError):
        await store.search(SearchRequest(query_embedding=[1.0, 0.0], user_id="user-1"))


@pytest.mark.asyncio
async def test_delete_document_vectors(two_documents):
    store = two_documents
    await store.store_chunks([make_chunk("doc-a", 0, [1.0, 0.0, 0.0])], "doc-a", "user-1", "fake-embed")

    store.delete_document("doc-a")

    assert await store.search(SearchRequest(query_embedding=[1.0, 0.0, 0.0], user_id="user-1")) == []


# --- File store ---

@pytest.mark.asyncio
async def test_file_store_round_trip(tmp_path):
    files = LocalFileStore(tmp_path)

    path = await files.save(b"%PDF-1.7 data", "user-1", "manual.pdf")

    assert path.startswith("user-1")
    assert path.endswith("_manual.pdf")
    assert await files.download(path) == b"%PDF-1.7 data"

    await files.delete(path)
    with pytest.raises(FileStoreError, match="File not found"):
        await files.download(path)


@pytest.mark.asyncio
async def test_file_store_rejects_paths_outside_root(tmp_path):
    files = LocalFileStore(tmp_path / "uploads")

    with pytest.raises(FileStoreError):
        await files.download("../secrets.txt")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
