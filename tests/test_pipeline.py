"""Test the ingestion pipeline state machine and the job queue."""
import asyncio

import pytest

from execution.job_queue import IngestionQueue
from execution.models import IngestionJob, ProcessingStatus
from execution.pipeline import DocumentPipeline, build_chunker
from ingestion.chunker import ChunkingEngine
from ingestion.hierarchical_chunker import HierarchicalChunkingEngine
from ingestion.models import ChunkingOptions, PageContent
from fakes import FakeEmbeddingProvider, FakeExtractor, FakeFileStore, InMemoryChunkStore


def make_job(document_id="doc-1", file_path="user-1/manual.pdf"):
    return IngestionJob(document_id=document_id, user_id="user-1", file_path=file_path, filename="manual.pdf")


def make_pipeline(database, pages, extractor=None, embedder=None, chunk_store=None, files=None, batch_size=50):
    return DocumentPipeline(
        file_store=FakeFileStore(files if files is not None else {"user-1/manual.pdf": b"%PDF"}),
        extractor=extractor or FakeExtractor(pages),
        chunker=ChunkingEngine(ChunkingOptions(chunk_size_tokens=200, chunk_overlap_tokens=20)),
        embedding_provider=embedder or FakeEmbeddingProvider(),
        chunk_store=chunk_store or InMemoryChunkStore(),
        status_store=database,
        batch_size=batch_size
    )


def register(database, document_id="doc-1"):
    database.create_document("user-1", "manual.pdf", "user-1/manual.pdf", document_id=document_id)


@pytest.mark.asyncio
async def test_successful_run(database, manual_pages):
    register(database)
    store = InMemoryChunkStore()
    embedder = FakeEmbeddingProvider()
    pipeline = make_pipeline(database, manual_pages, chunk_store=store, embedder=embedder, batch_size=2)

    state = await pipeline.process(make_job())

    assert state.status == ProcessingStatus.COMPLETED
    assert state.stage == "completed"
    assert state.total_pages == 3
    assert state.total_chunks == 3
    assert state.error_message is None
    assert len(store.chunks) == 3
    assert store.names["doc-1"] == "manual.pdf"
    for chunk in store.chunks.values():
        assert len(chunk.embedding) == 8
        assert chunk.embedding_model == "fake-embed"
    assert len(embedder.calls) == 3

    progress = await pipeline.progress("doc-1")
    assert progress.percentage == 100


@pytest.mark.asyncio
async def test_download_failure(database, manual_pages):
    register(database)
    pipeline = make_pipeline(database, manual_pages, files={})

    state = await pipeline.process(make_job())

    assert state.status == ProcessingStatus.FAILED
    assert state.stage == "failed_downloading"
    assert state.error_message.startswith("Failed to download file from storage: ")


@pytest.mark.asyncio
async def test_extraction_failures(database):
    register(database, "doc-1")
    register(database, "doc-2")
    broken = make_pipeline(database, [], extractor=FakeExtractor(error="Invalid PDF file: truncated"))
    empty = make_pipeline(database, [])

    first = await broken.process(make_job("doc-1"))
    second = await empty.process(make_job("doc-2"))

    assert first.stage == "failed_extracting"
    assert first.error_message == "Text extraction failed: Invalid PDF file: truncated"
    assert second.stage == "failed_extracting"
    assert second.error_message == "Text extraction failed: No text content found"


@pytest.mark.asyncio
async def test_chunking_failure(database):
    register(database)
    pipeline = make_pipeline(database, [PageContent(page_number=1, text="   ")])

    state = await pipeline.process(make_job())

    assert state.stage == "failed_chunking"
    assert state.error_message == "Chunking failed: No chunks generated"


@pytest.mark.asyncio
async def test_embedding_failure_keeps_provider_message(database, manual_pages):
    """The first failed item's error is stored verbatim and nothing is stored."""
    register(database)
    store = InMemoryChunkStore()
    embedder = FakeEmbeddingProvider(fail_on=("six months",), error="model crashed")
    pipeline = make_pipeline(database, manual_pages, chunk_store=store, embedder=embedder)

    state = await pipeline.process(make_job())

    assert state.status == ProcessingStatus.FAILED
    assert state.stage == "failed_embedding"
    assert state.error_message == "model crashed"
    assert store.chunks == {}
    assert (await pipeline.progress("doc-1")).percentage == 70


@pytest.mark.asyncio
async def test_storage_failure(database, manual_pages):
    register(database)
    pipeline = make_pipeline(database, manual_pages, chunk_store=InMemoryChunkStore(reject_index=1))

    state = await pipeline.process(make_job())

    assert state.stage == "failed_storing"
    assert state.error_message == "Embedding rejected by store"


@pytest.mark.asyncio
async def test_finished_documents_are_skipped(database, manual_pages):
    register(database)
    database.mark_completed("doc-1", 3, 3)
    embedder = FakeEmbeddingProvider()
    pipeline = make_pipeline(database, manual_pages, embedder=embedder)

    state = await pipeline.process(make_job())

    assert state.status == ProcessingStatus.COMPLETED
    assert embedder.calls == []
    assert await pipeline.process(make_job("unknown")) is None


def test_build_chunker():
    assert isinstance(build_chunker("hierarchical"), HierarchicalChunkingEngine)
    assert type(build_chunker("standard")) is ChunkingEngine
    with pytest.raises(ValueError, match="Unknown chunking strategy"):
        build_chunker("semantic")


# --- Queue ---

@pytest.mark.asyncio
async def test_queue_processes_jobs_in_order(database, manual_pages):
    files = {f"user-1/{name}.pdf": b"%PDF" for name in ("a", "b", "c")}
    pipeline = make_pipeline(database, manual_pages, files=files)
    queue = IngestionQueue(pipeline, database)

    ids = [await queue.enqueue(make_job(f"doc-{name}", f"user-1/{name}.pdf")) for name in ("a", "b", "c")]
    assert queue.pending == 3
    assert database.get_state("doc-a").status == ProcessingStatus.PENDING

    queue.start(workers=2)
    await asyncio.wait_for(queue.join(), timeout=10)
    await queue.stop()

    assert ids == ["doc-a", "doc-b", "doc-c"]
    assert all(database.get_state(i).status == ProcessingStatus.COMPLETED for i in ids)
    assert not queue.running


@pytest.mark.asyncio
async def test_queue_isolates_failures(database, manual_pages):
    """A failing document does not stop the worker from taking the next job."""
    pipeline = make_pipeline(database, manual_pages, files={"user-1/good.pdf": b"%PDF"})
    queue = IngestionQueue(pipeline, database)
    queue.start()

    await queue.enqueue(make_job("doc-bad", "user-1/missing.pdf"))
    await queue.enqueue(make_job("doc-good", "user-1/good.pdf"))
    await asyncio.wait_for(queue.join(), timeout=10)
    await queue.stop()

    assert database.get_state("doc-bad").stage == "failed_downloading"
    assert database.get_state("doc-good").status == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_stop_leaves_unstarted_jobs_pending(database, manual_pages):
    pipeline = make_pipeline(database, manual_pages)
    queue = IngestionQueue(pipeline, database)
    await queue.enqueue(make_job("doc-1"))

    queue.start()
    await queue.stop()

    assert not queue.running
    assert queue.pending == 0
    assert database.get_state("doc-1").status in (ProcessingStatus.PENDING, ProcessingStatus.COMPLETED)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
