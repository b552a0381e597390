"""Test document status records and chunk persistence."""
import pytest

from execution.models import ProcessingStatus


def create(database, **kwargs):
    defaults = {"user_id": "user-1", "filename": "manual.pdf", "file_path": "user-1/manual.pdf"}
    return database.create_document(**{**defaults, **kwargs})


def test_create_and_read_state(database):
    document_id = create(database, file_hash="abc123")

    state = database.get_state(document_id)

    assert state.status == ProcessingStatus.PENDING
    assert state.stage is None
    assert database.get_document_by_hash("user-1", "abc123")["id"] == document_id
    assert database.get_document_by_hash("user-2", "abc123") is None
    assert database.get_state("missing") is None


def test_explicit_document_id(database):
    assert create(database, document_id="doc-42") == "doc-42"
    assert database.get_document("doc-42")["filename"] == "manual.pdf"


def test_stage_transitions(database):
    document_id = create(database)

    assert database.mark_processing(document_id, "downloading")
    assert database.mark_processing(document_id, "extracting")
    state = database.get_state(document_id)
    assert state.status == ProcessingStatus.PROCESSING
    assert state.stage == "extracting"

    assert database.mark_completed(document_id, total_pages=3, total_chunks=7)
    state = database.get_state(document_id)
    assert state.status == ProcessingStatus.COMPLETED
    assert state.stage == "completed"
    assert (state.total_pages, state.total_chunks) == (3, 7)


def test_failure_records_stage_and_message(database):
    document_id = create(database)
    database.mark_processing(document_id, "embedding")

    assert database.mark_failed(document_id, "embedding", "model crashed")

    state = database.get_state(document_id)
    assert state.status == ProcessingStatus.FAILED
    assert state.stage == "failed_embedding"
    assert state.error_message == "model crashed"


def test_terminal_documents_are_never_updated(database):
    """Once completed or failed, no transition applies."""
    document_id = create(database)
    database.mark_completed(document_id, 1, 1)

    assert not database.mark_processing(document_id, "downloading")
    assert not database.mark_failed(document_id, "storing", "late failure")
    assert database.get_state(document_id).status == ProcessingStatus.COMPLETED

    assert not database.mark_processing("missing", "downloading")


def test_reset_allows_reprocessing(database):
    document_id = create(database)
    database.mark_failed(document_id, "extracting", "Text extraction failed: No text content found")

    assert database.reset_document(document_id)

    state = database.get_state(document_id)
    assert state.status == ProcessingStatus.PENDING
    assert state.error_message is None
    assert database.mark_processing(document_id, "downloading")


def test_reset_points_at_new_upload(database):
    document_id = create(database)
    database.mark_failed(document_id, "downloading", "File not found: user-1/manual.pdf")

    assert database.reset_document(document_id, file_path="user-1/abc123_manual.pdf")
    assert database.get_document(document_id)["file_path"] == "user-1/abc123_manual.pdf"

    assert database.reset_document(document_id)
    assert database.get_document(document_id)["file_path"] == "user-1/abc123_manual.pdf"


def test_chunk_records(database):
    document_id = create(database)
    records = [
        {
            "chunk_id": f"{document_id}-chunk-{i}",
            "document_id": document_id,
            "user_id": "user-1",
            "chunk_text": f"Chunk {i}",
            "chunk_tokens": 2,
            "page_number": 1,
            "chunk_index": i,
            "section_title": None,
            "embedding": [0.25, -0.5],
            "embedding_model": "fake-embed",
        }
        for i in (1, 0)
    ]

    database.insert_chunks(records)

    stored = database.get_chunks(document_id)
    assert [r["chunk_index"] for r in stored] == [0, 1]
    assert stored[0]["embedding"] == [0.25, -0.5]

    database.delete_document(document_id)
    assert database.get_chunks(document_id) == []
    assert database.get_document(document_id) is None


def test_list_documents_by_user(database):
    create(database)
    create(database, user_id="user-2", filename="other.pdf")

    assert [d["filename"] for d in database.list_documents("user-2")] == ["other.pdf"]
    assert len(database.list_documents()) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
