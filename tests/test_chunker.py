"""Test chunker functionality."""
import pytest

from ingestion.chunker import ChunkingEngine, make_chunk_id
from ingestion.models import ChunkingOptions, PageContent


def make_engine(size=600, overlap=100, **options):
    return ChunkingEngine(ChunkingOptions(chunk_size_tokens=size, chunk_overlap_tokens=overlap, **options))


def test_single_chunk():
    """Test that a short page creates a single chunk."""
    engine = make_engine()
    page = PageContent(page_number=1, text="This is a short page. It should fit in one chunk.")

    result = engine.chunk([page], "doc-1")

    assert result.total_chunks == 1
    chunk = result.chunks[0]
    assert chunk.id == "doc-1-chunk-0"
    assert chunk.chunk_index == 0
    assert chunk.page_number == 1
    assert chunk.text == page.text
    assert chunk.page_position_start == 0
    assert chunk.page_position_end == len(page.text)


def test_long_page_splits_with_overlap():
    """A 1500-token page at 600/100 becomes three chunks sharing overlap."""
    engine = make_engine(preserve_sentences=False)
    text = "cat " * 1500
    assert engine.counter.count(text.strip()) == 1500

    chunks = engine.chunk([PageContent(page_number=1, text=text)], "doc-1").chunks

    assert len(chunks) == 3
    assert all(c.token_count <= 600 for c in chunks)
    for previous, current in zip(chunks, chunks[1:]):
        seed = engine.extract_overlap_text(previous.text, 100)
        assert current.text.startswith(seed)
        assert engine.counter.count(seed) <= 100


def test_chunks_never_span_pages():
    """Each chunk's text comes from exactly one page."""
    engine = make_engine(size=50, overlap=10)
    pages = [
        PageContent(page_number=1, text=" ".join(f"alpha{i}" for i in range(80))),
        PageContent(page_number=2, text=" ".join(f"beta{i}" for i in range(80))),
    ]

    chunks = engine.chunk(pages, "doc-1").chunks

    for chunk in chunks:
        if chunk.page_number == 1:
            assert "beta" not in chunk.text
        else:
            assert "alpha" not in chunk.text
    assert {c.page_number for c in chunks} == {1, 2}


def test_chunk_indices_are_contiguous_across_pages():
    engine = make_engine(size=40, overlap=5)
    pages = [PageContent(page_number=n, text=" ".join(f"w{n}x{i}" for i in range(60))) for n in (1, 2, 5)]

    chunks = engine.chunk(pages, "doc-9").chunks

    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert [c.id for c in chunks] == [make_chunk_id("doc-9", i) for i in range(len(chunks))]
    assert engine.validate_chunking(chunks).is_valid


def test_preserve_sentences_cuts_at_sentence_end():
    """With sentence preservation a split chunk ends on a terminator."""
    engine = make_engine(size=60, overlap=0)
    sentence = "The pump must be inspected before every use by a trained operator."
    text = " ".join([sentence] * 12)

    chunks = engine.chunk([PageContent(page_number=1, text=text)], "doc-1").chunks

    assert len(chunks) > 1
    for chunk in chunks[:-1]:
        assert chunk.text.endswith(".")


def test_empty_page_produces_no_chunks():
    engine = make_engine()
    pages = [PageContent(page_number=1, text="   \n  "), PageContent(page_number=2, text="Real content.")]

    chunks = engine.chunk(pages, "doc-1").chunks

    assert len(chunks) == 1
    assert chunks[0].page_number == 2
    assert chunks[0].chunk_index == 0


def test_section_title_from_detected_header():
    """The first header on a page becomes the chunk's section title."""
    engine = make_engine()
    page = PageContent(page_number=3, text="4.2 Safety Checks\nVerify that the valve is closed.")

    chunk = engine.chunk([page], "doc-1").chunks[0]

    assert chunk.section_title == "4.2 Safety Checks"
    assert chunk.metadata.section_numbers == ["4.2"]


def test_metadata_flags():
    """Semantic cues are detected in chunk text."""
    engine = make_engine()
    text = (
        "Procedure: isolate the unit.\n"
        "1. Close the valve.\n"
        "2. Lock the breaker.\n"
        "Torque is defined as rotational force. See section 5.1 for limits."
    )

    metadata = engine.chunk([PageContent(page_number=1, text=text)], "doc-1").chunks[0].metadata

    assert metadata.contains_procedure
    assert metadata.contains_steps
    assert metadata.contains_definition
    assert "5.1" in metadata.cross_references


def test_invalid_options_rejected():
    """Overlap must be smaller than size, and chunks may not span pages."""
    with pytest.raises(ValueError):
        ChunkingOptions(chunk_size_tokens=100, chunk_overlap_tokens=100)
    with pytest.raises(ValueError):
        ChunkingOptions(chunk_size_tokens=100, chunk_overlap_tokens=10, preserve_page_boundaries=False)


def test_validate_chunking_reports_problems():
    engine = make_engine()
    chunks = engine.chunk(
        [PageContent(page_number=1, text="First page."), PageContent(page_number=2, text="Second page.")],
        "doc-1"
    ).chunks
    broken = [chunks[1], chunks[0].model_copy(update={"chunk_index": 5})]

    validation = engine.validate_chunking(broken)

    assert not validation.is_valid
    assert any("gap" in issue for issue in validation.issues)
    assert any("regression" in issue for issue in validation.issues)
    assert not engine.validate_chunking([]).is_valid


def test_rechunk_reproduces_chunks():
    """Re-chunking with the same options strips overlap and rebuilds the same chunks."""
    engine = make_engine(size=80, overlap=20)
    text = " ".join(f"token{i}" for i in range(400))
    original = engine.chunk([PageContent(page_number=1, text=text)], "doc-1")

    rebuilt = engine.rechunk(original.chunks, "doc-1")

    assert [c.text for c in rebuilt.chunks] == [c.text for c in original.chunks]
    assert rebuilt.total_tokens == original.total_tokens


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
