"""Page-preserving, token-bounded text chunking."""
import time
from typing import Callable, List, NamedTuple, Sequence

from utils.logger import setup_logger
from utils.tokens import TokenCounter, get_token_counter
from ingestion import patterns
from ingestion.models import (
    Chunk,
    ChunkingOptions,
    ChunkingResult,
    ChunkingStats,
    ChunkingValidation,
    ChunkMetadata,
    DetectedSection,
    PageContent,
)
import config

logger = setup_logger(__name__)


class ChunkingError(Exception):
    """Raised when a document cannot be chunked."""
    pass


class TextSegment(NamedTuple):
    """A chunk-sized piece of text and the span of new text it covers."""
    text: str
    start: int
    end: int


def make_chunk_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}-chunk-{chunk_index}"


class ChunkingEngine:
    """Splits per-page text into overlapping, token-bounded chunks.

    Chunks never cross a page boundary and chunk indexes run contiguously
    across the whole document.
    """

    def __init__(
        self,
        options: ChunkingOptions | None = None,
        token_counter: TokenCounter | None = None
    ):
        """Initialize chunker.

        Args:
            options: Default chunking options
            token_counter: Token counter; the shared cl100k_base counter if omitted
        """
        self.options = options or ChunkingOptions()
        self.counter = token_counter or get_token_counter()

        logger.info(
            f"Chunker initialized: {self.options.chunk_size_tokens} tokens, "
            f"{self.options.chunk_overlap_tokens} overlap"
        )

    def chunk(
        self,
        pages: Sequence[PageContent],
        document_id: str,
        options: ChunkingOptions | None = None
    ) -> ChunkingResult:
        """Chunk all pages of a document.

        Args:
            pages: Extracted pages in document order
            document_id: Document identifier
            options: Overrides the engine's default options

        Returns:
            ChunkingResult with the chunks and token totals
        """
        options = options or self.options
        started = time.perf_counter()
        logger.info(f"Chunking document {document_id}: {len(pages)} pages")

        chunks: List[Chunk] = []
        for page in pages:
            page_chunks = self.chunk_page(page, document_id, len(chunks), options)
            chunks.extend(page_chunks)
            logger.debug(f"Page {page.page_number}: {len(page_chunks)} chunks")

        result = self._build_result(chunks, started)
        logger.info(
            f"Created {result.total_chunks} chunks, {result.total_tokens} tokens "
            f"({result.avg_tokens_per_chunk:.1f} avg)"
        )
        return result

    def chunk_page(
        self,
        page: PageContent,
        document_id: str,
        start_index: int,
        options: ChunkingOptions
    ) -> List[Chunk]:
        """Chunk a single page.

        Args:
            page: Page to chunk
            document_id: Document identifier
            start_index: Index of the first chunk on this page
            options: Chunking options

        Returns:
            Chunks for this page
        """
        if not page.text.strip():
            return []

        detected = self.detect_sections(page.text) if options.detect_section_headers else []
        section_title = page.section_title
        if section_title is None and detected:
            section_title = f"{detected[0].number} {detected[0].title}"

        segments = self.split_text(page.text, options)
        return [
            self._create_chunk(
                segment,
                document_id,
                page.page_number,
                start_index + offset,
                section_title,
                detected,
                options
            )
            for offset, segment in enumerate(segments)
        ]

    def split_text(
        self,
        text: str,
        options: ChunkingOptions,
        overlap_fn: Callable[[str, int], str] | None = None,
        reserved_tokens: int = 0
    ) -> List[TextSegment]:
        """Split text into overlapping token-bounded segments.

        Each segment after the first starts with a seed taken from the end of
        the previous segment, then is filled with new text up to the budget.

        Args:
            text: Text to split
            options: Chunking options (size, overlap, sentence preservation)
            overlap_fn: Builds the seed from the previous segment's text
            reserved_tokens: Tokens the caller adds to every segment

        Returns:
            Segments with positions of their new text within `text`
        """
        overlap_fn = overlap_fn or self.extract_overlap_text
        size = options.chunk_size_tokens - reserved_tokens
        overlap = options.chunk_overlap_tokens

        stripped = text.strip()
        if not stripped:
            return []
        if self.counter.count(stripped) <= size:
            start = len(text) - len(text.lstrip())
            return [TextSegment(stripped, start, start + len(stripped))]

        segments: List[TextSegment] = []
        position = 0
        previous = None

        while True:
            while position < len(text) and text[position].isspace():
                position += 1
            if position >= len(text):
                break

            if len(segments) >= config.MAX_CHUNKS_PER_PAGE:
                logger.warning(
                    f"Stopped after {config.MAX_CHUNKS_PER_PAGE} chunks on one page; "
                    f"input looks malformed"
                )
                break

            seed = overlap_fn(previous, overlap) if previous and overlap > 0 else ""
            budget = size - self.counter.count(seed + " ") if seed else size
            if budget <= 0:
                seed, budget = "", size

            main, leftover = self.counter.split_at_token_count(text[position:], budget)
            if not main:
                raise ChunkingError(f"Could not advance past position {position} with a budget of {budget} tokens")

            if options.preserve_sentences and leftover.strip():
                cut = self.counter.last_sentence_end(main)
                if cut is not None and 0 < cut < len(main):
                    main = main[:cut]

            body = main.strip()
            content = f"{seed} {body}" if seed else body
            segments.append(TextSegment(content, position, position + len(main.rstrip())))

            previous = content
            position += len(main)

        return segments

    def extract_overlap_text(self, text: str, overlap_tokens: int) -> str:
        """Take the longest run of trailing words within the overlap budget.

        Args:
            text: Previous chunk text
            overlap_tokens: Token budget for the overlap

        Returns:
            Overlap text (may be empty)
        """
        words = text.split()
        left, right = 0, len(words)
        best = 0
        # Binary search on the number of trailing words
        while left < right:
            mid = (left + right + 1) // 2
            if self.counter.count(" ".join(words[-mid:])) <= overlap_tokens:
                best = mid
                left = mid
            else:
                right = mid - 1
        return " ".join(words[-best:]) if best else ""

    def detect_sections(self, text: str) -> List[DetectedSection]:
        """Find section headers, one per matching line."""
        sections = []
        for line in text.split('\n'):
            match = patterns.match_section_header(line)
            if match:
                section_type, number, title = match
                sections.append(DetectedSection(number=number, title=title, type=section_type))
        return sections

    def build_metadata(self, text: str, detected: List[DetectedSection]) -> ChunkMetadata:
        """Extract semantic flags for a chunk."""
        return ChunkMetadata(
            contains_procedure=patterns.contains_procedure(text),
            contains_steps=patterns.contains_steps(text),
            contains_definition=patterns.contains_definition(text),
            cross_references=patterns.extract_cross_references(text),
            section_numbers=patterns.extract_section_numbers(text),
            detected_sections=[
                s for s in detected
                if s.number in text or s.title[:20] in text
            ]
        )

    def _create_chunk(
        self,
        segment: TextSegment,
        document_id: str,
        page_number: int,
        chunk_index: int,
        section_title: str | None,
        detected: List[DetectedSection],
        options: ChunkingOptions
    ) -> Chunk:
        metadata = None
        if options.include_metadata and options.enhanced_metadata:
            metadata = self.build_metadata(segment.text, detected)

        return Chunk(
            id=make_chunk_id(document_id, chunk_index),
            document_id=document_id,
            page_number=page_number,
            chunk_index=chunk_index,
            text=segment.text,
            token_count=self.counter.count(segment.text),
            page_position_start=segment.start,
            page_position_end=segment.end,
            section_title=section_title,
            metadata=metadata
        )

    def _build_result(self, chunks: List[Chunk], started: float) -> ChunkingResult:
        total_tokens = sum(c.token_count for c in chunks)
        return ChunkingResult(
            chunks=chunks,
            total_chunks=len(chunks),
            total_tokens=total_tokens,
            avg_tokens_per_chunk=total_tokens / len(chunks) if chunks else 0.0,
            processing_time=time.perf_counter() - started
        )

    def validate_chunking(self, chunks: Sequence[Chunk]) -> ChunkingValidation:
        """Check a chunk sequence for empty chunks, index gaps and page order.

        Args:
            chunks: Chunks in index order

        Returns:
            ChunkingValidation with any issues found
        """
        if not chunks:
            return ChunkingValidation(is_valid=False, issues=["No chunks to validate"], stats=ChunkingStats())

        issues = []
        for i, chunk in enumerate(chunks):
            if not chunk.text.strip():
                issues.append(f"Chunk {chunk.chunk_index} is empty")
            if i == 0:
                continue
            previous = chunks[i - 1]
            if chunk.chunk_index != previous.chunk_index + 1:
                issues.append(
                    f"Chunk index gap: {previous.chunk_index} -> {chunk.chunk_index}"
                )
            if chunk.page_number < previous.page_number:
                issues.append(
                    f"Page order regression at chunk {chunk.chunk_index}: "
                    f"page {previous.page_number} -> {chunk.page_number}"
                )

        token_counts = [c.token_count for c in chunks]
        stats = ChunkingStats(
            total_chunks=len(chunks),
            avg_tokens=sum(token_counts) / len(token_counts),
            min_tokens=min(token_counts),
            max_tokens=max(token_counts),
            pages_spanned=len({c.page_number for c in chunks})
        )
        return ChunkingValidation(is_valid=not issues, issues=issues, stats=stats)

    def rechunk(
        self,
        chunks: Sequence[Chunk],
        document_id: str,
        options: ChunkingOptions | None = None
    ) -> ChunkingResult:
        """Rebuild pages from existing chunks and chunk them again.

        Overlap seeds are removed while rebuilding, so each page's text
        appears once.

        Args:
            chunks: Previously produced chunks
            document_id: Document identifier
            options: Options for the new run

        Returns:
            ChunkingResult for the new run
        """
        options = options or self.options
        by_page: dict[int, List[Chunk]] = {}
        for chunk in chunks:
            by_page.setdefault(chunk.page_number, []).append(chunk)

        pages = []
        for page_number in sorted(by_page):
            page_chunks = sorted(by_page[page_number], key=lambda c: c.chunk_index)
            pages.append(PageContent(
                page_number=page_number,
                text=self._merge_page_chunks(page_chunks, options.chunk_overlap_tokens),
                section_title=page_chunks[0].section_title
            ))

        logger.info(f"Re-chunking {len(chunks)} chunks across {len(pages)} pages")
        return self.chunk(pages, document_id, options)

    def _merge_page_chunks(self, page_chunks: List[Chunk], overlap_tokens: int) -> str:
        words = page_chunks[0].text.split()
        for previous, current in zip(page_chunks, page_chunks[1:]):
            current_words = current.text.split()
            seed_words = self.extract_overlap_text(previous.text, overlap_tokens).split() if overlap_tokens else []
            if seed_words and current_words[:len(seed_words)] == seed_words:
                current_words = current_words[len(seed_words):]
            words.extend(current_words)
        return " ".join(words)
