"""Section-aware chunking on top of the page chunker."""
import re
import time
from typing import Dict, List, NamedTuple, Sequence

from utils.logger import setup_logger
from utils.tokens import TokenCounter
from ingestion import patterns
from ingestion.chunker import ChunkingEngine, TextSegment, make_chunk_id
from ingestion.models import (
    HierarchicalChunk,
    HierarchicalChunkingOptions,
    HierarchicalChunkingResult,
    PageContent,
    SectionInfo,
    SectionType,
)

logger = setup_logger(__name__)

SENTENCE_SPLIT = re.compile(r'(?<=[.!?])\s+')


class SectionSpan(NamedTuple):
    """A run of lines on one page belonging to a section (None for preamble)."""
    section: SectionInfo | None
    start_line: int
    end_line: int


def section_level(number: str, section_type: SectionType) -> int:
    """Nesting depth of a section number."""
    if section_type == SectionType.HIERARCHICAL:
        return number.count('.')
    if section_type in (SectionType.LETTER, SectionType.ROMAN):
        return 1
    if section_type == SectionType.STEP:
        return 2
    return 0


def parent_section(number: str, section_type: SectionType) -> str | None:
    if section_type == SectionType.HIERARCHICAL and '.' in number:
        return number.rsplit('.', 1)[0]
    return None


class HierarchicalChunkingEngine(ChunkingEngine):
    """Chunks pages along section boundaries.

    A first pass builds a document-wide section map; a second pass splits
    each page into section spans and chunks every span separately. Pages
    without recognizable sections fall back to plain page chunking.
    """

    def __init__(
        self,
        options: HierarchicalChunkingOptions | None = None,
        token_counter: TokenCounter | None = None
    ):
        super().__init__(options or HierarchicalChunkingOptions(), token_counter)

    def chunk(
        self,
        pages: Sequence[PageContent],
        document_id: str,
        options: HierarchicalChunkingOptions | None = None
    ) -> HierarchicalChunkingResult:
        """Chunk all pages with section awareness.

        Args:
            pages: Extracted pages in document order
            document_id: Document identifier
            options: Overrides the engine's default options

        Returns:
            HierarchicalChunkingResult including the section map
        """
        options = options or self.options
        if not isinstance(options, HierarchicalChunkingOptions):
            options = HierarchicalChunkingOptions(**options.model_dump())
        started = time.perf_counter()

        section_map = self.analyze_document_structure(pages)
        logger.info(f"Hierarchical chunking {document_id}: {len(section_map)} sections identified")

        chunks: List[HierarchicalChunk] = []
        for page in pages:
            page_chunks = self.chunk_page_hierarchically(page, document_id, len(chunks), options, section_map)
            chunks.extend(page_chunks)

        base = self._build_result(chunks, started)
        complete = sum(1 for c in chunks if c.is_complete_procedure)
        logger.info(
            f"Created {base.total_chunks} chunks, {base.total_tokens} tokens, "
            f"{complete} complete procedures"
        )
        return HierarchicalChunkingResult(
            chunks=chunks,
            total_chunks=base.total_chunks,
            total_tokens=base.total_tokens,
            avg_tokens_per_chunk=base.avg_tokens_per_chunk,
            processing_time=base.processing_time,
            section_map=section_map
        )

    def analyze_document_structure(self, pages: Sequence[PageContent]) -> Dict[str, SectionInfo]:
        """Build the section map from every header line in the document."""
        section_map: Dict[str, SectionInfo] = {}
        for page in pages:
            for line in page.text.split('\n'):
                match = patterns.match_section_header(line)
                if not match:
                    continue
                section_type, number, title = match
                section_map[number] = SectionInfo(
                    number=number,
                    title=title,
                    level=section_level(number, section_type),
                    type=section_type,
                    parent_section=parent_section(number, section_type)
                )
        return section_map

    def identify_page_sections(
        self,
        text: str,
        section_map: Dict[str, SectionInfo]
    ) -> List[SectionSpan]:
        """Locate section spans on a page.

        A line opens a span when it contains a known section number and the
        first 20 characters of that section's title. Lines before the first
        span become a preamble span without a section.

        Args:
            text: Page text
            section_map: Document-wide section map

        Returns:
            Spans covering the page from the first non-empty line on
        """
        lines = text.split('\n')
        starts: List[tuple] = []
        for i, line in enumerate(lines):
            stripped = line.strip()
            if not stripped:
                continue
            for number, info in section_map.items():
                if number in stripped and info.title[:20] in stripped:
                    starts.append((info, i))
                    break

        if not starts:
            return []

        spans = []
        first_line = starts[0][1]
        if first_line > 0 and any(line.strip() for line in lines[:first_line]):
            spans.append(SectionSpan(None, 0, first_line - 1))

        for position, (info, start) in enumerate(starts):
            end = starts[position + 1][1] - 1 if position + 1 < len(starts) else len(lines) - 1
            spans.append(SectionSpan(info, start, end))
        return spans

    def merge_short_spans(
        self,
        spans: List[SectionSpan],
        lines: List[str],
        min_length: int
    ) -> List[SectionSpan]:
        """Fold spans shorter than min_length characters into the next span."""
        merged: List[SectionSpan] = []
        pending: SectionSpan | None = None
        for span in spans:
            if pending is not None:
                span = SectionSpan(pending.section or span.section, pending.start_line, span.end_line)
                pending = None
            text = '\n'.join(lines[span.start_line:span.end_line + 1]).strip()
            if len(text) < min_length:
                pending = span
            else:
                merged.append(span)
        if pending is not None:
            merged.append(pending)
        return merged

    def chunk_page_hierarchically(
        self,
        page: PageContent,
        document_id: str,
        start_index: int,
        options: HierarchicalChunkingOptions,
        section_map: Dict[str, SectionInfo]
    ) -> List[HierarchicalChunk]:
        if not page.text.strip():
            return []

        spans = self.identify_page_sections(page.text, section_map) if options.preserve_hierarchy else []
        if not spans:
            return self._chunk_with_enhanced_metadata(page, document_id, start_index, options, section_map)

        lines = page.text.split('\n')
        if options.merge_short_sections:
            spans = self.merge_short_spans(spans, lines, options.min_section_length)
        return self._chunk_by_sections(page, document_id, start_index, options, spans, section_map)

    def _chunk_by_sections(
        self,
        page: PageContent,
        document_id: str,
        start_index: int,
        options: HierarchicalChunkingOptions,
        spans: List[SectionSpan],
        section_map: Dict[str, SectionInfo]
    ) -> List[HierarchicalChunk]:
        lines = page.text.split('\n')
        line_starts = []
        offset = 0
        for line in lines:
            line_starts.append(offset)
            offset += len(line) + 1

        chunks: List[HierarchicalChunk] = []
        for span in spans:
            span_start = line_starts[span.start_line]
            span_end = line_starts[span.end_line] + len(lines[span.end_line])
            span_text = page.text[span_start:span_end]
            if not span_text.strip():
                continue

            if span.section is None:
                segments = self.split_text(span_text, options)
                hierarchy = None
            else:
                segments = self._split_section(span_text, options)
                hierarchy = self.build_section_hierarchy(span.section, section_map)

            for segment in segments:
                chunk_hierarchy = hierarchy
                if chunk_hierarchy is None:
                    chunk_hierarchy = self.find_mentioned_sections(segment.text, section_map)
                chunks.append(self._create_hierarchical_chunk(
                    TextSegment(segment.text, span_start + segment.start, span_start + segment.end),
                    document_id,
                    page.page_number,
                    start_index + len(chunks),
                    span.section.title if span.section else page.section_title,
                    chunk_hierarchy,
                    options
                ))
        return chunks

    def _split_section(self, section_text: str, options: HierarchicalChunkingOptions) -> List[TextSegment]:
        """Split a section, repeating its header line at the top of every piece."""
        stripped = section_text.strip()
        leading = len(section_text) - len(section_text.lstrip())
        if self.counter.count(stripped) <= options.chunk_size_tokens:
            return [TextSegment(stripped, leading, leading + len(stripped))]

        first_line, _, body = stripped.partition('\n')
        header = first_line.strip()
        header_tokens = self.counter.count(header + '\n')
        if not body.strip() or header_tokens >= options.chunk_size_tokens // 2:
            logger.debug(f"Section header too large to anchor: {header[:40]}")
            return self.split_text(section_text, options)

        body_offset = leading + len(first_line) + 1
        return [
            TextSegment(f"{header}\n{segment.text}", body_offset + segment.start, body_offset + segment.end)
            for segment in self.split_text(
                body,
                options,
                overlap_fn=self.extract_section_overlap,
                reserved_tokens=header_tokens
            )
        ]

    def extract_section_overlap(self, text: str, overlap_tokens: int) -> str:
        """Overlap built from whole trailing sentences.

        Falls back to word-level overlap when even the last sentence is over
        budget.
        """
        sentences = [s.strip() for s in SENTENCE_SPLIT.split(text.strip()) if s.strip()]
        selected: List[str] = []
        for sentence in reversed(sentences):
            candidate = ' '.join([sentence] + selected)
            if self.counter.count(candidate) > overlap_tokens:
                break
            selected.insert(0, sentence)

        if selected:
            return ' '.join(selected)
        return self.extract_overlap_text(text, overlap_tokens)

    def build_section_hierarchy(
        self,
        section: SectionInfo,
        section_map: Dict[str, SectionInfo]
    ) -> List[SectionInfo]:
        """Section path from the root down to `section`."""
        hierarchy = [section]
        seen = {section.number}
        parent = section.parent_section
        while parent and parent in section_map and parent not in seen:
            seen.add(parent)
            hierarchy.insert(0, section_map[parent])
            parent = section_map[parent].parent_section
        return hierarchy

    def find_mentioned_sections(
        self,
        text: str,
        section_map: Dict[str, SectionInfo]
    ) -> List[SectionInfo]:
        """Known sections whose number or title prefix appears in text, by level."""
        lowered = text.lower()
        mentioned = [
            info for number, info in section_map.items()
            if number in text or info.title.lower()[:20] in lowered
        ]
        return sorted(mentioned, key=lambda s: s.level)

    def _chunk_with_enhanced_metadata(
        self,
        page: PageContent,
        document_id: str,
        start_index: int,
        options: HierarchicalChunkingOptions,
        section_map: Dict[str, SectionInfo]
    ) -> List[HierarchicalChunk]:
        standard_chunks = self.chunk_page(page, document_id, start_index, options)
        return [
            HierarchicalChunk(
                **chunk.model_dump(),
                **self._semantic_flags(chunk.text, options),
                section_hierarchy=self.find_mentioned_sections(chunk.text, section_map)
            )
            for chunk in standard_chunks
        ]

    def _semantic_flags(self, text: str, options: HierarchicalChunkingOptions) -> dict:
        return {
            'is_complete_procedure': options.identify_procedures and patterns.is_complete_procedure(text),
            'contains_steps': patterns.contains_steps(text),
            'cross_references': patterns.extract_cross_references(text) if options.extract_cross_references else []
        }

    def _create_hierarchical_chunk(
        self,
        segment: TextSegment,
        document_id: str,
        page_number: int,
        chunk_index: int,
        section_title: str | None,
        hierarchy: List[SectionInfo],
        options: HierarchicalChunkingOptions
    ) -> HierarchicalChunk:
        metadata = None
        if options.include_metadata and options.enhanced_metadata:
            metadata = self.build_metadata(segment.text, self.detect_sections(segment.text))

        return HierarchicalChunk(
            id=make_chunk_id(document_id, chunk_index),
            document_id=document_id,
            page_number=page_number,
            chunk_index=chunk_index,
            text=segment.text,
            token_count=self.counter.count(segment.text),
            page_position_start=segment.start,
            page_position_end=segment.end,
            section_title=section_title,
            metadata=metadata,
            section_hierarchy=hierarchy,
            **self._semantic_flags(segment.text, options)
        )
