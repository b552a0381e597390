"""Pydantic models for ingestion module."""
from enum import Enum
from typing import List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

import config


class PageContent(BaseModel):
    """One page of extracted source text."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    text: str
    section_title: str | None = None


class ExtractionResult(BaseModel):
    """Outcome of extracting per-page text from a document."""
    success: bool
    pages: List[PageContent] = Field(default_factory=list)
    error: str | None = None


class SectionType(str, Enum):
    HIERARCHICAL = "hierarchical"
    CHAPTER = "chapter"
    APPENDIX = "appendix"
    LETTER = "letter"
    ROMAN = "roman"
    STEP = "step"


class DetectedSection(BaseModel):
    """A section header found on a page."""
    number: str
    title: str
    type: SectionType


class SectionInfo(BaseModel):
    """A section in the document-wide section map."""
    number: str
    title: str
    level: int
    type: SectionType
    parent_section: str | None = None


class ChunkMetadata(BaseModel):
    """Semantic flags extracted from a chunk's text."""
    contains_procedure: bool = False
    contains_steps: bool = False
    contains_definition: bool = False
    cross_references: List[str] = Field(default_factory=list)
    section_numbers: List[str] = Field(default_factory=list)
    detected_sections: List[DetectedSection] = Field(default_factory=list)


class Chunk(BaseModel):
    """A token-bounded slice of one page's text."""
    id: str
    document_id: str
    page_number: int
    chunk_index: int
    text: str
    token_count: int
    page_position_start: int
    page_position_end: int
    section_title: str | None = None
    embedding: List[float] = Field(default_factory=list)
    embedding_model: str = ""
    metadata: ChunkMetadata | None = None

    def to_record(self, user_id: str) -> Dict[str, Any]:
        """Convert to the persisted per-chunk record."""
        return {
            'chunk_id': self.id,
            'document_id': self.document_id,
            'user_id': user_id,
            'chunk_text': self.text,
            'chunk_tokens': self.token_count,
            'page_number': self.page_number,
            'chunk_index': self.chunk_index,
            'section_title': self.section_title,
            'embedding': self.embedding,
            'embedding_model': self.embedding_model
        }


class HierarchicalChunk(Chunk):
    """Chunk annotated with its place in the section hierarchy."""
    section_hierarchy: List[SectionInfo] = Field(default_factory=list)
    is_complete_procedure: bool = False
    contains_steps: bool = False
    cross_references: List[str] = Field(default_factory=list)


class ChunkingOptions(BaseModel):
    """Options for the chunking engine."""
    chunk_size_tokens: int = Field(default_factory=lambda: config.CHUNK_SIZE_TOKENS, gt=0)
    chunk_overlap_tokens: int = Field(default_factory=lambda: config.CHUNK_OVERLAP_TOKENS, ge=0)
    preserve_page_boundaries: bool = True
    preserve_sentences: bool = True
    include_metadata: bool = True
    detect_section_headers: bool = True
    enhanced_metadata: bool = True

    @model_validator(mode="after")
    def check_budgets(self):
        if self.chunk_overlap_tokens >= self.chunk_size_tokens:
            raise ValueError(
                f"chunk_overlap_tokens ({self.chunk_overlap_tokens}) must be smaller "
                f"than chunk_size_tokens ({self.chunk_size_tokens})"
            )
        if not self.preserve_page_boundaries:
            raise ValueError("Chunks may not span pages: preserve_page_boundaries must be True")
        return self


class HierarchicalChunkingOptions(ChunkingOptions):
    """Options for section-aware chunking."""
    preserve_hierarchy: bool = True
    merge_short_sections: bool = True
    min_section_length: int = 100
    extract_cross_references: bool = True
    identify_procedures: bool = True


class ChunkingResult(BaseModel):
    chunks: List[Chunk]
    total_chunks: int
    total_tokens: int
    avg_tokens_per_chunk: float
    processing_time: float


class HierarchicalChunkingResult(ChunkingResult):
    chunks: List[HierarchicalChunk]
    section_map: Dict[str, SectionInfo] = Field(default_factory=dict)


class ChunkingStats(BaseModel):
    total_chunks: int = 0
    avg_tokens: float = 0.0
    min_tokens: int = 0
    max_tokens: int = 0
    pages_spanned: int = 0


class ChunkingValidation(BaseModel):
    """Result of checking a chunk sequence for consistency."""
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    stats: ChunkingStats
