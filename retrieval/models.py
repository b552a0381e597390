"""Pydantic models for query-time retrieval and answering."""
from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class QueryType(str, Enum):
    PROCEDURAL = "procedural"
    DEFINITIONAL = "definitional"
    ANALYTICAL = "analytical"
    GENERAL = "general"


class QueryClassification(BaseModel):
    type: QueryType
    confidence: float = Field(ge=0.0, le=1.0)
    matched_patterns: List[str] = Field(default_factory=list)


class SearchRequest(BaseModel):
    """Input to the nearest-neighbour search operation."""
    query_embedding: List[float]
    user_id: str
    similarity_threshold: float = 0.65
    top_k: int = 10
    document_ids: List[str] | None = None


class SearchResult(BaseModel):
    """One hit from the search operation; similarity is cosine in [0, 1]."""
    chunk_id: str
    document_id: str
    document_name: str
    page_number: int
    section_title: str | None = None
    text: str
    similarity_score: float = Field(ge=0.0, le=1.0)


class Citation(BaseModel):
    source: str
    page: int = 0
    section: str = ""


class StructuredResponse(BaseModel):
    """Validated JSON answer from a schema-constrained completion."""
    answer: str
    confidence: float = Field(ge=0.0, le=1.0)
    citations: List[Citation] = Field(default_factory=list)
    sections: List[str] = Field(default_factory=list)
    steps: List[str] = Field(default_factory=list)
    is_fallback: bool = False


class SourceReference(BaseModel):
    document_id: str
    document_name: str
    page_number: int
    section_title: str | None = None
    excerpt: str | None = None
    similarity_score: float


class AnswerMetadata(BaseModel):
    search_time: float = 0.0
    generation_time: float = 0.0
    total_time: float = 0.0
    tokens_used: int = 0
    query_type: QueryType | None = None
    classification_confidence: float | None = None
    model_used: str | None = None
    results_found: int = 0
    error: str | None = None


class RAGAnswer(BaseModel):
    text: str
    sources: List[SourceReference] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    metadata: AnswerMetadata = Field(default_factory=AnswerMetadata)


class RAGStats(BaseModel):
    total_queries: int = 0
    successful_queries: int = 0
    avg_response_time: float = 0.0
    avg_confidence: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.total_queries:
            return 0.0
        return self.successful_queries / self.total_queries
