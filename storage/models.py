"""Pydantic models for chunk storage."""
from typing import List

from pydantic import BaseModel, Field


class ChunkStorageError(BaseModel):
    chunk_index: int
    error: str


class StorageResult(BaseModel):
    """Outcome of persisting a document's embedded chunks."""
    success: bool
    stored_count: int = 0
    failed_count: int = 0
    errors: List[ChunkStorageError] = Field(default_factory=list)
    processing_time: float = 0.0
