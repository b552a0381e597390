"""Pydantic models shared by embedding and generation providers."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    """Retry, timeout and batching settings for one provider instance."""
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)  # seconds, doubled per attempt
    timeout: float = Field(default=30.0, gt=0)  # seconds, per attempt
    max_batch_size: int = Field(default=50, ge=1)
    batch_delay: float = Field(default=0.1, ge=0)  # seconds between sub-batches

    @classmethod
    def local(cls, **overrides) -> "ProviderConfig":
        return cls(**{"max_retries": 3, "retry_delay": 1.0, "timeout": 30.0, "max_batch_size": 50, **overrides})

    @classmethod
    def remote(cls, **overrides) -> "ProviderConfig":
        return cls(**{"max_retries": 5, "retry_delay": 2.0, "timeout": 60.0, "max_batch_size": 100, **overrides})


class ProviderStats(BaseModel):
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_processing_time: float = 0.0
    error_rate: float = 0.0
    last_request_time: datetime | None = None


class ModelInfo(BaseModel):
    name: str
    provider: str
    dimensions: int | None = None
    max_tokens: int | None = None


class EmbeddingResult(BaseModel):
    vector: List[float]
    dimensions: int
    model: str
    token_count: int
    processing_time: float = 0.0


class ItemError(BaseModel):
    """One failed item of a batch."""
    index: int
    error: str
    text_preview: str


class BatchEmbeddingResult(BaseModel):
    results: List[EmbeddingResult | None]  # aligned with the input texts
    total_tokens: int = 0
    processing_time: float = 0.0
    errors: List[ItemError] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class FinishReason(str, Enum):
    COMPLETED = "completed"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    ERROR = "error"


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationRequest(BaseModel):
    prompt: str
    max_tokens: int | None = None
    temperature: float | None = None
    stop_sequences: List[str] = Field(default_factory=list)
    system_prompt: str | None = None
    json_schema: Dict[str, Any] | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    text: str
    finish_reason: FinishReason = FinishReason.COMPLETED
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str
    processing_time: float = 0.0
