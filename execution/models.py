"""Pydantic models for document processing."""
from enum import Enum

from pydantic import BaseModel


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStage(str, Enum):
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"

    @property
    def failed(self) -> str:
        return f"failed_{self.value}"


TERMINAL_STATUSES = (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)

STAGE_PROGRESS = {
    ProcessingStage.DOWNLOADING.value: 10,
    ProcessingStage.EXTRACTING.value: 30,
    ProcessingStage.CHUNKING.value: 50,
    ProcessingStage.EMBEDDING.value: 70,
    ProcessingStage.STORING.value: 90,
    "completed": 100,
}


class DocumentProcessingState(BaseModel):
    """Persisted lifecycle of one document's ingestion."""
    document_id: str
    status: ProcessingStatus = ProcessingStatus.PENDING
    stage: str | None = None  # a ProcessingStage value, "completed" or "failed_<stage>"
    error_message: str | None = None
    total_pages: int = 0
    total_chunks: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class IngestionJob(BaseModel):
    """One unit of ingestion work handed to the queue."""
    document_id: str
    user_id: str
    file_path: str
    filename: str


class ProcessingProgress(BaseModel):
    percentage: int
    stage_label: str


def calculate_progress(state: DocumentProcessingState) -> ProcessingProgress:
    """Map a processing state to a progress percentage and label."""
    if state.status == ProcessingStatus.PENDING:
        return ProcessingProgress(percentage=0, stage_label="queued")
    if state.status == ProcessingStatus.COMPLETED:
        return ProcessingProgress(percentage=100, stage_label="completed")
    stage = state.stage or ""
    if state.status == ProcessingStatus.FAILED:
        reached = stage.removeprefix("failed_")
        return ProcessingProgress(percentage=STAGE_PROGRESS.get(reached, 0), stage_label=stage or "failed")
    return ProcessingProgress(percentage=STAGE_PROGRESS.get(stage, 0), stage_label=stage or "processing")
