"""
Ingestion job queue.

Uploads are acknowledged as soon as the document record exists; worker
tasks pull jobs off an asyncio.Queue and run them through the pipeline.
"""

import asyncio
from typing import List

from execution.models import IngestionJob
from execution.pipeline import DocumentPipeline
from storage.database import Database
from utils.logger import setup_logger

logger = setup_logger(__name__)


class IngestionQueue:
    """In-process FIFO of ingestion jobs with a pool of worker tasks."""

    def __init__(self, pipeline: DocumentPipeline, status_store: Database):
        self.pipeline = pipeline
        self.status_store = status_store
        self._queue: asyncio.Queue[IngestionJob | None] = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._stopping = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    async def enqueue(self, job: IngestionJob) -> str:
        """Queue a document for processing.

        Creates the pending document record if it does not exist yet.

        Returns:
            The document id, as acknowledgement
        """
        existing = await asyncio.to_thread(self.status_store.get_document, job.document_id)
        if existing is None:
            await asyncio.to_thread(
                self.status_store.create_document,
                job.user_id,
                job.filename,
                job.file_path,
                document_id=job.document_id
            )

        self._queue.put_nowait(job)
        logger.info(f"Job enqueued: {job.filename} (Queue size: {self._queue.qsize()})")
        return job.document_id

    def start(self, workers: int = 1) -> None:
        """Spawn worker tasks on the running loop."""
        if self.running:
            logger.warning("Ingestion workers already running")
            return
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(f"ingest-worker-{i + 1}"))
            for i in range(workers)
        ]
        logger.info(f"Started {workers} ingestion workers")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop the workers once their current jobs finish.

        Jobs still queued are left pending in the status store.
        """
        self._stopping = True
        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers)
        self._workers = []
        logger.info(f"Ingestion workers stopped ({self._discard_pending()} jobs left pending)")

    def _discard_pending(self) -> int:
        discarded = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            self._queue.task_done()
            if job is not None:
                discarded += 1
        return discarded

    async def _worker(self, name: str) -> None:
        logger.debug(f"{name} started")
        while True:
            job = await self._queue.get()
            try:
                if job is None or self._stopping:
                    if job is not None:
                        # Put it back so the pending count stays accurate
                        self._queue.put_nowait(job)
                    return
                state = await self.pipeline.process(job)
                if state is not None:
                    logger.info(f"{name} finished {job.filename}: {state.status.value}")
            except Exception:
                logger.exception(f"Unexpected error in {name}")
            finally:
                self._queue.task_done()
