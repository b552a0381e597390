"""SQLite database operations for document status and chunk records."""
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from execution.models import DocumentProcessingState, ProcessingStatus
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

NON_TERMINAL = (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Manages SQLite database operations."""

    def __init__(self, db_path: Path = config.DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema_sql)
            conn.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        user_id: str,
        filename: str,
        file_path: str,
        file_hash: Optional[str] = None,
        document_id: Optional[str] = None
    ) -> str:
        """Insert a new document record in `pending` state.

        Args:
            user_id: Owner of the document
            filename: Original file name
            file_path: Location the file can be downloaded from
            file_hash: SHA256 of the file, for duplicate detection
            document_id: Use this id instead of generating one

        Returns:
            Document UUID
        """
        document_id = document_id or str(uuid.uuid4())
        now = _now()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, user_id, filename, file_path, file_hash, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
                """,
                (document_id, user_id, filename, file_path, file_hash, now, now)
            )
            conn.commit()

        logger.info(f"Created document: {filename} (ID: {document_id})")
        return document_id

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return dict(row) if row else None

    def get_document_by_hash(self, user_id: str, file_hash: str) -> Optional[Dict[str, Any]]:
        """Find a document this user already uploaded with the same content."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE user_id = ? AND file_hash = ?",
                (user_id, file_hash)
            ).fetchone()
            return dict(row) if row else None

    def list_documents(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM documents ORDER BY created_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE user_id = ? ORDER BY created_at DESC",
                    (user_id,)
                ).fetchall()
            return [dict(row) for row in rows]

    def get_document_names(self, document_ids: Sequence[str]) -> Dict[str, str]:
        if not document_ids:
            return {}
        placeholders = ",".join("?" for _ in document_ids)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT id, filename FROM documents WHERE id IN ({placeholders})",
                list(document_ids)
            ).fetchall()
            return {row['id']: row['filename'] for row in rows}

    def get_state(self, document_id: str) -> Optional[DocumentProcessingState]:
        """Read a document's processing state."""
        row = self.get_document(document_id)
        if row is None:
            return None
        return DocumentProcessingState(
            document_id=row['id'],
            status=row['status'],
            stage=row['processing_stage'],
            error_message=row['error_message'],
            total_pages=row['total_pages'],
            total_chunks=row['total_chunks']
        )

    def _transition(self, document_id: str, assignments: str, params: tuple) -> bool:
        # Terminal documents are never updated by a transition
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE documents
                SET {assignments}, updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (*params, _now(), document_id, *NON_TERMINAL)
            )
            conn.commit()
            return cursor.rowcount > 0

    def mark_processing(self, document_id: str, stage: str) -> bool:
        """Record that `stage` is starting.

        Returns:
            False if the document is missing or already terminal
        """
        return self._transition(
            document_id,
            "status = 'processing', processing_stage = ?, error_message = NULL",
            (stage,)
        )

    def mark_completed(self, document_id: str, total_pages: int, total_chunks: int) -> bool:
        return self._transition(
            document_id,
            "status = 'completed', processing_stage = 'completed', total_pages = ?, total_chunks = ?",
            (total_pages, total_chunks)
        )

    def mark_failed(self, document_id: str, stage: str, error_message: str) -> bool:
        """Record a failure at `stage` as status failed, stage failed_<stage>."""
        return self._transition(
            document_id,
            "status = 'failed', processing_stage = ?, error_message = ?",
            (f"failed_{stage}", error_message)
        )

    def reset_document(self, document_id: str, file_path: Optional[str] = None) -> bool:
        """Put a terminal document back to pending so it can be processed again.

        Args:
            document_id: Document to reset
            file_path: Stored location of a fresh upload, if the file moved
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE documents
                SET status = 'pending', processing_stage = NULL, error_message = NULL,
                    total_pages = 0, total_chunks = 0, file_path = COALESCE(?, file_path),
                    updated_at = ?
                WHERE id = ?
                """,
                (file_path, _now(), document_id)
            )
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            conn.commit()
            return cursor.rowcount > 0

    def delete_document(self, document_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            conn.commit()
        logger.info(f"Deleted document {document_id}")

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def insert_chunks(self, records: List[Dict[str, Any]]) -> None:
        """Bulk insert per-chunk records.

        Args:
            records: Dicts with the persisted chunk fields (see Chunk.to_record)
        """
        rows = [{**record, 'embedding': json.dumps(record['embedding'])} for record in records]
        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO chunks
                    (chunk_id, document_id, user_id, chunk_text, chunk_tokens, page_number,
                     chunk_index, section_title, embedding, embedding_model)
                VALUES
                    (:chunk_id, :document_id, :user_id, :chunk_text, :chunk_tokens, :page_number,
                     :chunk_index, :section_title, :embedding, :embedding_model)
                """,
                rows
            )
            conn.commit()

        logger.info(f"Inserted {len(records)} chunk records")

    def get_chunks(self, document_id: str) -> List[Dict[str, Any]]:
        """Retrieve all chunk records for a document, in index order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,)
            ).fetchall()

        records = []
        for row in rows:
            record = dict(row)
            record['embedding'] = json.loads(record['embedding'])
            records.append(record)
        return records
