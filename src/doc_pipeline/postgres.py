"""
PostgreSQL document store and review queue.

Every operation runs in its own transaction. ``apply_classification`` takes a
``SELECT ... FOR UPDATE`` lock on the document row and reuses the same merge
rules as the in-memory store, so concurrent workers handling the same
document serialize on the row and a failed write rolls back completely.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator

import psycopg
import structlog
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .classifier import ClassificationResult
from .documents import Document, DocumentStatus, PersistResult, merge_classification, retrying_status
from .errors import DocumentNotFoundError, PersistenceError

log = structlog.get_logger(__name__)

SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS documents (
      id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      status TEXT NOT NULL,
      document_type TEXT,
      extracted_data JSONB NOT NULL DEFAULT '{}'::jsonb,
      confidence_score DOUBLE PRECISION,
      quality_score DOUBLE PRECISION,
      error_message TEXT,
      classified_by TEXT,
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "ALTER TABLE documents ADD COLUMN IF NOT EXISTS classified_by TEXT",
    """
    CREATE TABLE IF NOT EXISTS document_review_queue (
      document_id TEXT PRIMARY KEY REFERENCES documents(id) ON DELETE CASCADE,
      tenant_id TEXT NOT NULL,
      priority TEXT NOT NULL,
      reason TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'pending',
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_SELECT_DOCUMENT = """
    SELECT id, tenant_id, status, document_type, extracted_data,
           confidence_score, quality_score, error_message, classified_by
    FROM documents
    WHERE id = %s
"""
_SELECT_FOR_UPDATE = _SELECT_DOCUMENT + "    FOR UPDATE\n"

_UPDATE_DOCUMENT = """
    UPDATE documents
    SET status = %s,
        document_type = %s,
        extracted_data = %s,
        confidence_score = %s,
        error_message = %s,
        classified_by = %s,
        updated_at = now()
    WHERE id = %s
"""


def _row_to_document(row: dict[str, Any]) -> Document:
    return Document(
        id=row["id"],
        tenant_id=row["tenant_id"],
        status=DocumentStatus(row["status"]),
        document_type=row["document_type"],
        extracted_data=dict(row["extracted_data"] or {}),
        confidence_score=row["confidence_score"],
        quality_score=row["quality_score"],
        error_message=row["error_message"],
        classified_by=row["classified_by"],
    )


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction."""

    def __init__(self, dsn: str, *, connect: Callable[..., Any] = psycopg.connect) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect = connect

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Yield a dict-row cursor; commit on clean exit, roll back otherwise."""
        try:
            with self._connect(self._dsn, row_factory=dict_row) as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        yield cur
        except psycopg.Error as e:
            raise PersistenceError(f"Database transaction failed: {e}") from e


def ensure_schema(runner: PostgresTxRunner) -> None:
    with runner.transaction() as cur:
        for statement in SCHEMA_SQL:
            cur.execute(statement)
    log.info("Database schema ready", tables=["documents", "document_review_queue"])


class PostgresDocumentStore:
    def __init__(self, runner: PostgresTxRunner):
        self.runner = runner

    @contextmanager
    def locked(self, document_id: str) -> Iterator[Document]:
        """Lock the row and write the yielded document back on clean exit."""
        with self.runner.transaction() as cur:
            cur.execute(_SELECT_FOR_UPDATE, (document_id,))
            row = cur.fetchone()
            if row is None:
                raise DocumentNotFoundError(document_id)
            document = _row_to_document(row)
            yield document
            cur.execute(
                _UPDATE_DOCUMENT,
                (
                    document.status.value,
                    document.document_type,
                    Jsonb(document.extracted_data),
                    document.confidence_score,
                    document.error_message,
                    document.classified_by,
                    document_id,
                ),
            )

    def get(self, document_id: str) -> Document | None:
        with self.runner.transaction() as cur:
            cur.execute(_SELECT_DOCUMENT, (document_id,))
            row = cur.fetchone()
        return _row_to_document(row) if row is not None else None

    def apply_classification(
        self, document_id: str, result: ClassificationResult, job_id: str | None = None
    ) -> PersistResult:
        with self.locked(document_id) as document:
            return merge_classification(document, result, job_id)

    def mark_retrying(self, document_id: str, message: str) -> None:
        with self.locked(document_id) as document:
            document.status = retrying_status(document.status)
            document.error_message = message

    def mark_error(self, document_id: str, message: str) -> None:
        with self.locked(document_id) as document:
            document.status = DocumentStatus.ERROR
            document.error_message = message

    def mark_pending_review(self, document_id: str) -> None:
        with self.locked(document_id) as document:
            if document.status == DocumentStatus.CLASSIFIED:
                document.status = DocumentStatus.PENDING_REVIEW

    def hold_for_posting(self, document_id: str, reason: str) -> None:
        with self.locked(document_id) as document:
            document.error_message = reason


class PostgresReviewQueue:
    """Upserts one pending review entry per document."""

    def __init__(self, runner: PostgresTxRunner):
        self.runner = runner

    def route_to_review(
        self, tenant_id: str, document_id: str, *, priority: str, reason: str
    ) -> bool:
        with self.runner.transaction() as cur:
            cur.execute(
                """
                INSERT INTO document_review_queue (document_id, tenant_id, priority, reason)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (document_id) DO UPDATE
                SET priority = excluded.priority,
                    reason = excluded.reason,
                    status = 'pending',
                    updated_at = now()
                """,
                (document_id, tenant_id, priority, reason),
            )
            return cur.rowcount > 0
