"""
Documents and the Transactional Persister
=========================================

A document moves forward through
``uploaded -> processing -> extracted -> classified -> pending_review -> posted``
and can drop into ``error`` from any state. The pipeline never moves a
document backwards except into ``error``.

Classification results are applied inside one transaction that holds an
exclusive lock on the document. The merge rules live in
``merge_classification`` so the in-memory and PostgreSQL stores apply exactly
the same semantics:

- a document that does not exist raises ``DocumentNotFoundError``;
- extracted fields are merged into the existing structured data, unrelated
  keys survive;
- re-applying the result a document already carries, or redelivering the
  job that classified it, is a no-op that reports the stored result
  (redelivery after a crash or publish failure between commit and ack);
- a document already classified with a *different* result is left alone and
  reported as a conflict.
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Protocol

import structlog

from .classifier import ClassificationResult
from .errors import DocumentNotFoundError

log = structlog.get_logger(__name__)


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    CLASSIFIED = "classified"
    PENDING_REVIEW = "pending_review"
    POSTED = "posted"
    ERROR = "error"


_RANK = {
    DocumentStatus.UPLOADED: 0,
    DocumentStatus.PROCESSING: 1,
    DocumentStatus.EXTRACTED: 2,
    DocumentStatus.CLASSIFIED: 3,
    DocumentStatus.PENDING_REVIEW: 4,
    DocumentStatus.POSTED: 5,
}


def is_classified(status: DocumentStatus) -> bool:
    """True for ``classified`` and every state after it (but not ``error``)."""
    return status != DocumentStatus.ERROR and _RANK[status] >= _RANK[DocumentStatus.CLASSIFIED]


@dataclass
class Document:
    id: str
    tenant_id: str
    status: DocumentStatus = DocumentStatus.EXTRACTED
    document_type: str | None = None
    extracted_data: dict[str, Any] = field(default_factory=dict)
    confidence_score: float | None = None
    quality_score: float | None = None
    error_message: str | None = None
    # Correlation id of the job whose result is stored
    classified_by: str | None = None


@dataclass(frozen=True)
class PersistResult:
    tenant_id: str
    result: ClassificationResult
    status: DocumentStatus
    quality_score: float | None
    replayed: bool = False
    conflict: bool = False


class DocumentStore(Protocol):
    def apply_classification(
        self, document_id: str, result: ClassificationResult, job_id: str | None = None
    ) -> PersistResult: ...

    def mark_retrying(self, document_id: str, message: str) -> None: ...

    def mark_error(self, document_id: str, message: str) -> None: ...

    def mark_pending_review(self, document_id: str) -> None: ...

    def hold_for_posting(self, document_id: str, reason: str) -> None: ...

    def get(self, document_id: str) -> Document | None: ...


def carries_result(document: Document, result: ClassificationResult) -> bool:
    """True if the document already holds exactly this classification."""
    if document.document_type != result.kind:
        return False
    if document.confidence_score is None or abs(document.confidence_score - result.confidence) > 1e-9:
        return False
    return all(document.extracted_data.get(k) == v for k, v in result.fields.items())


def stored_result(document: Document) -> ClassificationResult:
    """The classification a document row currently holds, with its merged data."""
    return ClassificationResult(
        kind=document.document_type or "",
        fields=dict(document.extracted_data),
        confidence=document.confidence_score,
    )


def merge_classification(
    document: Document, result: ClassificationResult, job_id: str | None = None
) -> PersistResult:
    """
    Apply ``result`` to ``document`` in place and describe what happened.

    ``job_id`` is recorded on the row. When the same job is delivered again
    after its commit, the stored classification is returned as a replay even
    if the classifier answered differently this time, so the job is routed
    exactly as it was the first time.

    Must be called while the document is locked.
    """
    if is_classified(document.status):
        replayed = carries_result(document, result) or (
            job_id is not None and document.classified_by == job_id
        )
        if not replayed:
            log.warning(
                "Document already classified with a different result; not overwriting",
                document_id=document.id,
                status=document.status.value,
                stored_type=document.document_type,
                incoming_type=result.kind,
            )
        return PersistResult(
            tenant_id=document.tenant_id,
            result=stored_result(document) if replayed else result,
            status=document.status,
            quality_score=document.quality_score,
            replayed=replayed,
            conflict=not replayed,
        )

    merged = dict(document.extracted_data)
    merged.update(result.fields)
    document.extracted_data = merged
    document.document_type = result.kind
    document.confidence_score = result.confidence
    document.status = DocumentStatus.CLASSIFIED
    document.error_message = None
    document.classified_by = job_id
    return PersistResult(
        tenant_id=document.tenant_id,
        result=stored_result(document),
        status=document.status,
        quality_score=document.quality_score,
    )


def retrying_status(current: DocumentStatus) -> DocumentStatus:
    """Status shown while a job waits in the retry queue."""
    if is_classified(current):
        return current
    return DocumentStatus.EXTRACTED


class InMemoryDocumentStore:
    """
    Thread-safe document store with per-document locks.

    Every mutation works on a deep copy of the row and swaps it in only when
    the block finishes without raising, which gives the same all-or-nothing
    behaviour as a database transaction.
    """

    def __init__(self, documents: list[Document] | None = None):
        self._rows: dict[str, Document] = {}
        self._guard = threading.Lock()
        self._row_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        for document in documents or []:
            self.add(document)

    def add(self, document: Document) -> None:
        with self._guard:
            self._rows[document.id] = copy.deepcopy(document)

    def delete(self, document_id: str) -> None:
        with self._guard:
            self._rows.pop(document_id, None)

    def get(self, document_id: str) -> Document | None:
        with self._guard:
            row = self._rows.get(document_id)
            return copy.deepcopy(row) if row is not None else None

    @contextmanager
    def locked(self, document_id: str) -> Iterator[Document]:
        """Lock the row and yield a working copy committed on clean exit."""
        with self._guard:
            row_lock = self._row_locks[document_id]
        with row_lock:
            with self._guard:
                row = self._rows.get(document_id)
                if row is None:
                    raise DocumentNotFoundError(document_id)
                working = copy.deepcopy(row)
            yield working
            with self._guard:
                if document_id not in self._rows:
                    raise DocumentNotFoundError(document_id)
                self._rows[document_id] = working

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
