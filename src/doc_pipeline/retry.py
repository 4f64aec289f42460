"""
Retry Scheduler
===============

Turns a failed attempt into either a retry or a dead letter. The attempt
count lives in the message, so the decision depends only on the message and
configuration:

    ATTEMPTING(n) -> SUCCESS | ATTEMPTING(n + 1) | DEAD_LETTERED

A retry copy goes to the stage's delay queue, where the queue TTL holds it
for the retry delay before it expires back into the primary queue. A dead
letter carries the original message along with the final error and attempt
count.
"""

from __future__ import annotations

import structlog

from .broker import QueueTopology
from .documents import DocumentStore
from .envelope import DeadLetterRecord, JobMessage, utcnow_iso
from .errors import DocumentNotFoundError, PipelineError
from .outcomes import DeadLetter, OutboundMessage, Retry

log = structlog.get_logger(__name__)


def describe_error(error: BaseException) -> str:
    text = str(error).strip()
    return f"{type(error).__name__}: {text}" if text else type(error).__name__


class RetryScheduler:
    def __init__(
        self,
        *,
        documents: DocumentStore,
        topology: QueueTopology,
        max_retries: int,
        dead_letter_on_not_found: bool = False,
    ):
        self.documents = documents
        self.topology = topology
        self.max_retries = max_retries
        self.dead_letter_on_not_found = dead_letter_on_not_found

    def schedule(self, message: JobMessage, error: BaseException) -> Retry | DeadLetter:
        next_attempt = message.attempts + 1
        reason = describe_error(error)
        give_up = next_attempt > self.max_retries or not self._retryable(error)

        if give_up:
            return self._dead_letter(message, next_attempt, reason)

        self._mark(
            self.documents.mark_retrying,
            message.document_id,
            f"Classification failed (attempt {next_attempt}/{self.max_retries}), retrying: {reason}",
        )
        retry_copy = message.for_retry(reason)
        log.warning(
            "Classification failed; scheduling retry",
            next_attempt=next_attempt,
            max_retries=self.max_retries,
            retry_delay_ms=self.topology.retry_delay_ms,
            error=reason,
        )
        return Retry(
            attempts=next_attempt,
            error=reason,
            outbound=(OutboundMessage(self.topology.retry, retry_copy.to_wire(), "retry"),),
        )

    def _retryable(self, error: BaseException) -> bool:
        if isinstance(error, DocumentNotFoundError):
            return not self.dead_letter_on_not_found
        if isinstance(error, PipelineError):
            return error.retryable
        return True

    def _dead_letter(self, message: JobMessage, attempts: int, reason: str) -> DeadLetter:
        self._mark(
            self.documents.mark_error,
            message.document_id,
            f"Classification failed after {attempts} attempts: {reason}",
        )
        record = DeadLetterRecord(
            message=message,
            error=reason,
            attempts=attempts,
            stage=self.topology.stage,
            dead_lettered_at=utcnow_iso(),
        )
        log.error(
            "Classification failed permanently; dead-lettering",
            attempts=attempts,
            max_retries=self.max_retries,
            error=reason,
        )
        return DeadLetter(
            attempts=attempts,
            error=reason,
            outbound=(OutboundMessage(self.topology.dlq, record.to_wire(), "dead_letter"),),
        )

    @staticmethod
    def _mark(update, document_id: str, text: str) -> None:
        # Best-effort: the republish happens regardless.
        try:
            update(document_id, text)
        except DocumentNotFoundError:
            log.warning("Document missing; status not updated", document_id=document_id)
        except Exception:
            log.exception("Failed to update document status", document_id=document_id)
