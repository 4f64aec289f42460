"""
Downstream Router
=================

Runs after the classification has been committed and decides what happens
next: human review, a ledger-posting job, or nothing. It never publishes;
ledger jobs come back as outbound messages that the dispatcher sends once
the document transaction is safely committed.

Review routing and posting validation are side effects of an already
successful classification, so their failures are logged and swallowed
instead of failing the job.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

import structlog

from .documents import DocumentStatus, DocumentStore, PersistResult
from .envelope import JobMessage
from .outcomes import OutboundMessage
from .posting import PostingValidator
from .review import ReviewDecision, ReviewQueue, ReviewThresholds, decide_review

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RoutingDecision:
    review: ReviewDecision
    routed_to_review: bool = False
    outbound: tuple[OutboundMessage, ...] = ()
    held_reason: str | None = None


def ledger_summary(message: JobMessage, persisted: PersistResult) -> str:
    """Payload for the ledger-posting job."""
    return json.dumps(
        {
            "tenantId": persisted.tenant_id,
            "documentId": message.document_id,
            "documentType": persisted.result.kind,
            "confidence": persisted.result.confidence,
            "fields": persisted.result.fields,
        },
        ensure_ascii=True,
        sort_keys=True,
        default=str,
    )


class DownstreamRouter:
    def __init__(
        self,
        *,
        documents: DocumentStore,
        review_queue: ReviewQueue,
        validator: PostingValidator,
        thresholds: ReviewThresholds,
        ledger_document_types: frozenset[str],
        ledger_queue: str,
    ):
        self.documents = documents
        self.review_queue = review_queue
        self.validator = validator
        self.thresholds = thresholds
        self.ledger_document_types = ledger_document_types
        self.ledger_queue = ledger_queue

    def route(self, message: JobMessage, persisted: PersistResult) -> RoutingDecision:
        if persisted.conflict:
            return RoutingDecision(ReviewDecision(needs_review=False))

        decision = decide_review(
            persisted.result.confidence,
            persisted.quality_score,
            persisted.status,
            self.thresholds,
        )
        if decision.needs_review:
            routed = self._route_to_review(persisted.tenant_id, message.document_id, decision)
            return RoutingDecision(decision, routed_to_review=routed)

        if persisted.status == DocumentStatus.POSTED:
            log.info("Document already posted; not forwarding", document_id=message.document_id)
            return RoutingDecision(decision)

        if persisted.result.kind.lower() not in self.ledger_document_types:
            return RoutingDecision(decision)

        held_reason = self._validate(persisted.tenant_id, message.document_id)
        if held_reason is not None:
            self._hold(message.document_id, held_reason)
            return RoutingDecision(decision, held_reason=held_reason)

        ledger_job = message.downstream(ledger_summary(message, persisted))
        outbound = OutboundMessage(self.ledger_queue, ledger_job.to_wire(), "ledger")
        return RoutingDecision(decision, outbound=(outbound,))

    def _route_to_review(self, tenant_id: str, document_id: str, decision: ReviewDecision) -> bool:
        try:
            routed = self.review_queue.route_to_review(
                tenant_id,
                document_id,
                priority=decision.priority,
                reason=decision.reason,
            )
            if routed:
                self.documents.mark_pending_review(document_id)
        except Exception:
            log.exception(
                "Review routing failed; classification result kept",
                document_id=document_id,
                priority=decision.priority,
            )
            return False
        log.info(
            "Document routed to review queue",
            document_id=document_id,
            priority=decision.priority,
            reason=decision.reason,
        )
        return bool(routed)

    def _validate(self, tenant_id: str, document_id: str) -> str | None:
        """Return a hold reason, or None when the document may be posted."""
        try:
            validation = self.validator.validate_for_posting(tenant_id, document_id)
        except Exception:
            log.exception("Posting validation failed to run", document_id=document_id)
            return "Held from ledger posting: validation unavailable"
        if validation.is_valid:
            return None
        errors = "; ".join(validation.errors) or "Document failed validation checks"
        return f"Held from ledger posting: {errors}"

    def _hold(self, document_id: str, reason: str) -> None:
        try:
            self.documents.hold_for_posting(document_id, reason)
        except Exception:
            log.exception("Failed to attach hold message", document_id=document_id)
            return
        log.info("Document held from ledger posting", document_id=document_id, reason=reason)
