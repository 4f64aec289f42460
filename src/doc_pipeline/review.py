"""
Review Routing
==============

Decides whether a classified document needs a human look and records it in
the review queue. The decision is a pure function of the committed scores and
the configured thresholds; recording it is a side effect the pipeline treats
as best-effort.
"""

from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass
from typing import Protocol

from .documents import DocumentStatus

URGENT_CONFIDENCE = 0.5
URGENT_QUALITY = 50.0
# Documents without a quality assessment are treated as perfect scans
DEFAULT_QUALITY = 100.0


@dataclass(frozen=True)
class ReviewThresholds:
    confidence: float = 0.85
    quality: float = 70.0


@dataclass(frozen=True)
class ReviewDecision:
    needs_review: bool
    priority: str | None = None
    reason: str = ""


def decide_review(
    confidence: float,
    quality: float | None,
    status: DocumentStatus,
    thresholds: ReviewThresholds,
) -> ReviewDecision:
    quality = DEFAULT_QUALITY if quality is None else quality
    low_confidence = confidence < thresholds.confidence
    low_quality = quality < thresholds.quality
    errored = status == DocumentStatus.ERROR

    if not (low_confidence or low_quality or errored):
        return ReviewDecision(needs_review=False)

    if confidence < URGENT_CONFIDENCE or quality < URGENT_QUALITY:
        return ReviewDecision(True, "urgent", "Very low confidence or quality score")
    if low_confidence:
        return ReviewDecision(
            True, "high", f"Confidence below threshold: {confidence * 100:.1f}%"
        )
    if low_quality:
        return ReviewDecision(True, "high", f"Quality score below threshold: {quality:g}")
    if errored:
        return ReviewDecision(True, "high", "Document processing error")
    return ReviewDecision(True, "medium", "Flagged for review")


class ReviewQueue(Protocol):
    def route_to_review(
        self, tenant_id: str, document_id: str, *, priority: str, reason: str
    ) -> bool: ...


@dataclass
class ReviewEntry:
    tenant_id: str
    document_id: str
    priority: str
    reason: str
    status: str
    updated_at: str


class InMemoryReviewQueue:
    """One pending entry per document; routing again updates it in place."""

    def __init__(self):
        self._lock = threading.Lock()
        self.entries: dict[str, ReviewEntry] = {}

    def route_to_review(
        self, tenant_id: str, document_id: str, *, priority: str, reason: str
    ) -> bool:
        now = dt.datetime.now(dt.timezone.utc).isoformat()
        with self._lock:
            self.entries[document_id] = ReviewEntry(
                tenant_id=tenant_id,
                document_id=document_id,
                priority=priority,
                reason=reason,
                status="pending",
                updated_at=now,
            )
        return True
