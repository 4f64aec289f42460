"""
Posting validation collaborator.

The ledger service owns the full rules; this module holds the interface the
router depends on plus a field-level validator used when the worker runs on
its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from .documents import DocumentStore


@dataclass(frozen=True)
class PostingValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


class PostingValidator(Protocol):
    def validate_for_posting(self, tenant_id: str, document_id: str) -> PostingValidation: ...


def _number(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class FieldPostingValidator:
    """Checks that the extracted data carries what a ledger entry needs."""

    def __init__(self, documents: DocumentStore):
        self.documents = documents

    def validate_for_posting(self, tenant_id: str, document_id: str) -> PostingValidation:
        document = self.documents.get(document_id)
        if document is None or document.tenant_id != tenant_id:
            return PostingValidation(False, ["Document not found"])

        data = document.extracted_data
        errors = []
        total = _number(data.get("total"))
        if total is None:
            errors.append("Missing total amount")
        elif total <= 0:
            errors.append("Total amount must be positive")
        if not data.get("date"):
            errors.append("Missing document date")
        tax = _number(data.get("tax"))
        if tax is not None and total is not None and tax > total:
            errors.append("Tax exceeds total amount")
        return PostingValidation(not errors, errors)
