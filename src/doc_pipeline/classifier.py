"""
Document Classification Module
==============================

Default implementation of the ``classify(text) -> {kind, fields, confidence}``
capability consumed by the pipeline.

Classification tries a cheap keyword pass first and only falls back to an
OpenAI-compatible chat completion when the keywords are inconclusive. Unlike
a best-effort classifier this one raises ``ClassificationError`` when no
usable answer comes back, so the job goes through the queue retry path
instead of persisting a guess.
"""

from __future__ import annotations

import datetime as dt
import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
import structlog

from .config import Settings
from .errors import ClassificationError
from .llm import OpenAIChatMixin, classification_deadline

log = structlog.get_logger(__name__)

DOCUMENT_KINDS = ("invoice", "receipt", "statement", "payslip", "tax_form", "other")

KEYWORD_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("invoice", ("invoice", "bill to", "due date")),
    ("receipt", ("receipt", "thank you for your purchase", "total paid")),
    ("statement", ("statement", "balance brought forward")),
    ("payslip", ("payslip", "pay stub", "gross pay", "net pay")),
]

KEYWORD_CONFIDENCE = 0.85
FALLBACK_CONFIDENCE = 0.5
LLM_DEFAULT_CONFIDENCE = 0.7
# Keyword results above this are trusted without asking the model
FAST_PATH_THRESHOLD = 0.8

CLASSIFICATION_PROMPT = """
You are a document classification expert for an accounting system.

Always reply only with a single, valid JSON object that matches the schema
below. Do not wrap it in markdown or add explanations.

----------  JSON schema  ----------
{
  "documentType":    "invoice" | "receipt" | "statement" | "payslip" | "tax_form" | "other",
  "vendor":          string or null,
  "date":            "YYYY-MM-DD" or null,
  "total":           number or null,
  "tax":             number or null,
  "taxRate":         number or null,
  "currency":        ISO-4217 code or null,
  "category":        expense category or null,
  "description":     brief description or null,
  "invoiceNumber":   string or null,
  "confidenceScore": number between 0 and 1
}
-----------------------------------
""".strip()

FIELD_KEYS = (
    "vendor",
    "date",
    "total",
    "tax",
    "taxRate",
    "currency",
    "category",
    "description",
    "invoiceNumber",
)
NUMERIC_FIELDS = {"total", "tax", "taxRate"}

DATE_RE = re.compile(r"(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})")
INVOICE_NUMBER_RE = re.compile(r"(?:invoice|inv)\s*(?:number|no\.?)?[\s#:]*([A-Z0-9][A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE)
INVOICE_TOTAL_RE = re.compile(r"(?:total|amount)[\s:£$€]*([\d,]+\.?\d*)", re.IGNORECASE)
RECEIPT_TOTAL_RE = re.compile(r"(?:total|paid)[\s:£$€]*([\d,]+\.?\d*)", re.IGNORECASE)
TAX_RE = re.compile(r"(?:vat|tax)[\s:£$€]*([\d,]+\.?\d*)", re.IGNORECASE)


@dataclass(frozen=True)
class ClassificationResult:
    kind: str
    fields: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0


class Classifier(Protocol):
    def classify(self, text: str) -> ClassificationResult: ...


def _normalise_date(value: str) -> str:
    """Return an ISO date for common day-first formats, else the input."""
    for fmt in ("%d/%m/%Y", "%d-%m-%Y", "%d/%m/%y", "%d-%m-%y", "%Y-%m-%d"):
        try:
            return dt.datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return value


def _parse_amount(value: str) -> float | None:
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def _extract_amounts(text: str, total_re: re.Pattern, *, with_tax: bool) -> dict[str, Any]:
    data: dict[str, Any] = {"currency": "GBP"}
    date_match = DATE_RE.search(text)
    if date_match:
        data["date"] = _normalise_date(date_match.group(1))
    total_match = total_re.search(text)
    if total_match:
        total = _parse_amount(total_match.group(1))
        if total is not None:
            data["total"] = total
    if with_tax:
        tax_match = TAX_RE.search(text)
        if tax_match:
            tax = _parse_amount(tax_match.group(1))
            if tax is not None:
                data["tax"] = tax
    return data


def extract_invoice_fields(text: str) -> dict[str, Any]:
    data = _extract_amounts(text, INVOICE_TOTAL_RE, with_tax=True)
    number_match = INVOICE_NUMBER_RE.search(text)
    if number_match:
        data["invoiceNumber"] = number_match.group(1)
    return data


def extract_receipt_fields(text: str) -> dict[str, Any]:
    return _extract_amounts(text, RECEIPT_TOTAL_RE, with_tax=False)


def quick_classify(text: str) -> ClassificationResult:
    """Keyword classification; ``other`` with low confidence when nothing matches."""
    lowered = text.lower()
    for kind, keywords in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            if kind == "invoice":
                fields = extract_invoice_fields(text)
            elif kind == "receipt":
                fields = extract_receipt_fields(text)
            else:
                fields = {}
            return ClassificationResult(kind, fields, KEYWORD_CONFIDENCE)
    return ClassificationResult("other", {}, FALLBACK_CONFIDENCE)


def _extract_json(text: str) -> dict:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def parse_classification_response(text: str) -> ClassificationResult:
    """
    Parse and sanitize the model's JSON answer.
    """
    raw = text.strip()
    if not raw:
        raise ValueError("Classification response is empty.")

    data = _extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError("Classification response is not a JSON object.")

    kind = str(data.get("documentType") or "other").strip().lower()
    if kind not in DOCUMENT_KINDS:
        kind = "other"

    fields: dict[str, Any] = {}
    for key in FIELD_KEYS:
        value = data.get(key)
        if value is None or value == "":
            continue
        if key in NUMERIC_FIELDS:
            amount = value if isinstance(value, (int, float)) else _parse_amount(str(value))
            if amount is None or isinstance(amount, bool):
                continue
            fields[key] = float(amount)
        else:
            fields[key] = str(value).strip()

    confidence = data.get("confidenceScore")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = LLM_DEFAULT_CONFIDENCE
    confidence = min(1.0, max(0.0, float(confidence)))

    return ClassificationResult(kind, fields, confidence)


class LLMClassifier(OpenAIChatMixin):
    """
    Keyword fast path backed by an OpenAI-compatible chat completion.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def classify(self, text: str) -> ClassificationResult:
        if not text.strip():
            raise ClassificationError("Document text is empty")

        quick = quick_classify(text)
        if quick.confidence > FAST_PATH_THRESHOLD:
            log.debug("Classified by keywords", kind=quick.kind)
            return quick

        messages = [
            {"role": "system", "content": CLASSIFICATION_PROMPT},
            {
                "role": "user",
                "content": "Document text:\n" + text[: self.settings.CLASSIFY_MAX_CHARS],
            },
        ]

        deadline = classification_deadline(self.settings)
        for model in (self.settings.CLASSIFY_MODEL, self.settings.CLASSIFY_FALLBACK_MODEL):
            try:
                content = self._complete(model, messages, deadline=deadline)
                result = parse_classification_response(content)
            except (json.JSONDecodeError, ValueError) as e:
                log.warning("Classification response invalid", model=model, error=str(e))
                continue
            except openai.APIError as e:
                log.warning("Classification model failed", model=model, error=str(e))
                continue
            log.info(
                "Classified by model",
                model=model,
                kind=result.kind,
                confidence=result.confidence,
            )
            return result

        raise ClassificationError("All classification models failed")
