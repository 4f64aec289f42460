"""
Job Envelope
============

Wire format for classification and ledger-posting jobs. Retry accounting
(``attempts``, ``lastError``, ``lastErrorAt``) travels inside the message
itself, so a worker restart or a second worker instance sees the same retry
state without any process-local bookkeeping.

``parse_envelope`` is the only place raw broker bytes become a ``JobMessage``;
everything downstream works with the typed record.
"""

from __future__ import annotations

import datetime as dt
import json
import uuid
from dataclasses import dataclass, replace
from typing import Any

from .errors import MalformedMessageError


def utcnow_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_trace_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class JobMessage:
    document_id: str
    payload: str
    trace_id: str
    correlation_id: str
    attempts: int = 0
    last_error: str | None = None
    last_error_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "documentId": self.document_id,
            "payload": self.payload,
            "traceId": self.trace_id,
            "correlationId": self.correlation_id,
            "attempts": self.attempts,
        }
        if self.last_error is not None:
            data["lastError"] = self.last_error
        if self.last_error_at is not None:
            data["lastErrorAt"] = self.last_error_at
        return data

    def to_wire(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=True, sort_keys=True).encode("utf-8")

    def for_retry(self, error: str, at: str | None = None) -> JobMessage:
        """Copy for the retry queue: one more attempt, failure context attached."""
        return replace(
            self,
            attempts=self.attempts + 1,
            last_error=error,
            last_error_at=at or utcnow_iso(),
        )

    def downstream(self, payload: str) -> JobMessage:
        """
        A job for the next pipeline stage.

        Trace and correlation ids are carried over unchanged; attempts are
        counted per stage, so the new job starts at zero.
        """
        return JobMessage(
            document_id=self.document_id,
            payload=payload,
            trace_id=self.trace_id,
            correlation_id=self.correlation_id,
        )

    def replayed(self) -> JobMessage:
        """Copy used to start a fresh retry episode from the dead-letter queue."""
        return replace(self, attempts=0)


@dataclass(frozen=True)
class DeadLetterRecord:
    message: JobMessage
    error: str
    attempts: int
    stage: str
    dead_lettered_at: str

    def to_wire(self) -> bytes:
        data = {
            "message": self.message.to_dict(),
            "error": self.error,
            "attempts": self.attempts,
            "stage": self.stage,
            "deadLetteredAt": self.dead_lettered_at,
        }
        return json.dumps(data, ensure_ascii=True, sort_keys=True).encode("utf-8")


def _load_object(body: bytes | str) -> dict:
    try:
        text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessageError(f"Message body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("Message body is not a JSON object")
    return data


def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedMessageError(f"'{key}' must be a string")
    return value


def envelope_from_dict(data: dict) -> JobMessage:
    document_id = data.get("documentId")
    if not isinstance(document_id, str) or not document_id.strip():
        raise MalformedMessageError("'documentId' must be a non-empty string")

    payload = data.get("payload")
    if not isinstance(payload, str):
        raise MalformedMessageError("'payload' must be a string")

    attempts = data.get("attempts")
    if attempts is None:
        attempts = 0
    # bool is an int subclass; a flag is not an attempt count
    elif isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 0:
        raise MalformedMessageError("'attempts' must be a non-negative integer")

    trace_id = _optional_str(data, "traceId") or new_trace_id()
    correlation_id = _optional_str(data, "correlationId") or trace_id

    return JobMessage(
        document_id=document_id,
        payload=payload,
        trace_id=trace_id,
        correlation_id=correlation_id,
        attempts=attempts,
        last_error=_optional_str(data, "lastError"),
        last_error_at=_optional_str(data, "lastErrorAt"),
    )


def parse_envelope(body: bytes | str) -> JobMessage:
    """
    Parse raw message bytes into a ``JobMessage``.

    Raises ``MalformedMessageError`` for anything that is not a valid
    envelope. Missing ``traceId`` is generated, missing ``correlationId``
    falls back to the trace id and missing ``attempts`` means zero.
    """
    return envelope_from_dict(_load_object(body))


def parse_dead_letter(body: bytes | str) -> DeadLetterRecord:
    data = _load_object(body)
    message = data.get("message")
    if not isinstance(message, dict):
        raise MalformedMessageError("Dead-letter record has no message")
    attempts = data.get("attempts")
    if isinstance(attempts, bool) or not isinstance(attempts, int):
        raise MalformedMessageError("Dead-letter record has no attempt count")
    return DeadLetterRecord(
        message=envelope_from_dict(message),
        error=str(data.get("error") or ""),
        attempts=attempts,
        stage=str(data.get("stage") or ""),
        dead_lettered_at=str(data.get("deadLetteredAt") or ""),
    )
