"""
Queue telemetry hooks.

The worker reports start/success/failure/enqueue events keyed by job to an
external collector. Reporting is fire-and-forget: a failing sink is logged
and never affects message handling.
"""

from __future__ import annotations

from typing import Any, Protocol

import requests
import structlog

from .envelope import JobMessage

log = structlog.get_logger(__name__)

STARTED = "started"
SUCCEEDED = "succeeded"
FAILED = "failed"
RETRY_SCHEDULED = "retry_scheduled"
DEAD_LETTERED = "dead_lettered"
DROPPED = "dropped"
ENQUEUED = "enqueued"


class EventSink(Protocol):
    def record_queue_event(
        self, *, service: str, queue: str, event_type: str, metadata: dict[str, Any]
    ) -> None: ...


class LogEventSink:
    """Writes queue events to the structured log."""

    def record_queue_event(
        self, *, service: str, queue: str, event_type: str, metadata: dict[str, Any]
    ) -> None:
        log.info("Queue event", service=service, queue=queue, event_type=event_type, **metadata)


class HttpEventSink:
    """POSTs queue events as JSON to a metrics collector."""

    def __init__(self, url: str, *, timeout: float = 2.0, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def record_queue_event(
        self, *, service: str, queue: str, event_type: str, metadata: dict[str, Any]
    ) -> None:
        payload = {
            "service": service,
            "queue": queue,
            "eventType": event_type,
            "metadata": metadata,
        }
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            log.warning("Failed to record queue event", event_type=event_type, error=str(e))

    def close(self) -> None:
        self._session.close()


class QueueEvents:
    """Binds a sink to one service and queue and shapes event metadata."""

    def __init__(self, sink: EventSink, *, service: str, queue: str):
        self.sink = sink
        self.service = service
        self.queue = queue

    def emit(self, event_type: str, message: JobMessage | None = None, **metadata: Any) -> None:
        if message is not None:
            metadata = {
                "jobId": message.correlation_id,
                "documentId": message.document_id,
                "traceId": message.trace_id,
                "attempts": message.attempts,
                **metadata,
            }
        try:
            self.sink.record_queue_event(
                service=self.service,
                queue=metadata.pop("queue", self.queue),
                event_type=event_type,
                metadata=metadata,
            )
        except Exception:
            log.warning("Queue event sink raised", event_type=event_type, exc_info=True)


def create_event_sink(settings) -> EventSink:
    if settings.TELEMETRY_URL:
        return HttpEventSink(settings.TELEMETRY_URL)
    return LogEventSink()
