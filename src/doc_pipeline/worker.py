"""
Classification Worker
=====================

``ClassificationPipeline`` turns one parsed job into an ``Outcome``:

1. classify the payload (bounded by a timeout);
2. apply the result to the document in one locked transaction;
3. let the router decide on review routing and ledger forwarding.

Classification and persistence failures go to the retry scheduler. Once the
result is committed the job succeeds even if routing fails.

``QueueWorker`` owns the consume loop for one worker process. It receives one
delivery at a time (prefetch 1) and settles it once the pipeline is done:
publish the outcome's outbound messages, then ack. Malformed messages are
acked and dropped.
If publishing fails the delivery is returned to the queue unacknowledged, so
nothing is lost and nothing is acknowledged twice.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

import structlog

from . import telemetry
from .broker import Broker, Delivery, QueueTopology
from .classifier import ClassificationResult, Classifier
from .documents import DocumentStore
from .envelope import JobMessage, parse_envelope
from .errors import (
    ClassificationError,
    ClassificationTimeoutError,
    MalformedMessageError,
    PersistenceError,
)
from .outcomes import DeadLetter, Drop, Outcome, Retry, Success
from .retry import RetryScheduler, describe_error
from .review import ReviewDecision
from .router import DownstreamRouter, RoutingDecision
from .telemetry import QueueEvents

log = structlog.get_logger(__name__)

_CONTEXT_KEYS = ("trace_id", "correlation_id", "document_id", "attempts")


def coerce_result(raw: Any) -> ClassificationResult:
    """Accept a ClassificationResult or a ``{kind|type, fields, confidence}`` mapping."""
    if isinstance(raw, Mapping):
        raw = ClassificationResult(
            kind=str(raw.get("kind") or raw.get("type") or ""),
            fields=dict(raw.get("fields") or {}),
            confidence=raw.get("confidence"),
        )
    if not isinstance(raw, ClassificationResult):
        raise ClassificationError(f"Classifier returned {type(raw).__name__}")
    if not raw.kind:
        raise ClassificationError("Classifier returned no document kind")
    confidence = raw.confidence
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ClassificationError("Classifier returned no confidence score")
    if not 0.0 <= confidence <= 1.0:
        raise ClassificationError(f"Confidence {confidence} is outside [0, 1]")
    return raw


class ClassificationPipeline:
    def __init__(
        self,
        *,
        classifier: Classifier,
        documents: DocumentStore,
        router: DownstreamRouter,
        scheduler: RetryScheduler,
        events: QueueEvents,
        classify_timeout: float,
    ):
        self.classifier = classifier
        self.documents = documents
        self.router = router
        self.scheduler = scheduler
        self.events = events
        self.classify_timeout = classify_timeout

    def _classify(self, payload: str) -> ClassificationResult:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classify")
        try:
            future = executor.submit(self.classifier.classify, payload)
            try:
                raw = future.result(timeout=self.classify_timeout)
            except FutureTimeoutError as e:
                raise ClassificationTimeoutError(
                    f"Classification timed out after {self.classify_timeout}s"
                ) from e
            except ClassificationError:
                raise
            except Exception as e:
                raise ClassificationError(describe_error(e)) from e
        finally:
            # A timed-out call keeps its thread; never wait for it
            executor.shutdown(wait=False, cancel_futures=True)
        return coerce_result(raw)

    def process(self, message: JobMessage) -> Outcome:
        self.events.emit(telemetry.STARTED, message)
        started = time.monotonic()
        try:
            result = self._classify(message.payload)
            persisted = self.documents.apply_classification(
                message.document_id, result, message.correlation_id
            )
        except (ClassificationError, PersistenceError) as e:
            self.events.emit(telemetry.FAILED, message, error=describe_error(e))
            return self.scheduler.schedule(message, e)

        stored = persisted.result
        try:
            decision = self.router.route(message, persisted)
        except Exception:
            # The classification is committed; the job must not be retried
            # or dead-lettered from here
            log.exception(
                "Routing failed after commit; classification kept",
                document_type=stored.kind,
            )
            decision = RoutingDecision(ReviewDecision(needs_review=False))

        log.info(
            "Classified document",
            document_type=stored.kind,
            confidence=stored.confidence,
            replayed=persisted.replayed,
            conflict=persisted.conflict,
            needs_review=decision.review.needs_review,
            review_priority=decision.review.priority,
            ledger_jobs=len(decision.outbound),
            held=decision.held_reason is not None,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        self.events.emit(
            telemetry.SUCCEEDED,
            message,
            tenantId=persisted.tenant_id,
            documentType=stored.kind,
            confidence=stored.confidence,
            replayed=persisted.replayed,
            conflict=persisted.conflict,
        )
        return Success(outbound=decision.outbound)


class QueueWorker:
    def __init__(
        self,
        *,
        broker: Broker,
        topology: QueueTopology,
        downstream_topologies: list[QueueTopology],
        pipeline: ClassificationPipeline,
        scheduler: RetryScheduler,
        events: QueueEvents,
        poll_interval_seconds: float = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.broker = broker
        self.topology = topology
        self.downstream_topologies = list(downstream_topologies)
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.events = events
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._started = False

    def start(self) -> None:
        """Declare this stage's queues and the queues it forwards to."""
        self.broker.declare(self.topology)
        for topology in self.downstream_topologies:
            self.broker.declare(topology)
        self._started = True
        log.info(
            "Declared queue topology",
            primary=self.topology.primary,
            retry=self.topology.retry,
            dlq=self.topology.dlq,
            retry_delay_ms=self.topology.retry_delay_ms,
        )

    def handle(self, delivery: Delivery) -> Outcome:
        """Process one delivery and settle it exactly once."""
        try:
            message = parse_envelope(delivery.body)
        except MalformedMessageError as e:
            log.warning(
                "Discarding malformed job message; producer data integrity problem",
                queue=delivery.queue,
                error=str(e),
                body_preview=delivery.body[:200],
            )
            self.events.emit(telemetry.DROPPED, reason=str(e))
            outcome = Drop(str(e))
            self._settle(delivery, outcome, None)
            return outcome

        structlog.contextvars.bind_contextvars(
            trace_id=message.trace_id,
            correlation_id=message.correlation_id,
            document_id=message.document_id,
            attempts=message.attempts,
        )
        try:
            try:
                outcome = self.pipeline.process(message)
            except Exception as e:
                log.exception("Unexpected error while processing job")
                outcome = self.scheduler.schedule(message, e)
            self._settle(delivery, outcome, message)
            return outcome
        finally:
            structlog.contextvars.unbind_contextvars(*_CONTEXT_KEYS)

    def _settle(self, delivery: Delivery, outcome: Outcome, message: JobMessage | None) -> bool:
        try:
            for outbound in outcome.outbound:
                self.broker.publish(outbound.queue, outbound.body)
        except Exception:
            log.exception(
                "Failed to publish outcome; returning delivery to the queue",
                outcome=type(outcome).__name__,
            )
            self.broker.nack(delivery, requeue=True)
            return False

        self.broker.ack(delivery)

        for outbound in outcome.outbound:
            if outbound.kind == "ledger":
                self.events.emit(telemetry.ENQUEUED, message, queue=outbound.queue)
        if isinstance(outcome, Retry):
            self.events.emit(
                telemetry.RETRY_SCHEDULED, message, nextAttempt=outcome.attempts, error=outcome.error
            )
        elif isinstance(outcome, DeadLetter):
            self.events.emit(
                telemetry.DEAD_LETTERED, message, attempts=outcome.attempts, error=outcome.error
            )
        return True

    def run(self, *, max_messages: int | None = None, stop_when_idle: bool = False) -> int:
        """
        Consume from the primary queue until interrupted.

        ``max_messages`` and ``stop_when_idle`` bound the loop for tests and
        one-shot runs. Returns the number of deliveries handled.
        """
        if not self._started:
            self.start()
        log.info("Worker consuming", queue=self.topology.primary, prefetch=1)

        handled = 0
        was_idle = False
        while max_messages is None or handled < max_messages:
            try:
                delivery = self.broker.receive(self.topology.primary)
                if delivery is None:
                    if stop_when_idle:
                        break
                    if not was_idle:
                        log.info("No work found; waiting", queue=self.topology.primary)
                    was_idle = True
                    self._sleep(self.poll_interval_seconds)
                    continue

                was_idle = False
                self.handle(delivery)
                handled += 1
            except KeyboardInterrupt:
                log.info("Ctrl-C received; exiting", queue=self.topology.primary)
                break
            except Exception:
                log.exception(
                    "Unexpected error in worker loop; sleeping",
                    poll_interval_seconds=self.poll_interval_seconds,
                )
                self._sleep(self.poll_interval_seconds)
        return handled
