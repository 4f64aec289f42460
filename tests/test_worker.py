import json
import threading
from unittest.mock import MagicMock

import pytest
import structlog

from doc_pipeline import telemetry
from doc_pipeline.broker import InMemoryBroker, QueueTopology
from doc_pipeline.classifier import ClassificationResult
from doc_pipeline.documents import Document, DocumentStatus, InMemoryDocumentStore
from doc_pipeline.envelope import JobMessage, parse_dead_letter, parse_envelope
from doc_pipeline.errors import BrokerError, ClassificationError, ClassificationTimeoutError
from doc_pipeline.outcomes import DeadLetter, Drop, Retry, Success
from doc_pipeline.posting import FieldPostingValidator
from doc_pipeline.retry import RetryScheduler
from doc_pipeline.review import InMemoryReviewQueue, ReviewThresholds
from doc_pipeline.router import DownstreamRouter
from doc_pipeline.telemetry import QueueEvents
from doc_pipeline.worker import ClassificationPipeline, QueueWorker, coerce_result

INVOICE_FIELDS = {"total": 120.0, "tax": 20.0, "date": "2024-03-01", "currency": "GBP"}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Harness:
    """Worker wired to in-memory collaborators."""

    def __init__(self, classifier, *, max_retries=5, quality_score=90, classify_timeout=5.0):
        self.clock = FakeClock()
        self.broker = InMemoryBroker(clock=self.clock)
        self.topology = QueueTopology.for_stage("classification", 15)
        self.ledger_topology = QueueTopology.for_stage("ledger", 15)
        self.documents = InMemoryDocumentStore(
            [Document("doc-1", "tenant-1", quality_score=quality_score)]
        )
        self.review_queue = InMemoryReviewQueue()
        self.sink = MagicMock()
        self.events = QueueEvents(self.sink, service="classification-worker", queue=self.topology.primary)
        self.scheduler = RetryScheduler(
            documents=self.documents, topology=self.topology, max_retries=max_retries
        )
        self.router = DownstreamRouter(
            documents=self.documents,
            review_queue=self.review_queue,
            validator=FieldPostingValidator(self.documents),
            thresholds=ReviewThresholds(confidence=0.85, quality=70),
            ledger_document_types=frozenset({"invoice", "receipt"}),
            ledger_queue=self.ledger_topology.primary,
        )
        self.classifier = classifier
        self.pipeline = ClassificationPipeline(
            classifier=classifier,
            documents=self.documents,
            router=self.router,
            scheduler=self.scheduler,
            events=self.events,
            classify_timeout=classify_timeout,
        )
        self.sleep = MagicMock()
        self.worker = QueueWorker(
            broker=self.broker,
            topology=self.topology,
            downstream_topologies=[self.ledger_topology],
            pipeline=self.pipeline,
            scheduler=self.scheduler,
            events=self.events,
            poll_interval_seconds=1,
            sleep=self.sleep,
        )
        self.worker.start()

    def submit(self, message: JobMessage) -> None:
        self.broker.publish(self.topology.primary, message.to_wire())

    def event_types(self) -> list[str]:
        return [c.kwargs["event_type"] for c in self.sink.record_queue_event.call_args_list]


def _classifier(result=None, side_effect=None):
    classifier = MagicMock()
    classifier.classify.return_value = result
    classifier.classify.side_effect = side_effect
    return classifier


MESSAGE = JobMessage("doc-1", "INVOICE #INV-42 total 120.00", "trace-1", "corr-1")


def test_confident_invoice_produces_one_ledger_job_and_no_review():
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)))
    h.submit(MESSAGE)

    assert h.worker.run(stop_when_idle=True) == 1

    assert h.broker.unacked_count == 0
    assert h.broker.depth(h.topology.primary) == 0
    ledger_jobs = h.broker.messages(h.ledger_topology.primary)
    assert len(ledger_jobs) == 1
    job = parse_envelope(ledger_jobs[0])
    assert job.document_id == "doc-1"
    assert job.trace_id == "trace-1"
    assert job.correlation_id == "corr-1"
    assert job.attempts == 0
    assert json.loads(job.payload)["documentType"] == "invoice"
    assert h.review_queue.entries == {}
    assert h.documents.get("doc-1").status == DocumentStatus.CLASSIFIED
    assert h.event_types() == [telemetry.STARTED, telemetry.SUCCEEDED, telemetry.ENQUEUED]


def test_low_confidence_routes_to_urgent_review_without_ledger_job():
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.4)))
    h.submit(MESSAGE)

    h.worker.run(stop_when_idle=True)

    assert h.broker.depth(h.ledger_topology.primary) == 0
    assert h.review_queue.entries["doc-1"].priority == "urgent"
    assert h.documents.get("doc-1").status == DocumentStatus.PENDING_REVIEW
    assert h.broker.unacked_count == 0


def test_exhausted_retries_dead_letter_exactly_once():
    h = Harness(_classifier(side_effect=ClassificationError("model unavailable")), max_retries=2)
    h.submit(MESSAGE)

    seen_attempts = []
    for _ in range(5):
        delivery = h.broker.receive(h.topology.primary)
        if delivery is None:
            break
        seen_attempts.append(parse_envelope(delivery.body).attempts)
        h.worker.handle(delivery)
        h.clock.advance(15.1)

    assert seen_attempts == [0, 1, 2]
    assert h.classifier.classify.call_count == 3
    dead_letters = h.broker.messages(h.topology.dlq)
    assert len(dead_letters) == 1
    record = parse_dead_letter(dead_letters[0])
    assert record.attempts == 3
    assert record.message.trace_id == "trace-1"
    assert record.error == "ClassificationError: model unavailable"
    assert h.broker.depth(h.topology.retry) == 0
    assert h.broker.depth(h.topology.primary) == 0
    assert h.documents.get("doc-1").status == DocumentStatus.ERROR
    assert h.event_types().count(telemetry.RETRY_SCHEDULED) == 2
    assert h.event_types().count(telemetry.DEAD_LETTERED) == 1


def test_retry_waits_for_the_delay_queue_ttl():
    h = Harness(_classifier(side_effect=ClassificationError("boom")))
    h.submit(MESSAGE)

    outcome = h.worker.handle(h.broker.receive(h.topology.primary))

    assert isinstance(outcome, Retry)
    h.clock.advance(14)
    assert h.broker.receive(h.topology.primary) is None
    h.clock.advance(2)
    retried = parse_envelope(h.broker.receive(h.topology.primary).body)
    assert retried.attempts == 1
    assert retried.last_error == "ClassificationError: boom"
    assert retried.last_error_at


@pytest.mark.parametrize(
    "body",
    [b"{not json", json.dumps({"payload": "text"}).encode()],
)
def test_malformed_message_is_acked_and_dropped(body):
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)))
    h.broker.publish(h.topology.primary, body)

    outcome = h.worker.handle(h.broker.receive(h.topology.primary))

    assert isinstance(outcome, Drop)
    assert h.broker.unacked_count == 0
    assert h.broker.depth(h.topology.primary) == 0
    assert h.broker.depth(h.topology.retry) == 0
    assert h.broker.depth(h.topology.dlq) == 0
    h.classifier.classify.assert_not_called()
    assert h.event_types() == [telemetry.DROPPED]


def test_publish_failure_leaves_delivery_unacked_and_replay_is_idempotent(mocker):
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)))
    h.submit(MESSAGE)
    real_publish = h.broker.publish
    mocker.patch.object(h.broker, "publish", side_effect=BrokerError("connection lost"))

    h.worker.handle(h.broker.receive(h.topology.primary))

    assert h.broker.unacked_count == 0
    assert h.broker.depth(h.topology.primary) == 1
    assert h.documents.get("doc-1").status == DocumentStatus.CLASSIFIED

    h.broker.publish = real_publish
    redelivery = h.broker.receive(h.topology.primary)
    assert redelivery.redelivered is True
    outcome = h.worker.handle(redelivery)

    assert isinstance(outcome, Success)
    assert h.broker.depth(h.ledger_topology.primary) == 1
    assert h.broker.depth(h.topology.primary) == 0
    assert h.broker.unacked_count == 0
    assert h.documents.get("doc-1").extracted_data == INVOICE_FIELDS


def test_missing_document_is_retried():
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)))
    h.documents.delete("doc-1")
    h.submit(MESSAGE)

    outcome = h.worker.handle(h.broker.receive(h.topology.primary))

    assert isinstance(outcome, Retry)
    assert "Document doc-1 not found" in outcome.error


def test_classification_timeout_is_retryable():
    release = threading.Event()

    def slow_classify(text):
        release.wait(5)
        return ClassificationResult("invoice", {}, 0.95)

    h = Harness(_classifier(side_effect=slow_classify), classify_timeout=0.05)
    h.submit(MESSAGE)
    try:
        outcome = h.worker.handle(h.broker.receive(h.topology.primary))
    finally:
        release.set()

    assert isinstance(outcome, Retry)
    assert outcome.error.startswith(ClassificationTimeoutError.__name__)
    assert h.broker.depth(h.topology.retry) == 1


def test_redelivery_after_publish_failure_forwards_stored_result(mocker):
    classifier = _classifier(
        side_effect=[
            ClassificationResult("invoice", INVOICE_FIELDS, 0.95),
            ClassificationResult("invoice", INVOICE_FIELDS, 0.93),
        ]
    )
    h = Harness(classifier)
    h.submit(MESSAGE)
    real_publish = h.broker.publish
    mocker.patch.object(h.broker, "publish", side_effect=BrokerError("connection lost"))
    h.worker.handle(h.broker.receive(h.topology.primary))

    h.broker.publish = real_publish
    outcome = h.worker.handle(h.broker.receive(h.topology.primary))

    assert isinstance(outcome, Success)
    assert classifier.classify.call_count == 2
    ledger_jobs = h.broker.messages(h.ledger_topology.primary)
    assert len(ledger_jobs) == 1
    assert json.loads(parse_envelope(ledger_jobs[0]).payload)["confidence"] == 0.95
    assert h.documents.get("doc-1").confidence_score == 0.95
    assert h.broker.unacked_count == 0


def test_routing_failure_after_commit_keeps_classification(mocker):
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)), max_retries=0)
    mocker.patch.object(h.pipeline.router, "route", side_effect=RuntimeError("bug"))
    h.submit(MESSAGE)

    outcome = h.worker.handle(h.broker.receive(h.topology.primary))

    assert isinstance(outcome, Success)
    assert outcome.outbound == ()
    assert h.documents.get("doc-1").status == DocumentStatus.CLASSIFIED
    assert h.broker.depth(h.topology.dlq) == 0
    assert h.broker.unacked_count == 0
    assert telemetry.DEAD_LETTERED not in h.event_types()


def test_unexpected_error_before_commit_goes_to_retry_scheduler(mocker):
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)), max_retries=0)
    mocker.patch.object(h.documents, "apply_classification", side_effect=RuntimeError("bug"))
    h.submit(MESSAGE)

    outcome = h.worker.handle(h.broker.receive(h.topology.primary))

    assert isinstance(outcome, DeadLetter)
    assert h.broker.depth(h.topology.dlq) == 1
    assert h.broker.unacked_count == 0


def test_delivery_context_is_cleared_after_handling():
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)))
    h.submit(MESSAGE)

    h.worker.handle(h.broker.receive(h.topology.primary))

    assert "trace_id" not in structlog.contextvars.get_contextvars()


def test_events_carry_job_identity():
    h = Harness(_classifier(ClassificationResult("invoice", INVOICE_FIELDS, 0.95)))
    h.submit(MESSAGE)

    h.worker.run(stop_when_idle=True)

    started = h.sink.record_queue_event.call_args_list[0].kwargs
    assert started["service"] == "classification-worker"
    assert started["queue"] == "classification.primary"
    assert started["metadata"]["jobId"] == "corr-1"
    assert started["metadata"]["traceId"] == "trace-1"
    enqueued = h.sink.record_queue_event.call_args_list[-1].kwargs
    assert enqueued["queue"] == "ledger.primary"


def test_run_sleeps_when_idle_and_stops_after_max_messages():
    h = Harness(_classifier(ClassificationResult("statement", {}, 0.95)))

    def _enqueue_on_sleep(seconds):
        h.submit(MESSAGE)

    h.sleep.side_effect = _enqueue_on_sleep

    assert h.worker.run(max_messages=1) == 1
    h.sleep.assert_called_once_with(1)


def test_run_exits_on_keyboard_interrupt():
    h = Harness(_classifier())
    h.sleep.side_effect = KeyboardInterrupt

    assert h.worker.run() == 0


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"kind": "invoice", "fields": {"total": 1.0}, "confidence": 0.9}, "invoice"),
        ({"type": "receipt", "confidence": 1}, "receipt"),
    ],
)
def test_coerce_result_accepts_mappings(raw, expected):
    assert coerce_result(raw).kind == expected


@pytest.mark.parametrize(
    "raw",
    [
        None,
        {"kind": "invoice"},
        {"kind": "", "confidence": 0.5},
        {"kind": "invoice", "confidence": 1.5},
        ClassificationResult("invoice", {}, -0.1),
    ],
)
def test_coerce_result_rejects_unusable_results(raw):
    with pytest.raises(ClassificationError):
        coerce_result(raw)
