import json
from unittest.mock import MagicMock

import pytest

from doc_pipeline.broker import QueueTopology
from doc_pipeline.documents import Document, DocumentStatus, InMemoryDocumentStore
from doc_pipeline.envelope import JobMessage, parse_dead_letter, parse_envelope
from doc_pipeline.errors import ClassificationError, DocumentNotFoundError, MalformedMessageError
from doc_pipeline.outcomes import DeadLetter, Retry
from doc_pipeline.retry import RetryScheduler, describe_error

TOPOLOGY = QueueTopology.for_stage("classification", 15)


@pytest.fixture
def documents():
    return InMemoryDocumentStore([Document("doc-1", "tenant-1")])


def _scheduler(documents, max_retries=2, **kwargs):
    return RetryScheduler(documents=documents, topology=TOPOLOGY, max_retries=max_retries, **kwargs)


def _message(attempts):
    return JobMessage("doc-1", "text", "trace-1", "corr-1", attempts=attempts)


def test_retry_goes_to_delay_queue_with_incremented_attempts(documents):
    outcome = _scheduler(documents).schedule(_message(0), ClassificationError("boom"))

    assert isinstance(outcome, Retry)
    assert outcome.attempts == 1
    (outbound,) = outcome.outbound
    assert outbound.queue == "classification.retry"
    retried = parse_envelope(outbound.body)
    assert retried.attempts == 1
    assert retried.last_error == "ClassificationError: boom"
    assert retried.trace_id == "trace-1"
    document = documents.get("doc-1")
    assert document.status == DocumentStatus.EXTRACTED
    assert document.error_message == (
        "Classification failed (attempt 1/2), retrying: ClassificationError: boom"
    )


def test_exhausted_retries_dead_letter_with_final_attempt_count(documents):
    outcome = _scheduler(documents).schedule(_message(2), ClassificationError("boom"))

    assert isinstance(outcome, DeadLetter)
    assert outcome.attempts == 3
    (outbound,) = outcome.outbound
    assert outbound.queue == "classification.dlq"
    record = parse_dead_letter(outbound.body)
    assert record.attempts == 3
    assert record.stage == "classification"
    assert record.message == _message(2)
    assert record.error == "ClassificationError: boom"
    document = documents.get("doc-1")
    assert document.status == DocumentStatus.ERROR
    assert document.error_message.startswith("Classification failed after 3 attempts")


def test_zero_max_retries_dead_letters_first_failure(documents):
    outcome = _scheduler(documents, max_retries=0).schedule(_message(0), ClassificationError("x"))
    assert isinstance(outcome, DeadLetter)
    assert outcome.attempts == 1


def test_non_retryable_error_dead_letters_immediately(documents):
    outcome = _scheduler(documents).schedule(_message(0), MalformedMessageError("bad"))
    assert isinstance(outcome, DeadLetter)


def test_unexpected_exception_is_retried(documents):
    outcome = _scheduler(documents).schedule(_message(0), KeyError("x"))
    assert isinstance(outcome, Retry)


def test_not_found_is_retried_by_default():
    documents = InMemoryDocumentStore()
    outcome = _scheduler(documents).schedule(_message(0), DocumentNotFoundError("doc-1"))

    assert isinstance(outcome, Retry)
    assert json.loads(outcome.outbound[0].body)["lastError"] == (
        "DocumentNotFoundError: Document doc-1 not found"
    )


def test_not_found_dead_letters_when_configured():
    documents = InMemoryDocumentStore()
    scheduler = _scheduler(documents, dead_letter_on_not_found=True)

    outcome = scheduler.schedule(_message(0), DocumentNotFoundError("doc-1"))

    assert isinstance(outcome, DeadLetter)
    assert outcome.attempts == 1


def test_status_update_failure_does_not_block_republish():
    documents = MagicMock()
    documents.mark_retrying.side_effect = RuntimeError("db down")

    outcome = _scheduler(documents).schedule(_message(0), ClassificationError("boom"))

    assert isinstance(outcome, Retry)
    assert len(outcome.outbound) == 1


def test_describe_error():
    assert describe_error(ValueError("bad value")) == "ValueError: bad value"
    assert describe_error(TimeoutError()) == "TimeoutError"
