"""
Classification Worker Daemon
============================

Consumes classification jobs from ``<STAGE_NAME>.primary``. Each job is
classified and committed to its document, then routed to human review or
forwarded to ``<LEDGER_STAGE_NAME>.primary``. Failed jobs go through the
TTL retry queue until ``MAX_RETRIES`` is exhausted. After that they land in
the dead-letter queue.
"""

from __future__ import annotations

import structlog

from .broker import QueueTopology, create_broker
from .classifier import LLMClassifier
from .config import Settings, setup_libraries
from .documents import InMemoryDocumentStore
from .logging_config import configure_logging
from .posting import FieldPostingValidator
from .retry import RetryScheduler
from .review import InMemoryReviewQueue, ReviewThresholds
from .router import DownstreamRouter
from .telemetry import QueueEvents, create_event_sink
from .worker import ClassificationPipeline, QueueWorker


def create_stores(settings: Settings):
    """Return ``(documents, review_queue)`` for the configured backend."""
    if settings.STORE_BACKEND == "postgres":
        from .postgres import (
            PostgresDocumentStore,
            PostgresReviewQueue,
            PostgresTxRunner,
            ensure_schema,
        )

        runner = PostgresTxRunner(settings.POSTGRES_DSN)
        ensure_schema(runner)
        return PostgresDocumentStore(runner), PostgresReviewQueue(runner)
    return InMemoryDocumentStore(), InMemoryReviewQueue()


def build_worker(
    settings: Settings,
    *,
    broker=None,
    documents=None,
    review_queue=None,
    classifier=None,
    sink=None,
) -> QueueWorker:
    """Wire the worker from settings; any collaborator can be passed in."""
    topology = QueueTopology.for_stage(settings.STAGE_NAME, settings.RETRY_DELAY_SECONDS)
    ledger_topology = QueueTopology.for_stage(
        settings.LEDGER_STAGE_NAME, settings.RETRY_DELAY_SECONDS
    )
    if documents is None or review_queue is None:
        default_documents, default_review_queue = create_stores(settings)
        if documents is None:
            documents = default_documents
        if review_queue is None:
            review_queue = default_review_queue

    events = QueueEvents(
        sink or create_event_sink(settings),
        service=settings.SERVICE_NAME,
        queue=topology.primary,
    )
    scheduler = RetryScheduler(
        documents=documents,
        topology=topology,
        max_retries=settings.MAX_RETRIES,
        dead_letter_on_not_found=settings.DEAD_LETTER_ON_NOT_FOUND,
    )
    router = DownstreamRouter(
        documents=documents,
        review_queue=review_queue,
        validator=FieldPostingValidator(documents),
        thresholds=ReviewThresholds(
            confidence=settings.REVIEW_CONFIDENCE_THRESHOLD,
            quality=settings.REVIEW_QUALITY_THRESHOLD,
        ),
        ledger_document_types=settings.LEDGER_DOCUMENT_TYPES,
        ledger_queue=ledger_topology.primary,
    )
    pipeline = ClassificationPipeline(
        classifier=classifier or LLMClassifier(settings),
        documents=documents,
        router=router,
        scheduler=scheduler,
        events=events,
        classify_timeout=settings.CLASSIFY_TIMEOUT,
    )
    return QueueWorker(
        broker=broker or create_broker(settings),
        topology=topology,
        downstream_topologies=[ledger_topology],
        pipeline=pipeline,
        scheduler=scheduler,
        events=events,
        poll_interval_seconds=settings.POLL_INTERVAL,
    )


def main() -> None:
    """Main loop for the classification worker."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    log.info(
        "Starting classification worker",
        worker_id=settings.WORKER_ID,
        stage=settings.STAGE_NAME,
        ledger_stage=settings.LEDGER_STAGE_NAME,
        max_retries=settings.MAX_RETRIES,
        retry_delay_seconds=settings.RETRY_DELAY_SECONDS,
        broker_backend=settings.BROKER_BACKEND,
        store_backend=settings.STORE_BACKEND,
        llm_provider=settings.LLM_PROVIDER,
        classify_model=settings.CLASSIFY_MODEL,
    )
    memory_backends = [
        name
        for name, backend in (("broker", settings.BROKER_BACKEND), ("store", settings.STORE_BACKEND))
        if backend == "memory"
    ]
    if memory_backends:
        log.warning(
            "Using in-memory backends; jobs are not shared with other processes and are lost on exit",
            backends=memory_backends,
            hint="Set BROKER_BACKEND=redis and STORE_BACKEND=postgres for a real deployment",
        )

    worker = build_worker(settings)
    try:
        worker.start()
        worker.run()
    finally:
        worker.broker.close()
        close_sink = getattr(worker.events.sink, "close", None)
        if close_sink is not None:
            close_sink()


if __name__ == "__main__":
    main()
