import os
from unittest.mock import MagicMock

import pytest

from doc_pipeline import main as main_module
from doc_pipeline.broker import InMemoryBroker
from doc_pipeline.classifier import ClassificationResult
from doc_pipeline.config import Settings
from doc_pipeline.documents import Document, InMemoryDocumentStore
from doc_pipeline.envelope import JobMessage
from doc_pipeline.review import InMemoryReviewQueue


@pytest.fixture
def settings(mocker):
    mocker.patch.dict(
        os.environ,
        {"OPENAI_API_KEY": "test_api_key", "MAX_RETRIES": "2", "LEDGER_STAGE_NAME": "posting"},
        clear=True,
    )
    return Settings()


def test_build_worker_wires_settings(settings):
    documents = InMemoryDocumentStore([Document("doc-1", "tenant-1", quality_score=95)])
    broker = InMemoryBroker()
    classifier = MagicMock()
    classifier.classify.return_value = ClassificationResult(
        "receipt", {"total": 9.99, "date": "2024-01-01"}, 0.97
    )

    worker = main_module.build_worker(
        settings,
        broker=broker,
        documents=documents,
        review_queue=InMemoryReviewQueue(),
        classifier=classifier,
        sink=MagicMock(),
    )
    worker.start()
    broker.publish(
        "classification.primary", JobMessage("doc-1", "text", "t", "c").to_wire()
    )
    worker.run(stop_when_idle=True)

    assert worker.topology.primary == "classification.primary"
    assert worker.scheduler.max_retries == 2
    assert worker.pipeline.classify_timeout == 60
    assert broker.depth("posting.primary") == 1


def test_build_worker_uses_memory_backends_by_default(settings):
    worker = main_module.build_worker(settings, classifier=MagicMock())

    assert isinstance(worker.broker, InMemoryBroker)
    assert isinstance(worker.pipeline.documents, InMemoryDocumentStore)


def test_main_configuration_error_returns(mocker):
    mocker.patch.dict(os.environ, {}, clear=True)
    build = mocker.patch("doc_pipeline.main.build_worker")

    main_module.main()

    build.assert_not_called()


def test_main_runs_worker_and_closes_broker(mocker):
    mocker.patch.dict(os.environ, {"OPENAI_API_KEY": "k"}, clear=True)
    mocker.patch("doc_pipeline.main.configure_logging")
    mocker.patch("doc_pipeline.main.setup_libraries")
    worker = MagicMock()
    mocker.patch("doc_pipeline.main.build_worker", return_value=worker)

    main_module.main()

    worker.start.assert_called_once()
    worker.run.assert_called_once()
    worker.broker.close.assert_called_once()
    worker.events.sink.close.assert_called_once()


def test_main_warns_when_running_on_memory_backends(mocker):
    mocker.patch.dict(os.environ, {"OPENAI_API_KEY": "k"}, clear=True)
    mocker.patch("doc_pipeline.main.configure_logging")
    mocker.patch("doc_pipeline.main.setup_libraries")
    mocker.patch("doc_pipeline.main.build_worker")
    log = mocker.patch("doc_pipeline.main.structlog").get_logger.return_value

    main_module.main()

    log.warning.assert_called_once()
    assert log.warning.call_args.kwargs["backends"] == ["broker", "store"]


def test_main_does_not_warn_with_durable_backends(mocker):
    mocker.patch.dict(
        os.environ,
        {
            "OPENAI_API_KEY": "k",
            "BROKER_BACKEND": "redis",
            "REDIS_URL": "redis://localhost:6379/0",
            "STORE_BACKEND": "postgres",
            "POSTGRES_DSN": "postgresql://localhost/docs",
        },
        clear=True,
    )
    mocker.patch("doc_pipeline.main.configure_logging")
    mocker.patch("doc_pipeline.main.setup_libraries")
    mocker.patch("doc_pipeline.main.build_worker")
    log = mocker.patch("doc_pipeline.main.structlog").get_logger.return_value

    main_module.main()

    log.warning.assert_not_called()
