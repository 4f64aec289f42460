"""
Pipeline error taxonomy.

Only classification and persistence errors are retryable; they are the ones
handed to the retry scheduler. Malformed messages are dropped, broker errors
leave the delivery unacknowledged so the broker redelivers it.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised by the classification pipeline."""

    retryable: bool = False


class MalformedMessageError(PipelineError):
    """The message body cannot be parsed into a job envelope."""


class ClassificationError(PipelineError):
    """The classification capability raised or returned an unusable result."""

    retryable = True


class ClassificationTimeoutError(ClassificationError):
    """The classification capability did not answer within the timeout."""


class PersistenceError(PipelineError):
    """The document transaction failed and was rolled back."""

    retryable = True


class DocumentNotFoundError(PersistenceError):
    """The document row referenced by a job no longer exists."""

    def __init__(self, document_id: str):
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class BrokerError(PipelineError):
    """A queue broker operation failed or was used incorrectly."""
