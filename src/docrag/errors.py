"""Exception hierarchy for the ingestion and retrieval pipeline.

Every error raised by DocRAG derives from :class:`DocRagError` so callers
(the web layer, the CLI) can handle the whole family in one place.
"""

from __future__ import annotations

from typing import Sequence


class DocRagError(Exception):
    """Base class for all DocRAG errors."""


class InvalidConfiguration(DocRagError):
    """Raised for parameter combinations that can never work (caller bug)."""


class ExtractionFailed(DocRagError):
    """Raised when a document cannot be read or yields no text."""


class EmbeddingGatewayFailed(DocRagError):
    """Raised when every provider in the embedding fallback chain failed."""

    def __init__(self, message: str, failures: Sequence[tuple[str, str]] = ()) -> None:
        self.failures = list(failures)
        if self.failures:
            details = "; ".join(f"{name}: {error}" for name, error in self.failures)
            message = f"{message} ({details})"
        super().__init__(message)


class DimensionMismatch(DocRagError):
    """Raised when vectors of different lengths meet in the vector store."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")


class DocumentNotFound(DocRagError):
    """Raised when a document ID is unknown."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class DocumentNotReady(DocRagError):
    """Raised when a query targets a document that has not finished ingestion."""

    def __init__(self, document_id: str, status: str) -> None:
        self.document_id = document_id
        self.status = status
        super().__init__(f"Document {document_id} is not ready for queries (status: {status})")


class JobNotFound(DocRagError):
    """Raised when a job ID is unknown or was garbage-collected."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStatusTransition(DocRagError):
    """Raised when a document status would move backward or leave a terminal state."""

    def __init__(self, document_id: str, current: str, requested: str) -> None:
        self.document_id = document_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move document {document_id} from '{current}' to '{requested}'"
        )
