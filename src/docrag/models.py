"""Core DocRAG data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ContentFlag(str, Enum):
    """Heuristic content tags attached to a chunk. Advisory only."""

    CONTAINS_AMOUNTS = "contains_amounts"
    CONTAINS_DATES = "contains_dates"
    CONTAINS_TRANSACTIONS = "contains_transactions"
    CONTAINS_ACCOUNT_INFO = "contains_account_info"


@dataclass(frozen=True, slots=True)
class Chunk:
    """Contiguous slice of a document's extracted text.

    ``start_offset``/``end_offset`` delimit the raw window in the source text;
    ``text`` is that window with surrounding whitespace trimmed.
    """

    text: str
    start_offset: int
    end_offset: int
    estimated_page: int
    chunk_index: int
    content_flags: FrozenSet[ContentFlag] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "estimated_page": self.estimated_page,
            "chunk_index": self.chunk_index,
            "content_flags": sorted(flag.value for flag in self.content_flags),
        }


@dataclass(frozen=True, slots=True)
class VectorRecord:
    """A chunk plus its embedding, as held by a vector store."""

    id: str
    document_id: str
    chunk: Chunk
    embedding: np.ndarray
    metadata: Dict[str, Any]


@dataclass(slots=True)
class QueryMatch:
    """One ranked hit returned by a vector store query."""

    record_id: str
    document_id: str
    chunk: Chunk
    similarity: float
    metadata: Dict[str, Any]
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "document_id": self.document_id,
            "similarity": self.similarity,
            "degraded": self.degraded,
            "chunk": self.chunk.to_dict(),
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class DocumentStats:
    document_id: str
    chunk_count: int
    sample_metadata: Dict[str, Any]


@dataclass(slots=True)
class ExtractedDocument:
    """Output of the text extraction step."""

    text: str
    num_pages: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class Job:
    """One background ingestion job."""

    id: str
    document_id: str
    file_path: Path
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    status_message: str = ""
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Dict[str, Any] | None = None
    error: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "file_path": str(self.file_path),
            "status": self.status.value,
            "progress": self.progress,
            "status_message": self.status_message,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "result": self.result,
            "error": self.error,
            "metadata": self.metadata,
        }


class DocumentState(str, Enum):
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    VECTORIZING = "vectorizing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentState.COMPLETED, DocumentState.ERROR)


@dataclass(slots=True)
class DocumentStatus:
    """Externally visible processing state of one uploaded document."""

    document_id: str
    status: DocumentState
    progress: int = 0
    message: str = ""
    error: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "metadata": self.metadata,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
