"""Tests for core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest

from docrag.models import (
    Chunk,
    ContentFlag,
    DocumentState,
    DocumentStatus,
    Job,
    JobStatus,
    QueryMatch,
    VectorRecord,
)


def make_chunk(**overrides) -> Chunk:
    values = dict(
        text="Opening balance $1,200.00",
        start_offset=0,
        end_offset=26,
        estimated_page=1,
        chunk_index=0,
        content_flags=frozenset({ContentFlag.CONTAINS_DATES, ContentFlag.CONTAINS_AMOUNTS}),
    )
    values.update(overrides)
    return Chunk(**values)


class TestChunk:
    """Test Chunk dataclass."""

    def test_to_dict(self) -> None:
        assert make_chunk().to_dict() == {
            "text": "Opening balance $1,200.00",
            "start_offset": 0,
            "end_offset": 26,
            "estimated_page": 1,
            "chunk_index": 0,
            "content_flags": ["contains_amounts", "contains_dates"],
        }

    def test_immutable(self) -> None:
        chunk = make_chunk()
        with pytest.raises(AttributeError):
            chunk.text = "changed"  # type: ignore[misc]

    def test_equality(self) -> None:
        """Should compare chunks by value."""
        assert make_chunk() == make_chunk()
        assert make_chunk() != make_chunk(chunk_index=1)


class TestVectorRecordAndMatch:
    """Test VectorRecord and QueryMatch."""

    def test_vector_record(self) -> None:
        record = VectorRecord(
            id="doc_chunk_0",
            document_id="doc",
            chunk=make_chunk(),
            embedding=np.zeros(4, dtype="float32"),
            metadata={"filename": "a.pdf"},
        )
        assert record.embedding.shape == (4,)

    def test_query_match_to_dict(self) -> None:
        match = QueryMatch(
            record_id="doc_chunk_0",
            document_id="doc",
            chunk=make_chunk(),
            similarity=0.75,
            metadata={"filename": "a.pdf"},
        )
        payload = match.to_dict()
        assert payload["id"] == "doc_chunk_0"
        assert payload["similarity"] == 0.75
        assert payload["degraded"] is False
        assert payload["chunk"]["estimated_page"] == 1
        assert payload["metadata"] == {"filename": "a.pdf"}


class TestJob:
    """Test Job dataclass."""

    def test_defaults(self) -> None:
        job = Job(id="j1", document_id="doc", file_path=Path("/uploads/a.pdf"))
        assert job.status is JobStatus.QUEUED
        assert job.progress == 0
        assert job.is_terminal is False
        assert job.created_at.tzinfo is not None

    @pytest.mark.parametrize(
        "status, terminal",
        [
            (JobStatus.QUEUED, False),
            (JobStatus.PROCESSING, False),
            (JobStatus.COMPLETED, True),
            (JobStatus.FAILED, True),
        ],
    )
    def test_is_terminal(self, status: JobStatus, terminal: bool) -> None:
        job = Job(id="j1", document_id="doc", file_path=Path("a.pdf"), status=status)
        assert job.is_terminal is terminal

    def test_to_dict(self) -> None:
        created = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        job = Job(
            id="j1",
            document_id="doc",
            file_path=Path("/uploads/a.pdf"),
            status=JobStatus.FAILED,
            created_at=created,
            error="boom",
        )
        payload = job.to_dict()
        assert payload["status"] == "failed"
        assert payload["file_path"] == "/uploads/a.pdf"
        assert payload["created_at"] == "2024-03-01T12:00:00+00:00"
        assert payload["started_at"] is None
        assert payload["error"] == "boom"


class TestDocumentStatus:
    """Test DocumentState and DocumentStatus."""

    def test_terminal_states(self) -> None:
        terminal = {state for state in DocumentState if state.is_terminal}
        assert terminal == {DocumentState.COMPLETED, DocumentState.ERROR}

    def test_states_compare_to_strings(self) -> None:
        assert DocumentState("vectorizing") is DocumentState.VECTORIZING
        assert DocumentState.UPLOADED == "uploaded"

    def test_to_dict(self) -> None:
        status = DocumentStatus(document_id="doc", status=DocumentState.PROCESSING, progress=40)
        payload = status.to_dict()
        assert payload["status"] == "processing"
        assert payload["progress"] == 40
        assert payload["error"] is None
        assert payload["updated_at"].endswith("+00:00")
