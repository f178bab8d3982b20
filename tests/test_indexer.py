"""Tests for Indexer."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from conftest import FailingProvider, SlowProvider, StaticProvider, fake_extractor, synthetic_text
from docrag.config import AppConfig
from docrag.embedding.gateway import EmbeddingGateway
from docrag.errors import EmbeddingGatewayFailed, ExtractionFailed
from docrag.index.indexer import Indexer, find_pdfs
from docrag.index.storage import InMemoryVectorStore
from docrag.models import DocumentState, ExtractedDocument, Job


class FlakyProvider(StaticProvider):
    """Succeeds for the first ``ok_calls`` calls, then fails."""

    def __init__(self, name: str = "flaky", ok_calls: int = 1) -> None:
        super().__init__(name)
        self.ok_calls = ok_calls

    def embed(self, texts):
        if len(self.calls) >= self.ok_calls:
            raise RuntimeError("quota exceeded")
        return super().embed(texts)


def make_job(name: str = "report.pdf", document_id: str = "doc1") -> Job:
    return Job(
        id="job1",
        document_id=document_id,
        file_path=Path("/uploads") / name,
        metadata={"filename": name, "file_size": 2048},
    )


def run_ingest(indexer: Indexer, job: Job):
    calls = []

    def report(progress, message, state):
        calls.append((progress, message, state))

    result = asyncio.run(indexer.ingest(job, report))
    return result, calls


@pytest.fixture
def documents():
    return {
        "report.pdf": ExtractedDocument(
            text=synthetic_text(6000), num_pages=3, metadata={"title": "Report"}
        )
    }


@pytest.fixture
def store():
    return InMemoryVectorStore()


class TestIndexer:
    """Test the three ingestion phases."""

    def test_successful_ingestion(self, documents, store, config, hashing_gateway) -> None:
        """Chunks are embedded and stored with document metadata."""
        indexer = Indexer(hashing_gateway, store, config=config, extractor=fake_extractor(documents))
        result, calls = run_ingest(indexer, make_job())

        assert 4 <= result["chunks_created"] <= 5
        assert result["document_id"] == "doc1"
        assert result["num_pages"] == 3
        assert result["financial_document"] is False
        assert result["embedding_provider"] == "hashing-fallback"
        assert result["degraded"] is True
        assert result["processing_time_ms"] >= 0

        stats = store.stats("doc1")
        assert stats.chunk_count == result["chunks_created"]
        assert stats.sample_metadata["total_pages"] == 3
        assert stats.sample_metadata["filename"] == "report.pdf"
        assert stats.sample_metadata["title"] == "Report"
        assert stats.sample_metadata["embedding_degraded"] is True

    def test_progress_checkpoints(self, documents, store, config, hashing_gateway) -> None:
        """Progress only rises and vectorizing is reported before the write."""
        indexer = Indexer(hashing_gateway, store, config=config, extractor=fake_extractor(documents))
        _, calls = run_ingest(indexer, make_job())

        progress = [call[0] for call in calls]
        assert progress == sorted(progress)
        assert progress[0] == 0
        assert 10 in progress
        assert (70, "Storing vectors", DocumentState.VECTORIZING) in calls
        assert [call for call in calls if call[2] is not None] == [
            (70, "Storing vectors", DocumentState.VECTORIZING)
        ]

    def test_embeds_in_batches(self, documents, store) -> None:
        provider = StaticProvider()
        config = AppConfig(embedding_batch_size=2)
        indexer = Indexer(EmbeddingGateway([provider]), store, config=config, extractor=fake_extractor(documents))
        result, _ = run_ingest(indexer, make_job())

        assert [len(batch) for batch in provider.calls][:-1] == [2] * (len(provider.calls) - 1)
        assert sum(len(batch) for batch in provider.calls) == result["chunks_created"]
        assert result["degraded"] is False

    def test_identical_vector_finds_its_chunk(self, documents, store, config) -> None:
        provider = StaticProvider()
        indexer = Indexer(EmbeddingGateway([provider]), store, config=config, extractor=fake_extractor(documents))
        run_ingest(indexer, make_job())

        chunk_two = provider.calls[0][2]
        vector = provider.embed([chunk_two])[0]
        match = store.query(vector, document_id="doc1", limit=1)[0]
        assert match.chunk.chunk_index == 2
        assert match.similarity == pytest.approx(1.0, abs=1e-6)

    def test_extraction_failure(self, store, config, hashing_gateway) -> None:
        indexer = Indexer(hashing_gateway, store, config=config, extractor=fake_extractor({}))
        with pytest.raises(ExtractionFailed):
            run_ingest(indexer, make_job("missing.pdf"))
        assert store.count() == 0

    def test_unexpected_extractor_error_is_wrapped(self, store, config, hashing_gateway) -> None:
        def broken(path):
            raise OSError("disk on fire")

        indexer = Indexer(hashing_gateway, store, config=config, extractor=broken)
        with pytest.raises(ExtractionFailed, match="disk on fire"):
            run_ingest(indexer, make_job())

    def test_empty_text(self, store, config, hashing_gateway) -> None:
        extractor = fake_extractor({"report.pdf": ExtractedDocument(text="   ", num_pages=1)})
        indexer = Indexer(hashing_gateway, store, config=config, extractor=extractor)
        with pytest.raises(ExtractionFailed):
            run_ingest(indexer, make_job())

    def test_extraction_timeout(self, store, hashing_gateway) -> None:
        def slow(path):
            time.sleep(0.5)
            return ExtractedDocument(text="late", num_pages=1)

        config = AppConfig(base_timeout=0.05, timeout_per_mb=0.0, max_timeout=0.05)
        indexer = Indexer(hashing_gateway, store, config=config, extractor=slow)
        with pytest.raises(ExtractionFailed, match="timed out"):
            run_ingest(indexer, make_job())

    def test_embedding_timeout_writes_nothing(self, documents, store) -> None:
        config = AppConfig(base_timeout=0.05, timeout_per_mb=0.0, max_timeout=0.05)
        gateway = EmbeddingGateway([SlowProvider()])
        indexer = Indexer(gateway, store, config=config, extractor=fake_extractor(documents))
        with pytest.raises(EmbeddingGatewayFailed, match="timed out"):
            run_ingest(indexer, make_job())
        assert store.count() == 0

    def test_gateway_failure_writes_nothing(self, documents, store, config) -> None:
        gateway = EmbeddingGateway([FailingProvider()])
        indexer = Indexer(gateway, store, config=config, extractor=fake_extractor(documents))
        with pytest.raises(EmbeddingGatewayFailed):
            run_ingest(indexer, make_job())
        assert store.count() == 0

    def test_failure_on_later_batch_writes_nothing(self, documents, store) -> None:
        """All embeddings must succeed before anything is stored."""
        gateway = EmbeddingGateway([FlakyProvider(ok_calls=1)])
        indexer = Indexer(
            gateway, store, config=AppConfig(embedding_batch_size=2), extractor=fake_extractor(documents)
        )
        with pytest.raises(EmbeddingGatewayFailed):
            run_ingest(indexer, make_job())
        assert store.count() == 0

    def test_provider_switch_reembeds_everything(self, documents, store) -> None:
        """Vectors from different providers never end up in one document."""
        backup = StaticProvider("backup")
        gateway = EmbeddingGateway([FlakyProvider(ok_calls=1), backup])
        indexer = Indexer(
            gateway, store, config=AppConfig(embedding_batch_size=2), extractor=fake_extractor(documents)
        )
        result, _ = run_ingest(indexer, make_job())

        assert result["embedding_provider"] == "backup"
        assert len(backup.calls[-1]) == result["chunks_created"]
        assert store.stats("doc1").sample_metadata["embedding_provider"] == "backup"

    def test_existing_document_is_not_overwritten(self, documents, store, config, hashing_gateway) -> None:
        indexer = Indexer(hashing_gateway, store, config=config, extractor=fake_extractor(documents))
        run_ingest(indexer, make_job())
        with pytest.raises(ValueError):
            run_ingest(indexer, make_job())


class TestFindPdfs:
    """Test PDF discovery."""

    def test_find_pdfs(self, tmp_path: Path) -> None:
        (tmp_path / "a.pdf").write_text("dummy")
        (tmp_path / "b.txt").write_text("dummy")
        nested = tmp_path / "nested"
        nested.mkdir()
        (nested / "c.pdf").write_text("dummy")

        found = find_pdfs([tmp_path, tmp_path / "a.pdf"])
        assert sorted(path.name for path in found) == ["a.pdf", "c.pdf"]
