"""Document ingestion pipeline run by the job queue."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import numpy as np

from docrag.config import AppConfig
from docrag.embedding.gateway import EmbeddingGateway, EmbeddingResult
from docrag.errors import DocRagError, EmbeddingGatewayFailed, ExtractionFailed
from docrag.index.storage import VectorStore
from docrag.ingestion.pdf_loader import extract_document
from docrag.jobs.queue import ProgressCallback
from docrag.models import Chunk, DocumentState, ExtractedDocument, Job
from docrag.utils.files import iter_pdf_paths
from docrag.utils.text import chunk_text, detect_financial_document

LOGGER = logging.getLogger(__name__)

Extractor = Callable[[Path], ExtractedDocument]

EXTRACTED_PROGRESS = 10
CHUNKED_PROGRESS = 15
EMBEDDED_PROGRESS = 70
STORED_PROGRESS = 95


def find_pdfs(paths: Sequence[Path]) -> list[Path]:
    """Find all PDF files under the given paths."""
    return list(iter_pdf_paths(paths))


class Indexer:
    """Extracts, chunks, embeds and stores one document per job."""

    def __init__(
        self,
        gateway: EmbeddingGateway,
        store: VectorStore,
        *,
        config: AppConfig | None = None,
        extractor: Extractor = extract_document,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.config = config or AppConfig()
        self.extractor = extractor

    def _timeout_for(self, job: Job) -> float:
        size = job.metadata.get("file_size")
        if size is None and job.file_path.is_file():
            size = job.file_path.stat().st_size
        return self.config.scaled_timeout(size)

    async def ingest(self, job: Job, report: ProgressCallback) -> Dict[str, Any]:
        """Run the three ingestion phases for ``job``; return the result summary.

        Nothing is written to the vector store unless every chunk was
        embedded, and then all chunks are written in a single ``add``.
        """
        started = time.perf_counter()
        timeout = self._timeout_for(job)

        report(0, "Extracting text", None)
        document = await self._extract(job.file_path, timeout)
        report(EXTRACTED_PROGRESS, f"Extracted {document.num_pages} pages", None)

        chunks = chunk_text(
            document.text,
            max_chars=self.config.chunk_chars,
            overlap=self.config.overlap,
            total_pages=document.num_pages,
            financial_chars=self.config.financial_chunk_chars,
            financial_overlap=self.config.financial_overlap,
        )
        if not chunks:
            raise ExtractionFailed(f"No chunks produced from {job.file_path.name}")
        financial = detect_financial_document(document.text)
        report(CHUNKED_PROGRESS, f"Created {len(chunks)} chunks", None)

        embedded = await self._embed(chunks, timeout, report)

        report(EMBEDDED_PROGRESS, "Storing vectors", DocumentState.VECTORIZING)
        metadata = {
            **job.metadata,
            **document.metadata,
            "total_pages": document.num_pages,
            "financial_document": financial,
            "embedding_provider": embedded.provider,
            "embedding_degraded": embedded.degraded,
        }
        stored = self.store.add(job.document_id, chunks, embedded.vectors, metadata)
        report(STORED_PROGRESS, f"Stored {stored} chunks", None)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        LOGGER.info(
            "Ingested document %s: %d chunks, %d pages in %d ms",
            job.document_id,
            stored,
            document.num_pages,
            elapsed_ms,
        )
        return {
            "document_id": job.document_id,
            "chunks_created": stored,
            "num_pages": document.num_pages,
            "financial_document": financial,
            "embedding_provider": embedded.provider,
            "degraded": embedded.degraded,
            "processing_time_ms": elapsed_ms,
        }

    async def _extract(self, path: Path, timeout: float) -> ExtractedDocument:
        try:
            document = await asyncio.wait_for(asyncio.to_thread(self.extractor, path), timeout)
        except asyncio.TimeoutError as exc:
            raise ExtractionFailed(f"Text extraction timed out after {timeout:g}s") from exc
        except ExtractionFailed:
            raise
        except Exception as exc:
            raise ExtractionFailed(f"Text extraction failed for {path.name}: {exc}") from exc

        if not document.text or not document.text.strip():
            raise ExtractionFailed(f"No extractable text in {path.name}")
        return document

    async def _embed_batch(self, texts: List[str], timeout: float) -> EmbeddingResult:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.gateway.embed, texts), timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingGatewayFailed(f"Embedding timed out after {timeout:g}s") from exc
        except DocRagError:
            raise
        except Exception as exc:
            raise EmbeddingGatewayFailed(f"Embedding failed: {exc}") from exc

    async def _embed(
        self, chunks: Sequence[Chunk], timeout: float, report: ProgressCallback
    ) -> EmbeddingResult:
        texts = [chunk.text for chunk in chunks]
        batch_size = self.config.embedding_batch_size
        batches: List[EmbeddingResult] = []

        for start in range(0, len(texts), batch_size):
            result = await self._embed_batch(texts[start : start + batch_size], timeout)
            if batches and result.provider != batches[0].provider:
                # One provider per document.
                LOGGER.warning(
                    "Embedding provider changed from %s to %s; re-embedding all chunks",
                    batches[0].provider,
                    result.provider,
                )
                return await self._embed_batch(texts, timeout)
            batches.append(result)
            done = min(start + batch_size, len(texts))
            progress = CHUNKED_PROGRESS + (EMBEDDED_PROGRESS - CHUNKED_PROGRESS) * done // len(texts)
            report(progress, f"Embedded {done}/{len(texts)} chunks", None)

        return EmbeddingResult(
            vectors=np.vstack([batch.vectors for batch in batches]),
            provider=batches[0].provider,
            degraded=any(batch.degraded for batch in batches),
        )
