"""Composition root wiring the ingestion and retrieval pipeline together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping

from docrag.config import AppConfig
from docrag.embedding.gateway import EmbeddingGateway, build_gateway
from docrag.errors import DocumentNotFound, DocumentNotReady
from docrag.index.indexer import Extractor, Indexer
from docrag.index.search import Searcher
from docrag.index.storage import VectorStore, create_vector_store
from docrag.ingestion.pdf_loader import extract_document
from docrag.jobs.queue import JobQueue
from docrag.models import DocumentState, DocumentStats, DocumentStatus, Job, QueryMatch
from docrag.status import DocumentStatusTracker

LOGGER = logging.getLogger(__name__)


class RagService:
    """Owns one instance of every pipeline component.

    ``enqueue_ingestion`` and ``start`` need a running event loop; every
    other method is a plain call.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        gateway: EmbeddingGateway,
        store: VectorStore,
        tracker: DocumentStatusTracker | None = None,
        extractor: Extractor = extract_document,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.store = store
        self.tracker = tracker or DocumentStatusTracker()
        self.indexer = Indexer(gateway, store, config=config, extractor=extractor)
        self.searcher = Searcher(gateway, store, timeout=config.base_timeout)
        self.queue = JobQueue(
            self.indexer.ingest,
            tracker=self.tracker,
            max_concurrent=config.max_concurrent,
            retention_seconds=config.job_retention_seconds,
        )
        self._maintenance: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls, config: AppConfig | None = None, *, base_dir: Path | None = None
    ) -> "RagService":
        config = config or AppConfig.from_env()
        return cls(
            config=config,
            gateway=build_gateway(config),
            store=create_vector_store(config, base_dir),
        )

    # Ingestion ----------------------------------------------------------

    def enqueue_ingestion(
        self,
        document_id: str,
        file_path: Path | str,
        file_meta: Mapping[str, Any] | None = None,
    ) -> str:
        """Record the document as uploaded and queue its ingestion job.

        Raises:
            InvalidStatusTransition: if the document already finished
                (completed or error) or is further along than ``uploaded``.
        """
        path = Path(file_path)
        metadata = dict(file_meta or {})
        metadata.setdefault("filename", path.name)
        self.tracker.set_status(document_id, DocumentState.UPLOADED, metadata)
        return self.queue.add_job(document_id, path, metadata)

    def get_job_status(self, job_id: str) -> Job:
        return self.queue.get_job(job_id)

    def list_jobs(self) -> List[Job]:
        return self.queue.list_jobs()

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> Job:
        return await self.queue.wait_for(job_id, timeout)

    def get_document_status(self, document_id: str) -> DocumentStatus:
        return self.tracker.get_status(document_id)

    # Retrieval ----------------------------------------------------------

    def _check_queryable(self, document_id: str) -> None:
        if self.tracker.has_status(document_id):
            if not self.tracker.is_ready_for_chat(document_id):
                status = self.tracker.get_status(document_id).status
                raise DocumentNotReady(document_id, status.value)
        elif not self.store.has_document(document_id):
            # Persistent stores may hold documents ingested by an earlier process.
            raise DocumentNotFound(document_id)

    async def query(
        self,
        query_text: str,
        document_id: str | None = None,
        limit: int | None = None,
    ) -> List[QueryMatch]:
        """Return the chunks most similar to ``query_text``.

        Raises:
            DocumentNotFound: if ``document_id`` is unknown.
            DocumentNotReady: if ``document_id`` has not completed ingestion.
            EmbeddingGatewayFailed: if the query could not be embedded.
        """
        if document_id is not None:
            self._check_queryable(document_id)
        if limit is None:
            limit = self.config.default_query_limit
        return await self.searcher.search(query_text, document_id=document_id, limit=limit)

    def document_stats(self, document_id: str) -> DocumentStats:
        stats = self.store.stats(document_id)
        if stats.chunk_count == 0 and not self.tracker.has_status(document_id):
            raise DocumentNotFound(document_id)
        return stats

    def delete_document(self, document_id: str) -> bool:
        """Cancel a document's pending jobs and remove its vectors and status record.

        Returns whether any vectors were removed.

        Raises:
            DocumentNotFound: if neither the store nor the tracker knows it.
        """
        cancelled = self.queue.cancel_document(document_id)
        removed = self.store.delete_document(document_id)
        had_status = self.tracker.remove_status(document_id)
        if not (removed or had_status or cancelled):
            raise DocumentNotFound(document_id)
        LOGGER.info("Deleted document %s", document_id)
        return removed

    # Maintenance --------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> Dict[str, int]:
        """Garbage-collect expired jobs and document statuses."""
        return {
            "jobs": self.queue.cleanup(now),
            "statuses": self.tracker.cleanup_old_statuses(self.config.status_ttl_seconds, now),
        }

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "vector_backend": self.config.vector_backend,
            "embedding_providers": self.gateway.provider_names,
            "documents": len(self.store.document_ids()),
            "chunks": self.store.count(),
            "jobs": self.queue.get_stats(),
        }

    async def _maintenance_loop(self) -> None:
        interval = self.config.cleanup_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                removed = self.sweep()
            except Exception as exc:
                LOGGER.error("Maintenance sweep failed: %s", exc)
            else:
                LOGGER.debug("Maintenance sweep removed %s", removed)

    def start(self) -> None:
        """Start the periodic maintenance sweep on the running loop."""
        if self._maintenance is None or self._maintenance.done():
            self._maintenance = asyncio.create_task(self._maintenance_loop(), name="docrag-maintenance")

    async def stop(self) -> None:
        """Stop maintenance and the job queue."""
        if self._maintenance is not None:
            self._maintenance.cancel()
            try:
                await self._maintenance
            except asyncio.CancelledError:
                pass
            self._maintenance = None
        await self.queue.stop()

    def close(self) -> None:
        self.store.close()
