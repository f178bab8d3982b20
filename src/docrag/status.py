"""Per-document processing status.

The tracker is a passive keyed record store: ingestion jobs push state
changes into it and readers (the query gate, the web layer) take snapshots.
Status only moves forward along

    uploading -> uploaded -> processing -> vectorizing -> completed

with ``error`` reachable from any non-terminal state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping

from docrag.errors import DocumentNotFound, InvalidStatusTransition
from docrag.models import DocumentState, DocumentStatus, utcnow

LOGGER = logging.getLogger(__name__)

DEFAULT_STATUS_TTL_SECONDS = 24 * 60 * 60

_ORDER = {
    DocumentState.UPLOADING: 0,
    DocumentState.UPLOADED: 1,
    DocumentState.PROCESSING: 2,
    DocumentState.VECTORIZING: 3,
    DocumentState.COMPLETED: 4,
}

_PROCESSING_STATES = frozenset(
    {
        DocumentState.UPLOADING,
        DocumentState.UPLOADED,
        DocumentState.PROCESSING,
        DocumentState.VECTORIZING,
    }
)


def _snapshot(record: DocumentStatus) -> DocumentStatus:
    return replace(record, metadata=dict(record.metadata))


class DocumentStatusTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, DocumentStatus] = {}

    def _require(self, document_id: str) -> DocumentStatus:
        record = self._records.get(document_id)
        if record is None:
            raise DocumentNotFound(document_id)
        return record

    def set_status(
        self,
        document_id: str,
        status: DocumentState | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> DocumentStatus:
        """Create the record or advance it to ``status``.

        Raises:
            InvalidStatusTransition: for backward moves or any change out of a
                terminal state other than repeating that same state.
        """
        state = DocumentState(status)
        with self._lock:
            record = self._records.get(document_id)
            if record is None:
                record = DocumentStatus(document_id=document_id, status=state)
                if state is DocumentState.COMPLETED:
                    record.progress = 100
                self._records[document_id] = record
                LOGGER.debug("Tracking document %s as %s", document_id, state.value)
            elif record.status.is_terminal:
                if state is not record.status:
                    raise InvalidStatusTransition(document_id, record.status.value, state.value)
                return _snapshot(record)
            elif state is not DocumentState.ERROR and _ORDER[state] < _ORDER[record.status]:
                raise InvalidStatusTransition(document_id, record.status.value, state.value)
            else:
                if state is not record.status:
                    LOGGER.debug(
                        "Document %s: %s -> %s", document_id, record.status.value, state.value
                    )
                record.status = state
                if state is DocumentState.COMPLETED:
                    record.progress = 100
            if metadata:
                record.metadata.update(metadata)
            record.updated_at = utcnow()
            return _snapshot(record)

    def update_progress(
        self, document_id: str, progress: int, message: str | None = None
    ) -> DocumentStatus:
        """Raise the progress of a non-terminal record; lower values are ignored."""
        with self._lock:
            record = self._require(document_id)
            if record.status.is_terminal:
                return _snapshot(record)
            record.progress = max(record.progress, min(max(int(progress), 0), 100))
            if message is not None:
                record.message = message
            record.updated_at = utcnow()
            return _snapshot(record)

    def mark_completed(
        self, document_id: str, data: Mapping[str, Any] | None = None
    ) -> DocumentStatus:
        record = self.set_status(document_id, DocumentState.COMPLETED, data)
        LOGGER.info("Document %s completed", document_id)
        return record

    def mark_error(self, document_id: str, error: str) -> DocumentStatus:
        with self._lock:
            record = self._records.get(document_id)
            if record is None:
                record = DocumentStatus(document_id=document_id, status=DocumentState.ERROR)
                self._records[document_id] = record
            elif record.status.is_terminal:
                if record.status is not DocumentState.ERROR:
                    raise InvalidStatusTransition(
                        document_id, record.status.value, DocumentState.ERROR.value
                    )
                return _snapshot(record)
            record.status = DocumentState.ERROR
            record.error = error
            record.message = error
            record.updated_at = utcnow()
            snapshot = _snapshot(record)
        LOGGER.warning("Document %s failed: %s", document_id, error)
        return snapshot

    def get_status(self, document_id: str) -> DocumentStatus:
        with self._lock:
            return _snapshot(self._require(document_id))

    def has_status(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._records

    def is_ready_for_chat(self, document_id: str) -> bool:
        with self._lock:
            record = self._records.get(document_id)
            return record is not None and record.status is DocumentState.COMPLETED

    def is_processing(self, document_id: str) -> bool:
        with self._lock:
            record = self._records.get(document_id)
            return record is not None and record.status in _PROCESSING_STATES

    def remove_status(self, document_id: str) -> bool:
        with self._lock:
            return self._records.pop(document_id, None) is not None

    def all_statuses(self) -> List[DocumentStatus]:
        with self._lock:
            return [_snapshot(record) for record in self._records.values()]

    def cleanup_old_statuses(
        self,
        ttl_seconds: float = DEFAULT_STATUS_TTL_SECONDS,
        now: datetime | None = None,
    ) -> int:
        """Drop records not updated within ``ttl_seconds``; return how many."""
        cutoff = (now or utcnow()) - timedelta(seconds=ttl_seconds)
        with self._lock:
            expired = [key for key, record in self._records.items() if record.updated_at < cutoff]
            for key in expired:
                del self._records[key]
        if expired:
            LOGGER.info("Cleaned up %d old document statuses", len(expired))
        return len(expired)
