"""Vector stores holding chunk embeddings for similarity search.

Two implementations share one contract:

* :class:`InMemoryVectorStore` keeps an immutable snapshot of records that is
  swapped copy-on-write under a lock, so queries never observe a partially
  applied ``add`` or ``delete_document``.
* :class:`SQLiteVectorStore` keeps the same records in SQLite (``:memory:``
  unless a path is configured) and serialises every operation on one lock.

Both rank by cosine similarity with a brute-force scan. Ties keep insertion
order: the sort is stable over records stored in the order they were added.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Sequence

import numpy as np

from docrag.config import AppConfig, MEMORY_DB
from docrag.errors import DimensionMismatch
from docrag.models import Chunk, ContentFlag, DocumentStats, QueryMatch, VectorRecord

LOGGER = logging.getLogger(__name__)


def record_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}_chunk_{chunk_index}"


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine of the angle between two vectors; 0.0 when either is all zeros."""
    vec_a = np.asarray(a, dtype="float64").ravel()
    vec_b = np.asarray(b, dtype="float64").ravel()
    if vec_a.shape != vec_b.shape:
        raise DimensionMismatch(vec_a.shape[0], vec_b.shape[0])
    norm = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(vec_a, vec_b) / norm, -1.0, 1.0))


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of ``matrix`` against ``query``."""
    rows = np.asarray(matrix, dtype="float64")
    vector = np.asarray(query, dtype="float64")
    norms = np.linalg.norm(rows, axis=1) * np.linalg.norm(vector)
    dots = rows @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(scores, -1.0, 1.0)


def rank_indices(scores: np.ndarray, limit: int) -> np.ndarray:
    """Indices of the ``limit`` best scores, descending, ties in index order."""
    return np.argsort(-scores, kind="stable")[:limit]


def _record_metadata(
    document_id: str, chunk: Chunk, metadata: Mapping[str, Any]
) -> Dict[str, Any]:
    result = dict(metadata)
    result.update(
        {
            "document_id": document_id,
            "chunk_index": chunk.chunk_index,
            "estimated_page": chunk.estimated_page,
            "start_offset": chunk.start_offset,
            "end_offset": chunk.end_offset,
            "content_flags": sorted(flag.value for flag in chunk.content_flags),
        }
    )
    return result


def _match(record: VectorRecord, similarity: float) -> QueryMatch:
    return QueryMatch(
        record_id=record.id,
        document_id=record.document_id,
        chunk=record.chunk,
        similarity=float(similarity),
        metadata=dict(record.metadata),
        degraded=bool(record.metadata.get("embedding_degraded", False)),
    )


class VectorStore(ABC):
    """Capability interface shared by every vector store backend."""

    def __init__(self, *, dimension: int | None = None) -> None:
        self._dimension = dimension

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def _check_dimension(self, actual: int) -> None:
        if self._dimension is not None and actual != self._dimension:
            raise DimensionMismatch(self._dimension, actual)

    def _prepare(
        self, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]] | np.ndarray
    ) -> np.ndarray:
        """Validate an ``add`` batch and return it as a float32 matrix."""
        if len(embeddings) != len(chunks):
            raise ValueError("Embeddings and chunks length mismatch")
        if not chunks:
            return np.empty((0, self._dimension or 0), dtype="float32")
        lengths = {len(np.asarray(vector).ravel()) for vector in embeddings}
        if len(lengths) > 1:
            expected = self._dimension or len(np.asarray(embeddings[0]).ravel())
            actual = next(length for length in sorted(lengths) if length != expected)
            raise DimensionMismatch(expected, actual)
        matrix = np.vstack([np.asarray(vector, dtype="float32").ravel() for vector in embeddings])
        self._check_dimension(matrix.shape[1])
        indices = [chunk.chunk_index for chunk in chunks]
        if len(set(indices)) != len(indices):
            raise ValueError("Duplicate chunk_index values in one document")
        return matrix

    def _prepare_query(self, query_vector: Sequence[float] | np.ndarray, limit: int) -> np.ndarray:
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        vector = np.asarray(query_vector, dtype="float32").ravel()
        self._check_dimension(vector.shape[0])
        return vector

    @abstractmethod
    def add(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]] | np.ndarray,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        """Append one record per chunk atomically; return the number stored."""

    @abstractmethod
    def query(
        self,
        query_vector: Sequence[float] | np.ndarray,
        *,
        document_id: str | None = None,
        limit: int = 5,
    ) -> List[QueryMatch]:
        """Return up to ``limit`` records ranked by cosine similarity."""

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        """Remove every record of ``document_id``; return whether any existed."""

    @abstractmethod
    def stats(self, document_id: str) -> DocumentStats:
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def document_ids(self) -> List[str]:
        ...

    def has_document(self, document_id: str) -> bool:
        return self.stats(document_id).chunk_count > 0

    def close(self) -> None:
        """Release backend resources."""


@dataclass(frozen=True, slots=True)
class _Snapshot:
    records: tuple[VectorRecord, ...]
    matrix: np.ndarray


class InMemoryVectorStore(VectorStore):
    """Process-local store; all state lives in one immutable snapshot."""

    def __init__(self, *, dimension: int | None = None) -> None:
        super().__init__(dimension=dimension)
        self._lock = threading.Lock()
        self._snapshot = _Snapshot(records=(), matrix=np.empty((0, dimension or 0), dtype="float32"))

    def add(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]] | np.ndarray,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        with self._lock:
            matrix = self._prepare(chunks, embeddings)
            if not chunks:
                return 0
            current = self._snapshot
            if any(record.document_id == document_id for record in current.records):
                raise ValueError(f"Document {document_id} already has vectors; delete it first")

            new_records = tuple(
                VectorRecord(
                    id=record_id(document_id, chunk.chunk_index),
                    document_id=document_id,
                    chunk=chunk,
                    embedding=row,
                    metadata=_record_metadata(document_id, chunk, metadata or {}),
                )
                for chunk, row in zip(chunks, matrix)
            )
            if self._dimension is None:
                self._dimension = int(matrix.shape[1])
            stacked = matrix if not current.records else np.vstack([current.matrix, matrix])
            self._snapshot = _Snapshot(records=current.records + new_records, matrix=stacked)

        LOGGER.info("Stored %d chunks for document %s in memory", len(new_records), document_id)
        return len(new_records)

    def query(
        self,
        query_vector: Sequence[float] | np.ndarray,
        *,
        document_id: str | None = None,
        limit: int = 5,
    ) -> List[QueryMatch]:
        vector = self._prepare_query(query_vector, limit)
        snapshot = self._snapshot
        if not snapshot.records:
            return []

        if document_id is None:
            records = snapshot.records
            matrix = snapshot.matrix
        else:
            positions = [i for i, record in enumerate(snapshot.records) if record.document_id == document_id]
            if not positions:
                return []
            records = tuple(snapshot.records[i] for i in positions)
            matrix = snapshot.matrix[positions]

        scores = cosine_scores(matrix, vector)
        results = [_match(records[i], scores[i]) for i in rank_indices(scores, limit)]
        LOGGER.debug("Scanned %d chunks, returning %d matches", len(records), len(results))
        return results

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            current = self._snapshot
            keep = [i for i, record in enumerate(current.records) if record.document_id != document_id]
            removed = len(current.records) - len(keep)
            if not removed:
                return False
            self._snapshot = _Snapshot(
                records=tuple(current.records[i] for i in keep),
                matrix=current.matrix[keep],
            )
        LOGGER.info("Deleted document %s (%d chunks)", document_id, removed)
        return True

    def stats(self, document_id: str) -> DocumentStats:
        records = [r for r in self._snapshot.records if r.document_id == document_id]
        sample = dict(records[0].metadata) if records else {}
        return DocumentStats(document_id=document_id, chunk_count=len(records), sample_metadata=sample)

    def count(self) -> int:
        return len(self._snapshot.records)

    def document_ids(self) -> List[str]:
        return list(dict.fromkeys(record.document_id for record in self._snapshot.records))


class SQLiteVectorStore(VectorStore):
    """SQLite-backed store with the same contract as the in-memory one."""

    def __init__(self, db_path: Path | str = MEMORY_DB, *, dimension: int | None = None) -> None:
        super().__init__(dimension=dimension)
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()
        self._load_dimension()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    start_offset INTEGER NOT NULL,
                    end_offset INTEGER NOT NULL,
                    estimated_page INTEGER NOT NULL,
                    content_flags TEXT NOT NULL,
                    metadata TEXT,
                    embedding BLOB NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON chunks(document_id)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def _load_dimension(self) -> None:
        row = self._conn.execute("SELECT value FROM store_meta WHERE key = 'dimension'").fetchone()
        if row is None:
            return
        stored = int(row["value"])
        self._check_dimension(stored)
        self._dimension = stored

    def add(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]] | np.ndarray,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        with self.transaction() as conn:
            matrix = self._prepare(chunks, embeddings)
            if not chunks:
                return 0
            existing = conn.execute(
                "SELECT 1 FROM chunks WHERE document_id = ? LIMIT 1", (document_id,)
            ).fetchone()
            if existing:
                raise ValueError(f"Document {document_id} already has vectors; delete it first")

            for chunk, vector in zip(chunks, matrix):
                conn.execute(
                    """
                    INSERT INTO chunks(id, document_id, chunk_index, text, start_offset,
                                       end_offset, estimated_page, content_flags, metadata, embedding)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record_id(document_id, chunk.chunk_index),
                        document_id,
                        chunk.chunk_index,
                        chunk.text,
                        chunk.start_offset,
                        chunk.end_offset,
                        chunk.estimated_page,
                        json.dumps(sorted(flag.value for flag in chunk.content_flags)),
                        json.dumps(_record_metadata(document_id, chunk, metadata or {}), default=str),
                        sqlite3.Binary(np.asarray(vector, dtype="float32").tobytes()),
                    ),
                )
            if self._dimension is None:
                conn.execute(
                    "INSERT OR REPLACE INTO store_meta(key, value) VALUES ('dimension', ?)",
                    (str(matrix.shape[1]),),
                )
                self._dimension = int(matrix.shape[1])

        LOGGER.info("Stored %d chunks for document %s in SQLite", len(chunks), document_id)
        return len(chunks)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> VectorRecord:
        chunk = Chunk(
            text=row["text"],
            start_offset=row["start_offset"],
            end_offset=row["end_offset"],
            estimated_page=row["estimated_page"],
            chunk_index=row["chunk_index"],
            content_flags=frozenset(ContentFlag(value) for value in json.loads(row["content_flags"])),
        )
        return VectorRecord(
            id=row["id"],
            document_id=row["document_id"],
            chunk=chunk,
            embedding=np.frombuffer(row["embedding"], dtype="float32"),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def _fetch(self, document_id: str | None) -> List[VectorRecord]:
        with self._lock:
            if document_id is None:
                rows = self._conn.execute("SELECT * FROM chunks ORDER BY seq").fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM chunks WHERE document_id = ? ORDER BY seq", (document_id,)
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def query(
        self,
        query_vector: Sequence[float] | np.ndarray,
        *,
        document_id: str | None = None,
        limit: int = 5,
    ) -> List[QueryMatch]:
        vector = self._prepare_query(query_vector, limit)
        records = self._fetch(document_id)
        if not records:
            return []

        matrix = np.vstack([record.embedding for record in records])
        scores = cosine_scores(matrix, vector)
        return [_match(records[i], scores[i]) for i in rank_indices(scores, limit)]

    def delete_document(self, document_id: str) -> bool:
        with self.transaction() as conn:
            removed = conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,)).rowcount
        if removed:
            LOGGER.info("Deleted document %s (%d chunks)", document_id, removed)
        return removed > 0

    def stats(self, document_id: str) -> DocumentStats:
        with self._lock:
            count = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchone()[0]
            row = self._conn.execute(
                "SELECT metadata FROM chunks WHERE document_id = ? ORDER BY seq LIMIT 1",
                (document_id,),
            ).fetchone()
        sample = json.loads(row["metadata"]) if row and row["metadata"] else {}
        return DocumentStats(document_id=document_id, chunk_count=int(count), sample_metadata=sample)

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0])

    def document_ids(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT document_id FROM chunks GROUP BY document_id ORDER BY MIN(seq)"
            ).fetchall()
        return [row["document_id"] for row in rows]


def create_vector_store(config: AppConfig, base_dir: Path | None = None) -> VectorStore:
    """Instantiate the backend selected by ``config.vector_backend``."""
    if config.vector_backend == "sqlite":
        db_path = config.resolve_db_path(base_dir)
        if str(db_path) != MEMORY_DB:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Using SQLite vector store at %s", db_path)
        return SQLiteVectorStore(db_path)
    LOGGER.info("Using in-memory vector store")
    return InMemoryVectorStore()
