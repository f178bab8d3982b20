"""Semantic search interface."""

from __future__ import annotations

import asyncio
import logging
from typing import List

from docrag.embedding.gateway import EmbeddingGateway, EmbeddingResult
from docrag.errors import DocRagError, EmbeddingGatewayFailed
from docrag.index.storage import VectorStore
from docrag.models import QueryMatch

LOGGER = logging.getLogger(__name__)


class Searcher:
    """High-level API to query the vector store with natural language."""

    def __init__(self, gateway: EmbeddingGateway, store: VectorStore, *, timeout: float = 30.0) -> None:
        self.gateway = gateway
        self.store = store
        self.timeout = timeout

    async def embed_query(self, query: str) -> EmbeddingResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.gateway.embed_query, query), self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingGatewayFailed(
                f"Query embedding timed out after {self.timeout:g}s"
            ) from exc
        except DocRagError:
            raise
        except Exception as exc:
            raise EmbeddingGatewayFailed(f"Query embedding failed: {exc}") from exc

    async def search(
        self, query: str, *, document_id: str | None = None, limit: int = 5
    ) -> List[QueryMatch]:
        if not query or not query.strip():
            raise ValueError("Query text must not be empty")
        embedded = await self.embed_query(query)
        matches = self.store.query(embedded.vectors[0], document_id=document_id, limit=limit)
        if embedded.degraded:
            LOGGER.warning("Query embedded with %s; results are degraded", embedded.provider)
            for match in matches:
                match.degraded = True
        return matches
