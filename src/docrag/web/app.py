"""FastAPI application exposing ingestion, status and retrieval over HTTP."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Type

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from docrag.config import AppConfig
from docrag.errors import (
    DimensionMismatch,
    DocRagError,
    DocumentNotFound,
    DocumentNotReady,
    EmbeddingGatewayFailed,
    ExtractionFailed,
    InvalidConfiguration,
    InvalidStatusTransition,
    JobNotFound,
)
from docrag.service import RagService
from docrag.utils.files import describe_file

LOGGER = logging.getLogger(__name__)

ERROR_STATUS_CODES: Dict[Type[DocRagError], int] = {
    DocumentNotFound: 404,
    JobNotFound: 404,
    DocumentNotReady: 409,
    InvalidStatusTransition: 409,
    InvalidConfiguration: 400,
    ExtractionFailed: 422,
    EmbeddingGatewayFailed: 502,
    DimensionMismatch: 500,
}


class IngestPayload(BaseModel):
    path: str
    document_id: str | None = None


class QueryPayload(BaseModel):
    query: str
    document_id: str | None = None
    limit: int = Field(default=5, ge=1, le=50)


def _status_code_for(exc: DocRagError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def _validate_pdf_path(raw: str) -> Path:
    clean_path = raw.strip().replace("\r", "").replace("\n", "")
    if not clean_path:
        raise HTTPException(status_code=400, detail="No path provided")
    if "\0" in clean_path:
        raise HTTPException(status_code=400, detail="Invalid path: contains null byte")

    path = Path(os.path.realpath(os.path.expanduser(clean_path)))
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"Path not found: {clean_path}")
    if not path.is_file() or path.suffix.lower() != ".pdf":
        raise HTTPException(status_code=400, detail=f"Path must be a PDF file: {clean_path}")
    return path


def get_service(request: Request) -> RagService:
    return request.app.state.service


def create_app(service: RagService | None = None, config: AppConfig | None = None) -> FastAPI:
    """Build the API around ``service``, or one created from ``config`` at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        owned = service is None
        rag = service or RagService.from_config(config, base_dir=Path.cwd())
        app.state.service = rag
        rag.start()
        try:
            yield
        finally:
            await rag.stop()
            if owned:
                rag.close()

    app = FastAPI(title="DocRAG API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DocRagError)
    async def handle_docrag_error(request: Request, exc: DocRagError) -> JSONResponse:
        status_code = _status_code_for(exc)
        if status_code >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.get("/health")
    async def health(rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        return rag.health()

    @app.post("/documents", status_code=202)
    async def ingest_document(
        payload: IngestPayload, rag: RagService = Depends(get_service)
    ) -> Dict[str, Any]:
        path = _validate_pdf_path(payload.path)
        document_id = payload.document_id or f"doc_{uuid.uuid4().hex[:16]}"
        file_meta = await asyncio.to_thread(describe_file, path)
        job_id = rag.enqueue_ingestion(document_id, path, file_meta)
        return {"status": "queued", "document_id": document_id, "job_id": job_id}

    @app.get("/documents/{document_id}/status")
    async def document_status(document_id: str, rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        status = rag.get_document_status(document_id)
        return {
            **status.to_dict(),
            "ready_for_chat": rag.tracker.is_ready_for_chat(document_id),
            "is_processing": rag.tracker.is_processing(document_id),
        }

    @app.get("/documents/{document_id}/stats")
    async def document_stats(document_id: str, rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        stats = rag.document_stats(document_id)
        return {
            "document_id": stats.document_id,
            "chunk_count": stats.chunk_count,
            "sample_metadata": stats.sample_metadata,
        }

    @app.delete("/documents/{document_id}")
    async def delete_document(document_id: str, rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        vectors_removed = rag.delete_document(document_id)
        return {"status": "ok", "document_id": document_id, "vectors_removed": vectors_removed}

    @app.get("/jobs")
    async def list_jobs(rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        return {
            "jobs": [job.to_dict() for job in rag.list_jobs()],
            "stats": rag.queue.get_stats(),
        }

    @app.get("/jobs/{job_id}")
    async def job_status(job_id: str, rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        return rag.get_job_status(job_id).to_dict()

    @app.post("/query")
    async def query_documents(payload: QueryPayload, rag: RagService = Depends(get_service)) -> Dict[str, Any]:
        query = payload.query.strip()
        if not query:
            raise HTTPException(status_code=400, detail="Empty query")
        matches = await rag.query(query, document_id=payload.document_id, limit=payload.limit)
        return {
            "query": query,
            "document_id": payload.document_id,
            "degraded": any(match.degraded for match in matches),
            "results": [match.to_dict() for match in matches],
        }

    return app
