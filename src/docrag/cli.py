"""Command line interface for DocRAG."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from docrag.config import AppConfig
from docrag.errors import DocRagError, ExtractionFailed, InvalidConfiguration
from docrag.index.indexer import find_pdfs
from docrag.ingestion.pdf_loader import extract_document
from docrag.models import Job, JobStatus
from docrag.service import RagService
from docrag.utils.files import describe_file
from docrag.utils.text import chunk_text, detect_financial_document
from docrag.web.app import create_app


console = Console()
app = typer.Typer(help="DocRAG - PDF ingestion and retrieval for RAG")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _build_config(**overrides) -> AppConfig:
    """Environment config with the non-empty command line options applied."""
    try:
        config = AppConfig.from_env()
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(config, **values) if values else config
    except InvalidConfiguration as exc:
        raise typer.BadParameter(str(exc)) from exc


def _snippet(text: str, width: int = 120) -> str:
    return text.replace("\n", " ")[:width]


@app.command()
def chunk(
    pdf: Path = typer.Argument(..., help="PDF file to preview.", exists=True, dir_okay=False),
    chunk_chars: Optional[int] = typer.Option(None, help="Chunk size in characters"),
    overlap: Optional[int] = typer.Option(None, help="Chunk overlap"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Show how a PDF would be chunked, without embedding anything."""
    _setup_logging(verbose)
    config = _build_config(chunk_chars=chunk_chars, overlap=overlap)

    try:
        document = extract_document(pdf)
    except ExtractionFailed as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    chunks = chunk_text(
        document.text,
        max_chars=config.chunk_chars,
        overlap=config.overlap,
        total_pages=document.num_pages,
        financial_chars=config.financial_chunk_chars,
        financial_overlap=config.financial_overlap,
    )
    kind = "financial" if detect_financial_document(document.text) else "regular"
    console.print(
        f"[bold]{pdf.name}[/bold]: {document.num_pages} pages, "
        f"{len(document.text)} characters, {len(chunks)} chunks ({kind} document)"
    )

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#")
    table.add_column("Page")
    table.add_column("Span")
    table.add_column("Flags")
    table.add_column("Snippet")
    for item in chunks:
        flags = ", ".join(sorted(flag.value for flag in item.content_flags))
        table.add_row(
            str(item.chunk_index),
            str(item.estimated_page),
            f"{item.start_offset}-{item.end_offset}",
            flags,
            _snippet(item.text),
        )
    console.print(table)


async def _run_ingestion(
    service: RagService, pdf_paths: List[Path], queries: List[str], limit: int
) -> List[Job]:
    service.start()
    try:
        job_ids = []
        for path in pdf_paths:
            meta = describe_file(path)
            document_id = f"doc_{meta['sha256'][:16]}"
            job_ids.append(service.enqueue_ingestion(document_id, path, meta))
        jobs = [await service.wait_for_job(job_id) for job_id in job_ids]

        for query in queries:
            matches = await service.query(query, limit=limit)
            _print_matches(query, matches)
        return jobs
    finally:
        await service.stop()


def _print_matches(query: str, matches) -> None:
    console.print(f"\n[bold]Query:[/bold] {query}")
    if not matches:
        console.print("[yellow]No matches found.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Page")
    table.add_column("Snippet")
    for match in matches:
        score = f"{match.similarity:.4f}" + (" *" if match.degraded else "")
        table.add_row(
            score,
            str(match.metadata.get("filename", match.document_id)),
            str(match.chunk.estimated_page),
            _snippet(match.chunk.text, 180),
        )
    console.print(table)
    if any(match.degraded for match in matches):
        console.print("[yellow]* ranked with fallback embeddings; lexical similarity only[/yellow]")


@app.command()
def ingest(
    inputs: List[Path] = typer.Argument(..., help="PDF files or directories.", resolve_path=True),
    backend: Optional[str] = typer.Option(None, help="Vector store backend: memory or sqlite"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path"),
    model: Optional[str] = typer.Option(None, help="Sentence-transformer model name"),
    chunk_chars: Optional[int] = typer.Option(None, help="Chunk size in characters"),
    overlap: Optional[int] = typer.Option(None, help="Chunk overlap"),
    max_concurrent: Optional[int] = typer.Option(None, help="Documents processed at once"),
    query: List[str] = typer.Option([], "--query", "-q", help="Query to run after ingestion"),
    limit: int = typer.Option(5, help="Number of matches per query"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Ingest PDFs through the job queue and optionally query them."""
    _setup_logging(verbose)
    config = _build_config(
        vector_backend=backend,
        db_path=db,
        model_name=model,
        chunk_chars=chunk_chars,
        overlap=overlap,
        max_concurrent=max_concurrent,
    )

    pdf_paths = find_pdfs(inputs)
    if not pdf_paths:
        console.print("[yellow]No PDFs found.[/yellow]")
        return

    service = RagService.from_config(config, base_dir=Path.cwd())
    try:
        console.print(f"Ingesting {len(pdf_paths)} PDF(s) into the {config.vector_backend} store...")
        jobs = asyncio.run(_run_ingestion(service, pdf_paths, query, limit))
    except DocRagError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        service.close()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Chunks")
    table.add_column("Pages")
    table.add_column("Details")
    for job in jobs:
        result = job.result or {}
        details = job.error or f"{result.get('embedding_provider')} in {result.get('processing_time_ms')} ms"
        table.add_row(
            job.file_path.name,
            job.status.value,
            str(result.get("chunks_created", "-")),
            str(result.get("num_pages", "-")),
            details,
        )
    console.print(table)

    failed = sum(1 for job in jobs if job.status is JobStatus.FAILED)
    console.print(f"Completed: {len(jobs) - failed}, failed: {failed}")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend: memory or sqlite"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Start the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    _setup_logging(verbose)
    config = _build_config(vector_backend=backend, db_path=db)
    console.print(f"Starting DocRAG API on http://{host}:{port} ({config.vector_backend} store)")
    uvicorn.run(
        create_app(config=config),
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
