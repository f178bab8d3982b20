"""PDF text extraction.

Uses PyMuPDF (fitz) for fast PDF text extraction. Pages are joined with a
blank line so page boundaries read as paragraph breaks to the chunker.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator

import fitz  # PyMuPDF

from docrag.errors import ExtractionFailed
from docrag.models import ExtractedDocument
from docrag.utils.text import clean_extracted_text

LOGGER = logging.getLogger(__name__)

_METADATA_KEYS = {
    "title": "title",
    "author": "author",
    "creator": "creator",
    "producer": "producer",
    "creationDate": "creation_date",
}


def _open(path: Path) -> "fitz.Document":
    if not path.is_file():
        raise ExtractionFailed(f"File not found: {path}")
    try:
        return fitz.open(path)
    except Exception as exc:
        raise ExtractionFailed(f"Failed to open PDF {path.name}: {exc}") from exc


def iter_text_parts(path: Path) -> Iterator[str]:
    """Yield the text of each page; pages that fail to read are skipped."""
    doc = _open(path)
    try:
        for index in range(len(doc)):
            try:
                yield doc[index].get_text() or ""
            except Exception as exc:
                LOGGER.warning("Failed to read page %s in %s: %s", index, path, exc)
    finally:
        doc.close()


def get_pdf_metadata(path: Path) -> Dict[str, Any]:
    """Extract document metadata and page count from a PDF file."""
    doc = _open(path)
    try:
        raw = doc.metadata or {}
        metadata: Dict[str, Any] = {
            name: raw.get(key) or None for key, name in _METADATA_KEYS.items()
        }
        metadata["title"] = metadata["title"] or path.stem
        metadata["page_count"] = len(doc)
        return metadata
    finally:
        doc.close()


def extract_document(path: Path) -> ExtractedDocument:
    """Read a PDF into cleaned text plus page count and metadata.

    Raises:
        ExtractionFailed: if the file is missing, unreadable or has no text.
    """
    path = Path(path)
    metadata = get_pdf_metadata(path)
    pages = [part.strip() for part in iter_text_parts(path)]
    raw_text = "\n\n".join(page for page in pages if page)
    text = clean_extracted_text(raw_text)
    if not text:
        raise ExtractionFailed(f"No extractable text in {path.name}")

    num_pages = max(int(metadata.pop("page_count")), 1)
    metadata.update(
        {
            "processing_method": "pymupdf",
            "text_length": len(text),
            "original_text_length": len(raw_text),
        }
    )
    LOGGER.info("Extracted %s: %d pages, %d characters", path.name, num_pages, len(text))
    return ExtractedDocument(text=text, num_pages=num_pages, metadata=metadata)
