"""Utility helpers for working with uploaded files."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator


def iter_pdf_paths(inputs: Iterable[Path]) -> Iterator[Path]:
    """Yield PDF paths from input paths, descending into directories."""
    seen: set[Path] = set()
    for item in inputs:
        if item.is_dir():
            candidates: Iterable[Path] = sorted(item.rglob("*.pdf"))
        elif item.is_file() and item.suffix.lower() == ".pdf":
            candidates = [item]
        else:
            continue
        for candidate in candidates:
            resolved = candidate.resolve()
            if resolved not in seen:
                seen.add(resolved)
                yield candidate


def compute_sha256(path: Path) -> str:
    """Compute SHA256 hash for a file."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()


def describe_file(path: Path) -> Dict[str, Any]:
    """File metadata attached to an ingestion request."""
    stat = path.stat()
    return {
        "filename": path.name,
        "file_size": stat.st_size,
        "sha256": compute_sha256(path),
        "uploaded_at": datetime.now(timezone.utc).isoformat(),
    }
