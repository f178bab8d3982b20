"""Text helpers: extracted-text cleanup and page-aware chunking.

The chunker walks the text left to right producing overlapping windows.
Each window's end is pulled back to the most natural break point available
(transaction boundary for financial documents, then paragraph, line and
sentence breaks) and every chunk is attributed to an estimated page using
the document's average characters per page.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import FrozenSet, List

from docrag.errors import InvalidConfiguration
from docrag.models import Chunk, ContentFlag

LOGGER = logging.getLogger(__name__)

FINANCIAL_SCAN_CHARS = 3000
FINANCIAL_CHUNK_CHARS = 2000
FINANCIAL_OVERLAP = 400
TRANSACTION_WINDOW = 500
TRANSACTION_LOOKAHEAD = 100

FINANCIAL_KEYWORDS = (
    "balance",
    "transaction",
    "account",
    "statement",
    "payment",
    "deposit",
    "withdrawal",
    "debit",
    "credit",
    "interest",
    "invoice",
    "transfer",
    "purchase",
)

_TRANSACTION_KEYWORDS = (
    "deposit",
    "withdrawal",
    "payment",
    "transfer",
    "purchase",
    "debit",
    "credit",
    "fee",
    "interest",
    "refund",
    "atm",
    "pos",
    "check",
    "cheque",
)

_KEYWORD_RE = re.compile(r"\b(?:%s)s?\b" % "|".join(FINANCIAL_KEYWORDS), re.IGNORECASE)
_AMOUNT_RE = re.compile(
    r"[$€£¥]\s?\d[\d,]*(?:\.\d{2})?"
    r"|\b\d{1,3}(?:,\d{3})*\.\d{2}\b(?:\s*(?:CR|DR)\b)?",
    re.IGNORECASE,
)
_DATE_RE = re.compile(
    r"\b(?:\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2}|\d{1,2}-\d{1,2}-\d{4})\b"
    r"|\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*\.?\s\d{1,2},?\s\d{4}\b"
)
_TRANSACTION_LINE_RE = re.compile(
    r"^[ \t]*(?:\d{1,2}/\d{1,2}(?:/\d{2,4})?\b|\d{4}-\d{2}-\d{2}\b|(?:%s)\b)"
    % "|".join(_TRANSACTION_KEYWORDS),
    re.IGNORECASE | re.MULTILINE,
)
_ACCOUNT_RE = re.compile(
    r"\b(?:account|acct|iban|routing|sort\s+code)\b(?:\s*(?:no\.?|number|#))?[\s:#.]*[\dX*]{4,}"
    r"|(?:\*{2,}|\bX{2,})\d{4}\b",
    re.IGNORECASE,
)


def clean_extracted_text(text: str) -> str:
    """Normalise raw extracted text while keeping its layout.

    Line endings are unified, long runs of spaces (table columns) are capped,
    currency symbols are joined to their amounts and runs of blank lines
    collapse to a single paragraph break.
    """
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r" {2,}", lambda match: " " * min(len(match.group(0)), 8), cleaned)
    cleaned = re.sub(r"([$€£¥])\s+(\d)", r"\1\2", cleaned)
    cleaned = re.sub(r"\n\s*\n(?:\s*\n)+", "\n\n", cleaned)
    return cleaned.strip()


def detect_financial_document(text: str) -> bool:
    """Guess whether ``text`` looks like a statement, invoice or ledger.

    Scans the head of the document for three signals: repeated financial
    keywords, monetary amounts and dates. Two signals are enough.
    """
    head = text[:FINANCIAL_SCAN_CHARS]
    keyword_hits = len(_KEYWORD_RE.findall(head))
    signals = (keyword_hits >= 2) + bool(_AMOUNT_RE.search(head)) + bool(_DATE_RE.search(head))
    return signals >= 2


def _has_transaction_line(text: str) -> bool:
    for line in text.splitlines():
        if _TRANSACTION_LINE_RE.match(line) and _AMOUNT_RE.search(line):
            return True
    return False


def detect_content_flags(text: str) -> FrozenSet[ContentFlag]:
    flags = set()
    if _AMOUNT_RE.search(text):
        flags.add(ContentFlag.CONTAINS_AMOUNTS)
    if _DATE_RE.search(text):
        flags.add(ContentFlag.CONTAINS_DATES)
    if _has_transaction_line(text):
        flags.add(ContentFlag.CONTAINS_TRANSACTIONS)
    if _ACCOUNT_RE.search(text):
        flags.add(ContentFlag.CONTAINS_ACCOUNT_INFO)
    return frozenset(flags)


def _transaction_break(text: str, lower: int, nominal_end: int) -> int | None:
    window_start = max(lower, nominal_end - TRANSACTION_WINDOW)
    search_end = min(len(text), nominal_end + TRANSACTION_LOOKAHEAD)
    candidates: list[int] = []
    for match in _DATE_RE.finditer(text, window_start, search_end):
        candidates.append(match.start())
    for match in _AMOUNT_RE.finditer(text, window_start, search_end):
        candidates.append(match.end())
    for match in _TRANSACTION_LINE_RE.finditer(text, window_start, search_end):
        candidates.append(match.start())
    valid = [pos for pos in candidates if lower <= pos <= nominal_end]
    return max(valid) if valid else None


def _sentence_break(text: str, lower: int, nominal_end: int) -> int | None:
    pos = text.rfind(".", lower, nominal_end)
    while pos != -1:
        following = pos + 1
        if following >= len(text) or text[following].isspace():
            return following
        pos = text.rfind(".", lower, pos)
    return None


def _find_break(
    text: str,
    start: int,
    nominal_end: int,
    *,
    max_chars: int,
    overlap: int,
    financial: bool,
) -> int:
    """Return the chunk end for a window starting at ``start``.

    Every candidate lies strictly after ``start + overlap`` so the next window
    always starts further right than this one.
    """
    progress_floor = start + overlap + 1

    def lower(fraction: float) -> int:
        return max(start + int(max_chars * fraction), progress_floor)

    if financial:
        boundary = _transaction_break(text, lower(0.3), nominal_end)
        if boundary is not None:
            return boundary

    paragraph = text.rfind("\n\n", lower(0.3), nominal_end)
    if paragraph != -1:
        return paragraph + 2

    newline = text.rfind("\n", lower(0.5), nominal_end)
    if newline != -1:
        return newline + 1

    sentence = _sentence_break(text, lower(0.5), nominal_end)
    if sentence is not None:
        return sentence

    return nominal_end


def estimate_page(start: int, end: int, chars_per_page: float, total_pages: int) -> int:
    """Page holding the largest share of ``[start, end)``, clamped to the document."""
    first = int(start // chars_per_page) + 1
    last = int((end - 1) // chars_per_page) + 1
    best_page = first
    if last > first:
        best_share = -1.0
        for page in range(first, last + 1):
            share = min(end, page * chars_per_page) - max(start, (page - 1) * chars_per_page)
            if share > best_share:
                best_page, best_share = page, share
    return min(max(best_page, 1), total_pages)


def chunk_text(
    text: str,
    *,
    max_chars: int = 1500,
    overlap: int = 300,
    total_pages: int = 1,
    financial_chars: int = FINANCIAL_CHUNK_CHARS,
    financial_overlap: int = FINANCIAL_OVERLAP,
) -> List[Chunk]:
    """Split text into overlapping, page-attributed chunks.

    Deterministic: identical arguments always produce identical chunks.

    Raises:
        InvalidConfiguration: if ``overlap`` is negative or not smaller than
            ``max_chars`` (the walk could not advance), or ``max_chars`` is
            not positive.
    """
    if max_chars <= 0:
        raise InvalidConfiguration(f"max_chars must be positive, got {max_chars}")
    if overlap < 0 or overlap >= max_chars:
        raise InvalidConfiguration(
            f"overlap ({overlap}) must be in [0, max_chars={max_chars})"
        )
    if financial_overlap < 0 or financial_overlap >= financial_chars:
        raise InvalidConfiguration(
            f"financial_overlap ({financial_overlap}) must be in [0, {financial_chars})"
        )
    if not text or not text.strip():
        return []

    total_pages = max(total_pages, 1)
    financial = detect_financial_document(text)
    if financial:
        max_chars = max(max_chars, financial_chars)
        overlap = max(overlap, financial_overlap)
        LOGGER.debug("Financial document detected, using %d/%d chunking", max_chars, overlap)

    length = len(text)
    chars_per_page = length / total_pages
    chunks: List[Chunk] = []
    start = 0

    while start < length:
        nominal_end = start + max_chars
        if nominal_end >= length:
            end = length
        else:
            end = _find_break(
                text,
                start,
                nominal_end,
                max_chars=max_chars,
                overlap=overlap,
                financial=financial,
            )

        content = text[start:end].strip()
        if content:
            chunks.append(
                Chunk(
                    text=content,
                    start_offset=start,
                    end_offset=end,
                    estimated_page=estimate_page(start, end, chars_per_page, total_pages),
                    chunk_index=len(chunks),
                    content_flags=detect_content_flags(content),
                )
            )

        if end >= length:
            break
        start = end - overlap

    if LOGGER.isEnabledFor(logging.DEBUG):
        distribution = Counter(chunk.estimated_page for chunk in chunks)
        LOGGER.debug(
            "Chunked %d chars into %d chunks over %d pages: %s",
            length,
            len(chunks),
            total_pages,
            dict(sorted(distribution.items())),
        )
    return chunks
