"""Tests for text cleanup and chunking helpers."""

from __future__ import annotations

import pytest

from conftest import synthetic_text
from docrag.errors import InvalidConfiguration
from docrag.models import ContentFlag
from docrag.utils.text import (
    chunk_text,
    clean_extracted_text,
    detect_content_flags,
    detect_financial_document,
    estimate_page,
)

STATEMENT_LINE = "01/15/2024 Payment to vendor $123.45\n"


def statement_text(lines: int = 140) -> str:
    header = "Account statement\nOpening balance $1,000.00\n\n"
    return header + STATEMENT_LINE * lines


class TestCleanExtractedText:
    """Tests for clean_extracted_text."""

    def test_normalises_line_endings_and_blank_lines(self) -> None:
        assert clean_extracted_text("a  \r\nb\n\n\n\nc") == "a\nb\n\nc"

    def test_joins_currency_symbol_to_amount(self) -> None:
        assert clean_extracted_text("Total: $ 12.00") == "Total: $12.00"

    def test_caps_long_space_runs(self) -> None:
        assert clean_extracted_text("col1" + " " * 30 + "col2") == "col1" + " " * 8 + "col2"

    def test_empty(self) -> None:
        assert clean_extracted_text("") == ""


class TestFinancialDetection:
    """Tests for the financial document heuristics."""

    def test_detects_statement(self) -> None:
        assert detect_financial_document(statement_text(10)) is True

    def test_plain_prose_is_not_financial(self) -> None:
        assert detect_financial_document(synthetic_text(3000)) is False

    def test_single_signal_is_not_enough(self) -> None:
        assert detect_financial_document("The invoice arrived. " * 5) is False

    def test_content_flags(self) -> None:
        flags = detect_content_flags(STATEMENT_LINE + "Account number: 12345678")
        assert flags == {
            ContentFlag.CONTAINS_AMOUNTS,
            ContentFlag.CONTAINS_DATES,
            ContentFlag.CONTAINS_TRANSACTIONS,
            ContentFlag.CONTAINS_ACCOUNT_INFO,
        }

    def test_no_flags_for_prose(self) -> None:
        assert detect_content_flags(synthetic_text(500)) == frozenset()


class TestEstimatePage:
    """Tests for page attribution."""

    def test_single_page_span(self) -> None:
        assert estimate_page(0, 100, 1000, 3) == 1

    def test_straddling_span_uses_larger_share(self) -> None:
        # 200 chars on page 2, 600 on page 3
        assert estimate_page(1800, 2600, 1000, 3) == 3
        # 600 chars on page 1, 200 on page 2
        assert estimate_page(400, 1200, 1000, 3) == 1

    def test_clamped_to_total_pages(self) -> None:
        assert estimate_page(5000, 5100, 1000, 3) == 3


class TestChunkText:
    """Tests for chunk_text."""

    def test_rejects_overlap_not_smaller_than_size(self) -> None:
        with pytest.raises(InvalidConfiguration):
            chunk_text("some text", max_chars=100, overlap=100)
        with pytest.raises(InvalidConfiguration):
            chunk_text("some text", max_chars=100, overlap=150)

    def test_rejects_negative_overlap_and_size(self) -> None:
        with pytest.raises(InvalidConfiguration):
            chunk_text("some text", max_chars=100, overlap=-1)
        with pytest.raises(InvalidConfiguration):
            chunk_text("some text", max_chars=0, overlap=0)

    def test_empty_text(self) -> None:
        assert chunk_text("") == []
        assert chunk_text("   \n\n  ") == []

    def test_short_text_single_chunk(self) -> None:
        chunks = chunk_text("  Hello world.  ", max_chars=1500, overlap=300)
        assert len(chunks) == 1
        assert chunks[0].text == "Hello world."
        assert chunks[0].chunk_index == 0
        assert chunks[0].estimated_page == 1

    def test_non_positive_total_pages_treated_as_one(self) -> None:
        chunks = chunk_text(synthetic_text(4000), total_pages=0)
        assert {chunk.estimated_page for chunk in chunks} == {1}

    def test_deterministic(self) -> None:
        text = synthetic_text(9000)
        assert chunk_text(text, total_pages=4) == chunk_text(text, total_pages=4)

    def test_coverage(self) -> None:
        text = synthetic_text(7777)
        chunks = chunk_text(text, max_chars=1000, overlap=200, total_pages=3)
        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text)
        for previous, current in zip(chunks, chunks[1:]):
            assert current.start_offset <= previous.end_offset
            assert current.start_offset > previous.start_offset

    def test_offsets_and_text_agree(self) -> None:
        text = synthetic_text(5000)
        for chunk in chunk_text(text, max_chars=1000, overlap=100):
            assert chunk.start_offset < chunk.end_offset
            assert chunk.text == text[chunk.start_offset : chunk.end_offset].strip()

    def test_page_bounds(self) -> None:
        for chunk in chunk_text(synthetic_text(12000), max_chars=800, overlap=100, total_pages=5):
            assert 1 <= chunk.estimated_page <= 5

    def test_chunk_indices_sequential(self) -> None:
        chunks = chunk_text(synthetic_text(8000))
        assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))

    def test_prefers_paragraph_break(self) -> None:
        text = ("alpha " * 170).strip() + "\n\n" + "beta " * 400
        chunks = chunk_text(text, max_chars=1500, overlap=300)
        assert chunks[0].end_offset == text.index("\n\n") + 2
        assert chunks[0].text == ("alpha " * 170).strip()

    def test_prefers_sentence_end_over_mid_word(self) -> None:
        chunks = chunk_text(synthetic_text(6000), max_chars=1500, overlap=300)
        for chunk in chunks[:-1]:
            assert chunk.text.endswith(".")

    def test_falls_back_to_nominal_end(self) -> None:
        text = "x" * 2500
        chunks = chunk_text(text, max_chars=1000, overlap=100)
        assert chunks[0].end_offset == 1000
        assert chunks[1].start_offset == 900

    def test_financial_document_uses_wider_chunks(self) -> None:
        text = statement_text()
        chunks = chunk_text(text, max_chars=1000, overlap=100)
        spans = [chunk.end_offset - chunk.start_offset for chunk in chunks]
        assert max(spans) > 1000
        assert all(span <= 2000 for span in spans)
        assert ContentFlag.CONTAINS_TRANSACTIONS in chunks[0].content_flags

    def test_six_thousand_chars_three_pages(self) -> None:
        chunks = chunk_text(synthetic_text(6000), max_chars=1500, overlap=300, total_pages=3)
        assert 4 <= len(chunks) <= 5
        pages = [chunk.estimated_page for chunk in chunks]
        assert all(1 <= page <= 3 for page in pages)
        assert pages == sorted(pages)
