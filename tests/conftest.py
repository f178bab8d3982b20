"""Shared fixtures and fakes for the DocRAG test suite."""

from __future__ import annotations

import time
import zlib
from pathlib import Path
from typing import Callable, Dict, Sequence

import numpy as np
import pytest

from docrag.config import AppConfig
from docrag.embedding.gateway import EmbeddingGateway, HashingEmbeddingProvider
from docrag.errors import ExtractionFailed
from docrag.index.storage import InMemoryVectorStore
from docrag.models import ExtractedDocument
from docrag.service import RagService

WORDS = (
    "alpha bravo charlie delta echo foxtrot golf hotel india juliet kilo lima mike "
    "november oscar papa quebec romeo sierra tango uniform victor whiskey xray yankee zulu"
).split()


def synthetic_text(length: int = 6000) -> str:
    """Non-repeating prose of short sentences, without digits or financial vocabulary."""
    sentences = []
    total = 0
    index = 0
    while total < length:
        words = [WORDS[(index * 7 + j * 3 + index // 26) % len(WORDS)] for j in range(5 + index % 3)]
        sentence = " ".join(words).capitalize() + ". "
        sentences.append(sentence)
        total += len(sentence)
        index += 1
    return "".join(sentences)[:length]


class StaticProvider:
    """Provider returning a fixed-size vector derived from each text's hash."""

    degraded = False

    def __init__(self, name: str = "static", dimension: int = 16) -> None:
        self.name = name
        self.dimension = dimension
        self.calls: list[list[str]] = []

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        self.calls.append(list(texts))
        rows = []
        for text in texts:
            rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
            rows.append(rng.normal(size=self.dimension))
        return np.asarray(rows, dtype="float32")


class SlowProvider(StaticProvider):
    """Sleeps before answering, long enough to trip short call timeouts."""

    def __init__(self, name: str = "slow", delay: float = 0.5) -> None:
        super().__init__(name)
        self.delay = delay

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        time.sleep(self.delay)
        return super().embed(texts)


class FailingProvider:
    degraded = False

    def __init__(self, name: str = "failing", error: Exception | None = None) -> None:
        self.name = name
        self.error = error or RuntimeError("provider unavailable")

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        raise self.error


def fake_extractor(documents: Dict[str, ExtractedDocument]) -> Callable[[Path], ExtractedDocument]:
    """Extractor serving canned documents by file name."""

    def extract(path: Path) -> ExtractedDocument:
        try:
            return documents[Path(path).name]
        except KeyError:
            raise ExtractionFailed(f"Cannot read {Path(path).name}") from None

    return extract


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(base_timeout=5.0, max_timeout=10.0, cleanup_interval_seconds=3600)


@pytest.fixture
def hashing_gateway() -> EmbeddingGateway:
    return EmbeddingGateway([HashingEmbeddingProvider(dimension=64)])


@pytest.fixture
def make_service(config: AppConfig, hashing_gateway: EmbeddingGateway):
    def factory(documents: Dict[str, ExtractedDocument] | None = None, **overrides) -> RagService:
        return RagService(
            config=overrides.pop("config", config),
            gateway=overrides.pop("gateway", hashing_gateway),
            store=overrides.pop("store", InMemoryVectorStore()),
            extractor=overrides.pop("extractor", fake_extractor(documents or {})),
        )

    return factory
