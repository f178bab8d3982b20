"""Embedding gateway with an ordered provider fallback chain.

Providers are tried in order: a hosted OpenAI-compatible API, a local
sentence-transformers model, and finally a deterministic feature-hashing
heuristic. The heuristic is a clearly labelled last resort: every result it
produces carries ``degraded=True`` so downstream ranking is never presented
with the same confidence as real embeddings.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Protocol, Sequence

import numpy as np
import openai

from docrag.config import AppConfig
from docrag.embedding.encoder import EmbeddingConfig, EmbeddingModel
from docrag.errors import EmbeddingGatewayFailed

LOGGER = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingProvider(Protocol):
    name: str
    degraded: bool

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        ...


@dataclass(slots=True)
class EmbeddingResult:
    vectors: np.ndarray
    provider: str
    degraded: bool = False

    def __len__(self) -> int:
        return int(self.vectors.shape[0])


class OpenAIEmbeddingProvider:
    """Hosted embeddings through the OpenAI SDK."""

    name = "openai"
    degraded = False

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "text-embedding-3-small",
        timeout: float = 30.0,
        batch_limit: int = 2048,
    ) -> None:
        if not api_key:
            raise ValueError("OpenAI API key not configured")
        self.model = model
        self.batch_limit = batch_limit
        self._client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_limit):
            batch = list(texts[start : start + self.batch_limit])
            response = self._client.embeddings.create(model=self.model, input=batch)
            ordered = sorted(response.data, key=lambda item: item.index)
            vectors.extend(item.embedding for item in ordered)
        LOGGER.debug("Generated %d embeddings using OpenAI", len(vectors))
        return np.asarray(vectors, dtype="float32")


class SentenceTransformerProvider:
    """Local sentence-transformers model, loaded on first use."""

    name = "sentence-transformers"
    degraded = False

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.model = EmbeddingModel(config)

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        return self.model.embed(texts)


class HashingEmbeddingProvider:
    """Deterministic pseudo-embeddings from hashed word and character features.

    Not a semantic model: similarities computed from these vectors only
    reflect lexical overlap, so results are flagged as degraded.
    """

    name = "hashing-fallback"
    degraded = True

    def __init__(self, dimension: int = 384) -> None:
        if dimension < 8:
            raise ValueError("Hashing dimension must be at least 8")
        self.dimension = dimension

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimension, sign

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype="float64")
        lowered = text.lower()
        for token in _TOKEN_RE.findall(lowered):
            index, sign = self._bucket("w:" + token)
            vector[index] += sign
        compact = " ".join(lowered.split())
        for pos in range(len(compact) - 2):
            index, sign = self._bucket("c:" + compact[pos : pos + 3])
            vector[index] += 0.25 * sign
        if not vector.any():
            # Too short for any word or trigram feature.
            index, sign = self._bucket("s:" + compact)
            vector[index] = sign
        norm = np.linalg.norm(vector)
        vector /= norm
        return vector

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        LOGGER.warning(
            "Using hashing fallback embeddings for %d texts; similarity is lexical only",
            len(texts),
        )
        return np.vstack([self._vector(text) for text in texts]).astype("float32")


def _validate_texts(texts: Sequence[str]) -> list[str]:
    items = list(texts)
    if not items:
        raise ValueError("Cannot embed an empty list of texts")
    for item in items:
        if not isinstance(item, str):
            raise ValueError("All texts must be strings")
        if not item.strip():
            raise ValueError("Cannot embed blank text")
    return items


class EmbeddingGateway:
    """Tries each provider in order and returns the first complete result."""

    def __init__(self, providers: Sequence[EmbeddingProvider]) -> None:
        if not providers:
            raise ValueError("EmbeddingGateway needs at least one provider")
        self.providers = list(providers)

    @property
    def provider_names(self) -> list[str]:
        return [provider.name for provider in self.providers]

    def embed(self, texts: Sequence[str]) -> EmbeddingResult:
        """Embed ``texts``; the result has one row per input, in input order."""
        items = _validate_texts(texts)
        failures: list[tuple[str, str]] = []

        for provider in self.providers:
            try:
                vectors = np.asarray(provider.embed(items), dtype="float32")
                self._check_shape(vectors, len(items))
            except Exception as exc:
                LOGGER.warning("Embedding provider %s failed: %s", provider.name, exc)
                failures.append((provider.name, str(exc) or type(exc).__name__))
                continue

            if failures:
                LOGGER.info(
                    "Embedded %d texts with %s after %d failed provider(s)",
                    len(items),
                    provider.name,
                    len(failures),
                )
            return EmbeddingResult(vectors=vectors, provider=provider.name, degraded=provider.degraded)

        raise EmbeddingGatewayFailed("All embedding providers failed", failures)

    def embed_query(self, text: str) -> EmbeddingResult:
        return self.embed([text])

    @staticmethod
    def _check_shape(vectors: np.ndarray, expected_rows: int) -> None:
        if vectors.ndim != 2 or vectors.shape[0] != expected_rows:
            raise ValueError(
                f"Provider returned shape {vectors.shape}, expected {expected_rows} rows"
            )
        if vectors.shape[1] == 0:
            raise ValueError("Provider returned zero-length vectors")
        if not np.all(np.isfinite(vectors)):
            raise ValueError("Provider returned non-finite values")
        if not np.all(np.any(vectors != 0, axis=1)):
            raise ValueError("Provider returned an all-zero vector")


def build_gateway(config: AppConfig) -> EmbeddingGateway:
    """Assemble the provider chain described by ``config``."""
    providers: list[EmbeddingProvider] = []
    if config.openai_api_key:
        providers.append(
            OpenAIEmbeddingProvider(
                config.openai_api_key,
                model=config.openai_model,
                timeout=config.base_timeout,
            )
        )
    providers.append(
        SentenceTransformerProvider(
            EmbeddingConfig(model_name=config.model_name, batch_size=config.embedding_batch_size)
        )
    )
    if config.enable_hashing_fallback:
        providers.append(HashingEmbeddingProvider(config.hashing_dimension))
    LOGGER.info("Embedding providers: %s", ", ".join(p.name for p in providers))
    return EmbeddingGateway(providers)
