"""Local sentence-transformers model used as the primary offline embedder."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Literal

import numpy as np
from sentence_transformers import SentenceTransformer

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] | None = None
    device: str | None = None


class EmbeddingModel:
    """Loads the model on first use and encodes chunk texts to float32 rows.

    Ingestion jobs embed from worker threads, so the first load is guarded
    by a lock and happens once.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._transformer: SentenceTransformer | None = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._transformer is not None

    @property
    def transformer(self) -> SentenceTransformer:
        if self._transformer is None:
            with self._load_lock:
                if self._transformer is None:
                    self._transformer = self._load()
        return self._transformer

    @property
    def dimension(self) -> int:
        return int(self.transformer.get_sentence_embedding_dimension())

    def _load(self) -> SentenceTransformer:
        options: dict = {"device": self.config.device}
        if self.config.backend is not None:
            options["backend"] = self.config.backend
        transformer = SentenceTransformer(self.config.model_name, **options)
        LOGGER.info(
            "Loaded embedding model %s (dimension %s, backend %s)",
            self.config.model_name,
            transformer.get_sentence_embedding_dimension(),
            self.config.backend or "torch",
        )
        return transformer

    def embed(self, texts: Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")
        vectors = self.transformer.encode(
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return np.asarray(vectors, dtype="float32")
