"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping

from docrag.embedding.encoder import DEFAULT_MODEL
from docrag.errors import InvalidConfiguration

ENV_PREFIX = "DOCRAG_"
MEMORY_DB = ":memory:"

_BYTES_PER_MB = 1024 * 1024


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class AppConfig:
    vector_backend: Literal["memory", "sqlite"] = "memory"
    db_path: Path | None = None
    model_name: str = DEFAULT_MODEL
    chunk_chars: int = 1500
    overlap: int = 300
    financial_chunk_chars: int = 2000
    financial_overlap: int = 400
    embedding_batch_size: int = 32
    max_concurrent: int = 2
    job_retention_seconds: float = 60 * 60
    status_ttl_seconds: float = 24 * 60 * 60
    cleanup_interval_seconds: float = 30 * 60
    base_timeout: float = 30.0
    timeout_per_mb: float = 10.0
    max_timeout: float = 180.0
    openai_api_key: str | None = None
    openai_model: str = "text-embedding-3-small"
    enable_hashing_fallback: bool = True
    hashing_dimension: int = 384
    default_query_limit: int = 5

    def __post_init__(self) -> None:
        if self.vector_backend not in ("memory", "sqlite"):
            raise InvalidConfiguration(f"Unknown vector backend: {self.vector_backend}")
        if self.chunk_chars <= 0 or self.financial_chunk_chars <= 0:
            raise InvalidConfiguration("Chunk sizes must be positive")
        if not 0 <= self.overlap < self.chunk_chars:
            raise InvalidConfiguration(
                f"overlap ({self.overlap}) must be in [0, chunk_chars={self.chunk_chars})"
            )
        if not 0 <= self.financial_overlap < self.financial_chunk_chars:
            raise InvalidConfiguration(
                "financial_overlap must be in [0, financial_chunk_chars)"
            )
        if self.max_concurrent < 1:
            raise InvalidConfiguration("max_concurrent must be at least 1")
        if self.embedding_batch_size < 1:
            raise InvalidConfiguration("embedding_batch_size must be at least 1")
        if self.base_timeout <= 0 or self.max_timeout < self.base_timeout:
            raise InvalidConfiguration("Timeouts must satisfy 0 < base_timeout <= max_timeout")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a config from ``DOCRAG_*`` variables (and ``OPENAI_API_KEY``)."""
        env = os.environ if environ is None else environ
        values: dict = {}

        def read(name: str, convert) -> None:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip():
                try:
                    values[name] = convert(raw.strip())
                except ValueError as exc:
                    raise InvalidConfiguration(
                        f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}"
                    ) from exc

        read("vector_backend", str)
        read("db_path", Path)
        read("model_name", str)
        read("chunk_chars", int)
        read("overlap", int)
        read("financial_chunk_chars", int)
        read("financial_overlap", int)
        read("embedding_batch_size", int)
        read("max_concurrent", int)
        read("job_retention_seconds", float)
        read("status_ttl_seconds", float)
        read("cleanup_interval_seconds", float)
        read("base_timeout", float)
        read("timeout_per_mb", float)
        read("max_timeout", float)
        read("openai_model", str)
        read("enable_hashing_fallback", _env_bool)
        read("hashing_dimension", int)
        read("default_query_limit", int)

        api_key = env.get(ENV_PREFIX + "OPENAI_API_KEY") or env.get("OPENAI_API_KEY")
        if api_key:
            values["openai_api_key"] = api_key
        return cls(**values)

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            return Path(MEMORY_DB)
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def scaled_timeout(self, file_size: int | None) -> float:
        """Timeout in seconds for extraction/embedding calls, scaled by file size."""
        megabytes = max(file_size or 0, 0) / _BYTES_PER_MB
        return min(self.base_timeout + megabytes * self.timeout_per_mb, self.max_timeout)
