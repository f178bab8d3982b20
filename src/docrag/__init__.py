"""DocRAG: PDF ingestion and retrieval pipeline for retrieval-augmented generation."""

__version__ = "0.1.0"
