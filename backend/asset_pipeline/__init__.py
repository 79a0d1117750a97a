"""Asset ingestion and vectorization pipeline."""

__version__ = "1.0.0"
