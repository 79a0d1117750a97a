"""
Pipeline context — the collaborators a JobProcessor works with.

Everything is constructed explicitly and passed in, so tests can swap any
piece (repository, vector store, extractors) for an in-memory fake.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from asset_pipeline.core.config import Settings, settings as default_settings
from asset_pipeline.processing.chunking import DocumentChunker
from asset_pipeline.processing.csv_chunking import CSVChunker
from asset_pipeline.processing.csv_extractor import CSVExtractor
from asset_pipeline.processing.embeddings import Embedder
from asset_pipeline.processing.image_analysis import ImageAnalyzer
from asset_pipeline.processing.pdf_extractor import PDFExtractor
from asset_pipeline.repositories.assets import AssetRepository, SqlAlchemyAssetRepository
from asset_pipeline.vectorstore.service import VectorStoreService


@dataclass
class PipelineContext:
    repository:       AssetRepository
    vector_store:     VectorStoreService
    csv_extractor:    CSVExtractor     = field(default_factory=CSVExtractor)
    pdf_extractor:    PDFExtractor     = field(default_factory=PDFExtractor)
    csv_chunker:      CSVChunker       = field(default_factory=CSVChunker)
    document_chunker: DocumentChunker  = field(default_factory=DocumentChunker)
    image_analyzer:   Optional[ImageAnalyzer] = None
    settings:         Settings         = field(default_factory=lambda: default_settings)


def build_context(settings: Optional[Settings] = None) -> PipelineContext:
    """Production wiring: Postgres assets, OpenAI embeddings, Pinecone index."""
    cfg = settings or default_settings
    embedder = Embedder(
        model=cfg.embedding_model,
        dimensions=cfg.embedding_dimensions,
        batch_size=cfg.embedding_batch_size,
        max_retries=cfg.embedding_max_retries,
        retry_base_delay=cfg.embedding_retry_base_delay,
        api_key=cfg.openai_api_key,
    )
    analyzer = ImageAnalyzer(
        embedder=embedder,
        model=cfg.vision_model,
        api_key=cfg.openai_api_key,
    )

    return PipelineContext(
        repository=SqlAlchemyAssetRepository(),
        vector_store=VectorStoreService(embedder=embedder, settings=cfg),
        csv_extractor=CSVExtractor(max_file_size=cfg.max_upload_size_bytes),
        pdf_extractor=PDFExtractor(max_file_size=cfg.max_upload_size_bytes),
        csv_chunker=CSVChunker(),
        document_chunker=DocumentChunker(
            chunk_size=cfg.chunk_size,
            overlap=cfg.chunk_overlap,
            max_chunks=cfg.max_chunks_per_document,
            strategy=cfg.chunk_strategy,
        ),
        image_analyzer=analyzer if cfg.image_analysis_enabled else None,
        settings=cfg,
    )
