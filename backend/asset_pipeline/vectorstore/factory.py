"""
Vector Index Factory

Selects the backing index from config. An empty PINECONE_API_KEY means
semantic search is switched off: the factory returns None and
VectorStoreService runs in its disabled (no-op / empty-result) mode.
"""

from __future__ import annotations

import logging
from typing import Optional

from asset_pipeline.core.config import Settings, settings as default_settings
from asset_pipeline.vectorstore.base import VectorIndexBase

logger = logging.getLogger(__name__)


def get_vector_index(settings: Optional[Settings] = None) -> Optional[VectorIndexBase]:
    cfg = settings or default_settings

    if not cfg.vector_store_enabled:
        logger.warning("PINECONE_API_KEY not set; vector store disabled")
        return None

    from asset_pipeline.vectorstore.pinecone_store import PineconeVectorIndex
    return PineconeVectorIndex.connect(cfg)
