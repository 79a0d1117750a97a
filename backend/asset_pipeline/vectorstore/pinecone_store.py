"""
Pinecone Vector Index

One shared serverless index (cosine, dimension = embedding dimension) holds
both asset-level and chunk-level records; records are told apart by their
`type` metadata field ("document_chunk" for chunks).

Provisioning:
  connect() creates the index when it does not exist and waits until
  describe_index_stats() answers, up to PINECONE_READY_TIMEOUT_SECONDS.

Limits honoured here:
  upsert   ≤ 100 vectors per request
  query    top_k ≤ 1000 when metadata is included
  delete   ≤ 1000 ids per request
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from pinecone import Pinecone, ServerlessSpec
from pinecone.exceptions import PineconeException

from asset_pipeline.core.config import Settings, settings as default_settings
from asset_pipeline.core.exceptions import VectorStoreUnavailable
from asset_pipeline.vectorstore.base import (
    IndexStats,
    QueryResult,
    VectorIndexBase,
    VectorRecord,
)

logger = logging.getLogger(__name__)

MAX_TOP_K         = 1000
DELETE_BATCH_SIZE = 1000
READY_POLL_SECONDS = 10.0


class PineconeVectorIndex(VectorIndexBase):
    """
    Thin async facade over a Pinecone index handle.
    The Pinecone client is synchronous; calls are short and issued inline.
    """

    def __init__(self, index: Any, dimension: int, name: str = "") -> None:
        self._index    = index
        self.dimension = dimension
        self.name      = name

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    @classmethod
    def connect(cls, settings: Optional[Settings] = None) -> "PineconeVectorIndex":
        """
        Open (and if needed create) the configured index.
        Raises VectorStoreUnavailable when Pinecone cannot be reached.
        """
        cfg = settings or default_settings
        if not cfg.pinecone_api_key:
            raise VectorStoreUnavailable("PINECONE_API_KEY is not configured")

        try:
            pc = Pinecone(api_key=cfg.pinecone_api_key)
            cls.ensure_index(pc, cfg)
            index = pc.Index(cfg.pinecone_index_name)
        except PineconeException as exc:
            raise VectorStoreUnavailable(f"Pinecone unavailable: {exc}") from exc

        logger.info(
            "Pinecone connected | index=%s dimension=%d",
            cfg.pinecone_index_name, cfg.embedding_dimensions,
        )
        return cls(index, dimension=cfg.embedding_dimensions, name=cfg.pinecone_index_name)

    @staticmethod
    def ensure_index(pc: Pinecone, cfg: Settings) -> None:
        """Create the shared index if it doesn't exist, then wait for it."""
        existing = pc.list_indexes().names()
        if cfg.pinecone_index_name in existing:
            logger.info("Pinecone index '%s' already exists", cfg.pinecone_index_name)
            return

        logger.info("Creating Pinecone index '%s'", cfg.pinecone_index_name)
        pc.create_index(
            name=cfg.pinecone_index_name,
            dimension=cfg.embedding_dimensions,
            metric="cosine",
            spec=ServerlessSpec(cloud=cfg.pinecone_cloud, region=cfg.pinecone_region),
        )

        deadline = time.monotonic() + cfg.pinecone_ready_timeout_seconds
        while time.monotonic() < deadline:
            try:
                pc.Index(cfg.pinecone_index_name).describe_index_stats()
                logger.info("Pinecone index '%s' is ready", cfg.pinecone_index_name)
                return
            except PineconeException as exc:
                logger.debug("Pinecone index not ready yet | error=%s", exc)
            time.sleep(READY_POLL_SECONDS)

        raise VectorStoreUnavailable(
            f"Pinecone index '{cfg.pinecone_index_name}' did not become ready in time"
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord], batch_size: int = 100) -> int:
        total = 0
        for i in range(0, len(records), batch_size):
            batch = records[i : i + batch_size]
            self._index.upsert(vectors=[
                {"id": rec.id, "values": rec.vector, "metadata": rec.metadata}
                for rec in batch
            ])
            total += len(batch)
            logger.debug("Pinecone upsert | batch=%d total=%d", len(batch), total)
        return total

    async def query(
        self,
        vector: list[float],
        top_k: int = 10,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        top_k = max(1, min(top_k, MAX_TOP_K))
        kwargs: dict[str, Any] = {
            "vector": vector,
            "top_k": top_k,
            "include_metadata": True,
            "include_values": False,
        }
        if filter:
            kwargs["filter"] = filter

        resp = self._index.query(**kwargs)
        results = [
            QueryResult(id=m.id, score=float(m.score or 0.0), metadata=dict(m.metadata or {}))
            for m in (resp.matches or [])
        ]
        logger.debug("Pinecone query | top_k=%d results=%d", top_k, len(results))
        return results

    async def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        for i in range(0, len(ids), DELETE_BATCH_SIZE):
            self._index.delete(ids=ids[i : i + DELETE_BATCH_SIZE])
        logger.info("Pinecone delete | count=%d", len(ids))

    async def fetch(self, ids: list[str]) -> dict[str, VectorRecord]:
        if not ids:
            return {}
        resp = self._index.fetch(ids=ids)
        return {
            vec_id: VectorRecord(
                id=vec_id,
                vector=list(vec.values or []),
                metadata=dict(vec.metadata or {}),
            )
            for vec_id, vec in (resp.vectors or {}).items()
        }

    async def describe(self) -> IndexStats:
        stats = self._index.describe_index_stats()
        return IndexStats(
            total_vectors=int(stats.total_vector_count or 0),
            dimension=int(stats.dimension or self.dimension),
            index_fullness=float(stats.index_fullness or 0.0),
        )
