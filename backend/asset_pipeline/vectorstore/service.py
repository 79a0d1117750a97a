"""
VectorStoreService — asset and chunk vectors, search, summaries
════════════════════════════════════════════════════════════════

Sits between the job processor / search callers and the similarity index:

  writes   add_asset, update_asset, batch_add_assets, add_document_chunks,
           add_document_with_chunks, remove_asset, remove_document_chunks
  reads    search_assets, search_document_chunks, hybrid_search,
           get_similar_assets, get_asset_chunks, get_document_summary,
           get_stats

Availability:
  The index is resolved lazily on first use. If it cannot be reached, the
  service stays disabled for the life of the process: writes become no-ops,
  reads return empty results, get_stats() reports available=False. Callers
  never see VectorStoreUnavailable.

Failure policy:
  Embedding failures during writes propagate (the job processor retries).
  Search never raises; errors are logged and an empty list returned.

Metadata written to the index is flattened (no nulls, nested dicts as JSON,
lists as list[str]) and long text fields are truncated.
"""

from __future__ import annotations

import functools
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from asset_pipeline.core.config import Settings, settings as default_settings
from asset_pipeline.core.exceptions import EmbeddingError, VectorStoreUnavailable
from asset_pipeline.models.assets import Asset, AssetType
from asset_pipeline.observability.tracing import traced
from asset_pipeline.processing.chunking import Chunk
from asset_pipeline.processing.embeddings import Embedder
from asset_pipeline.vectorstore.base import (
    IndexStats,
    SearchResult,
    VectorIndexBase,
    VectorRecord,
)
from asset_pipeline.vectorstore.factory import get_vector_index

logger = logging.getLogger(__name__)

CHUNK_RECORD_TYPE   = "document_chunk"
DEFAULT_FOLDER_ID   = "root"
UPSERT_BATCH_SIZE   = 100
MAX_QUERY_TOP_K     = 1000
MAX_METADATA_TEXT   = 1000
SUMMARY_TOP_KEYWORDS = 10

QUALITY_SCORES = {"high": 1.0, "medium": 0.5, "low": 0.0}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class HybridSearchResult:
    """Asset-level and chunk-level hits, kept as two separate ranked lists."""
    assets: list[SearchResult] = field(default_factory=list)
    chunks: list[SearchResult] = field(default_factory=list)

    @property
    def total_results(self) -> int:
        return len(self.assets) + len(self.chunks)


@dataclass
class DocumentSummary:
    asset_id:         str
    total_chunks:     int
    total_word_count: int
    average_quality:  float          # high=1.0 medium=0.5 low=0.0
    sections:         list[str]
    top_keywords:     list[str]


@dataclass
class StoreStats:
    available:      bool
    total_vectors:  int   = 0
    dimension:      int   = 0
    index_fullness: float = 0.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _degrades_to(default: Callable[[], Any]) -> Callable:
    """Turn VectorStoreUnavailable into `default()` for the wrapped coroutine."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self: "VectorStoreService", *args: Any, **kwargs: Any) -> Any:
            try:
                return await func(self, *args, **kwargs)
            except VectorStoreUnavailable as exc:
                logger.debug("Vector store unavailable | op=%s reason=%s", func.__name__, exc)
                return default()
        return wrapper
    return decorator


def flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Coerce values into what the index accepts: str, number, bool or list[str]."""
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (bool, int, float, str)):
            flat[key] = value
        elif isinstance(value, (list, tuple, set)):
            flat[key] = [str(v) for v in value if v is not None]
        elif isinstance(value, dict):
            flat[key] = json.dumps(value, default=str, sort_keys=True)
        elif isinstance(value, datetime):
            flat[key] = value.isoformat()
        else:
            flat[key] = str(value)
    return flat


def _truncate(text: str, limit: int = MAX_METADATA_TEXT) -> str:
    return text if len(text) <= limit else text[:limit]


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v]


def create_searchable_text(asset: Asset) -> str:
    """Lower-cased bag of words describing an asset for the asset-level vector."""
    meta = asset.asset_metadata or {}
    parts: list[str] = [
        asset.name or "",
        asset.original_filename or "",
        asset.type or "",
        asset.mime_type or "",
        *_as_list(asset.tags),
        meta.get("description") or "",
        meta.get("alt") or "",
        *_as_list(meta.get("keywords")),
    ]
    if asset.type == AssetType.IMAGE.value:
        parts.extend([
            meta.get("aiDescription") or "",
            *_as_list(meta.get("detectedObjects")),
            *_as_list(meta.get("dominantColors")),
            meta.get("extractedText") or "",
            *_as_list(meta.get("visualThemes")),
            meta.get("mood") or "",
            meta.get("style") or "",
            *_as_list(meta.get("categories")),
            meta.get("composition") or "",
            meta.get("lighting") or "",
            meta.get("setting") or "",
        ])
    return " ".join(p for p in parts if p).lower()


def create_chunk_searchable_text(chunk: Chunk, parent: Asset) -> str:
    meta = parent.asset_metadata or {}
    parts: list[str] = [
        chunk.content or "",
        chunk.metadata.get("title") or "",
        chunk.metadata.get("section") or "",
        *_as_list(chunk.metadata.get("keywords")),
        *_as_list(parent.tags),
        parent.name or "",
        parent.original_filename or "",
        meta.get("title") or "",
        meta.get("author") or "",
        meta.get("subject") or "",
        *_as_list(meta.get("keywords")),
    ]
    return " ".join(p for p in parts if p).lower()


def chunk_record_id(asset_id: str, index: int) -> str:
    return f"{asset_id}_chunk_{index}"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class VectorStoreService:
    """
    Usage:
        store = VectorStoreService(embedder=Embedder())
        await store.add_asset(asset)
        hits = await store.search_assets("red sports car", user_id="u1")
    """

    def __init__(
        self,
        index: Optional[VectorIndexBase] = None,
        embedder: Optional[Embedder] = None,
        index_factory: Optional[Callable[[], Optional[VectorIndexBase]]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings      = settings or default_settings
        self._index         = index
        self._embedder      = embedder or Embedder()
        self._index_factory = index_factory or (lambda: get_vector_index(self._settings))
        self._initialized   = index is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Resolve the index once. Returns whether the store is available."""
        if self._initialized:
            return self._index is not None
        self._initialized = True
        try:
            self._index = self._index_factory()
        except Exception as exc:
            logger.error("Vector store initialisation failed; running disabled | error=%s", exc)
            self._index = None

        if self._index is not None:
            logger.info("Vector store initialised | dimension=%d", self._index.dimension)
        return self._index is not None

    @property
    def available(self) -> bool:
        return self._index is not None

    @property
    def embedder(self) -> Embedder:
        return self._embedder

    async def _require_index(self) -> VectorIndexBase:
        await self.initialize()
        if self._index is None:
            raise VectorStoreUnavailable("Vector index is not available")
        return self._index

    def _probe_vector(self, dimension: int) -> list[float]:
        # Metadata-only retrieval: any fixed non-zero vector works with a filter
        return [1.0] + [0.0] * (dimension - 1)

    def _check_dimension(self, vector: list[float], index: VectorIndexBase) -> list[float]:
        if len(vector) != index.dimension:
            raise EmbeddingError(
                f"Vector dimension {len(vector)} does not match index dimension {index.dimension}"
            )
        return vector

    # ------------------------------------------------------------------
    # Asset-level writes
    # ------------------------------------------------------------------

    def _asset_metadata(self, asset: Asset, searchable: str) -> dict[str, Any]:
        created = asset.created_at or datetime.now(timezone.utc)
        return flatten_metadata({
            "assetId":        asset.id,
            "userId":         asset.user_id,
            "name":           asset.name,
            "type":           asset.type,
            "mimeType":       asset.mime_type,
            "tags":           list(asset.tags or []),
            "folderId":       asset.folder_id or DEFAULT_FOLDER_ID,
            "createdAt":      created.isoformat(),
            "searchableText": _truncate(searchable),
        })

    def _hybrid_vector(self, asset: Asset) -> Optional[list[float]]:
        if asset.type != AssetType.IMAGE.value:
            return None
        vector = (asset.asset_metadata or {}).get("hybridVector")
        return list(vector) if vector else None

    @traced("vectorstore.add_asset")
    @_degrades_to(lambda: False)
    async def add_asset(self, asset: Asset) -> bool:
        """Upsert the single asset-level record keyed by asset.id."""
        index = await self._require_index()
        searchable = create_searchable_text(asset)

        vector = self._hybrid_vector(asset)
        if vector is None:
            vector = await self._embedder.embed(searchable)
        self._check_dimension(vector, index)

        await index.upsert([VectorRecord(
            id=asset.id,
            vector=vector,
            metadata=self._asset_metadata(asset, searchable),
        )])
        logger.info(
            "Asset vectorized | asset=%s type=%s hybrid=%s",
            asset.id, asset.type, self._hybrid_vector(asset) is not None,
        )
        return True

    async def update_asset(self, asset: Asset) -> bool:
        await self.remove_asset(asset.id)
        return await self.add_asset(asset)

    @_degrades_to(lambda: 0)
    async def batch_add_assets(self, assets: list[Asset]) -> int:
        """Upsert many asset-level records, embedding the non-image ones together."""
        if not assets:
            return 0
        index = await self._require_index()

        texts = {a.id: create_searchable_text(a) for a in assets}
        needs_embedding = [a for a in assets if self._hybrid_vector(a) is None]
        embedded = await self._embedder.embed_many([texts[a.id] for a in needs_embedding])
        vectors = {a.id: v for a, v in zip(needs_embedding, embedded)}

        records = []
        for asset in assets:
            vector = self._hybrid_vector(asset) or vectors[asset.id]
            records.append(VectorRecord(
                id=asset.id,
                vector=self._check_dimension(vector, index),
                metadata=self._asset_metadata(asset, texts[asset.id]),
            ))

        written = await index.upsert(records, batch_size=UPSERT_BATCH_SIZE)
        logger.info("Batch vectorized | assets=%d", written)
        return written

    @_degrades_to(lambda: None)
    async def remove_asset(self, asset_id: str) -> None:
        index = await self._require_index()
        await index.delete([asset_id])
        logger.info("Asset vector removed | asset=%s", asset_id)

    # ------------------------------------------------------------------
    # Chunk-level writes
    # ------------------------------------------------------------------

    def _chunk_metadata(self, chunk: Chunk, i: int, parent: Asset, searchable: str) -> dict[str, Any]:
        base = dict(chunk.metadata)
        base.update({
            "assetId":        parent.id,
            "userId":         parent.user_id,
            "name":           parent.name,
            "folderId":       parent.folder_id or DEFAULT_FOLDER_ID,
            "type":           CHUNK_RECORD_TYPE,
            "chunkType":      chunk.type,
            "chunkId":        chunk.id,
            "chunkIndex":     i,
            "order":          chunk.order,
            "wordCount":      chunk.word_count,
            "content":        _truncate(chunk.content),
            "searchableText": _truncate(searchable),
        })
        return flatten_metadata(base)

    @traced("vectorstore.add_document_chunks")
    @_degrades_to(lambda: 0)
    async def add_document_chunks(self, chunks: list[Chunk], parent: Asset) -> int:
        """Embed and upsert chunks as "{asset_id}_chunk_{i}" records, 100 per request."""
        if not chunks:
            return 0
        index = await self._require_index()

        texts = [create_chunk_searchable_text(c, parent) for c in chunks]
        vectors = await self._embedder.embed_many(texts)

        records = [
            VectorRecord(
                id=chunk_record_id(parent.id, i),
                vector=self._check_dimension(vector, index),
                metadata=self._chunk_metadata(chunk, i, parent, text),
            )
            for i, (chunk, text, vector) in enumerate(zip(chunks, texts, vectors))
        ]
        written = await index.upsert(records, batch_size=UPSERT_BATCH_SIZE)
        logger.info("Chunks vectorized | asset=%s chunks=%d", parent.id, written)
        return written

    async def add_document_with_chunks(self, asset: Asset, chunks: list[Chunk]) -> int:
        await self.add_asset(asset)
        return await self.add_document_chunks(chunks, asset)

    @_degrades_to(lambda: 0)
    async def remove_document_chunks(self, asset_id: str) -> int:
        """
        Delete every chunk record of an asset.

        Chunk ids cannot be listed directly, so they are enumerated with a
        filtered query and deleted page by page until none remain.
        """
        index = await self._require_index()
        flt = {"assetId": {"$eq": asset_id}, "type": {"$eq": CHUNK_RECORD_TYPE}}
        probe = self._probe_vector(index.dimension)

        deleted: set[str] = set()
        while True:
            matches = await index.query(probe, top_k=MAX_QUERY_TOP_K, filter=flt)
            ids = [m.id for m in matches if m.id not in deleted]
            if not ids:
                break
            await index.delete(ids)
            deleted.update(ids)

        if deleted:
            logger.info("Chunk vectors removed | asset=%s count=%d", asset_id, len(deleted))
        return len(deleted)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def _search(
        self,
        vector: list[float],
        flt: dict[str, Any],
        limit: int,
        threshold: float,
    ) -> list[SearchResult]:
        index = await self._require_index()
        matches = await index.query(vector, top_k=min(limit, MAX_QUERY_TOP_K), filter=flt or None)

        results = []
        for m in matches:
            if threshold > 0 and m.score < threshold:
                continue
            is_chunk = m.metadata.get("type") == CHUNK_RECORD_TYPE
            results.append(SearchResult(
                asset_id=str(m.metadata.get("assetId", m.id)),
                score=m.score,
                metadata=m.metadata,
                chunk_id=m.id if is_chunk else None,
            ))
        return results[:limit]

    async def _embed_query(self, query: str) -> Optional[list[float]]:
        try:
            return await self._embedder.embed(query)
        except EmbeddingError as exc:
            logger.error("Query embedding failed | error=%s", exc)
            return None

    def _asset_filter(self, user_id: Optional[str], type: Optional[str], folder_id: Optional[str]) -> dict:
        flt: dict[str, Any] = {}
        if user_id:
            flt["userId"] = {"$eq": user_id}
        if type:
            flt["type"] = {"$eq": type}
        else:
            flt["type"] = {"$ne": CHUNK_RECORD_TYPE}
        if folder_id is not None:
            flt["folderId"] = {"$eq": folder_id or DEFAULT_FOLDER_ID}
        return flt

    def _chunk_filter(self, user_id: Optional[str], asset_id: Optional[str]) -> dict:
        flt: dict[str, Any] = {"type": {"$eq": CHUNK_RECORD_TYPE}}
        if user_id:
            flt["userId"] = {"$eq": user_id}
        if asset_id:
            flt["assetId"] = {"$eq": asset_id}
        return flt

    @traced("vectorstore.search_assets")
    @_degrades_to(list)
    async def search_assets(
        self,
        query: str,
        user_id: Optional[str],
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        type: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> list[SearchResult]:
        """
        Asset-level similarity search.
        user_id=None searches every user's assets; folder_id=None searches every folder.
        """
        await self._require_index()
        limit     = limit or self._settings.search_limit
        threshold = self._settings.search_threshold if threshold is None else threshold

        vector = await self._embed_query(query)
        if vector is None:
            return []
        try:
            return await self._search(vector, self._asset_filter(user_id, type, folder_id), limit, threshold)
        except VectorStoreUnavailable:
            raise
        except Exception as exc:
            logger.error("Asset search failed | query=%r error=%s", query, exc, exc_info=True)
            return []

    @traced("vectorstore.search_document_chunks")
    @_degrades_to(list)
    async def search_document_chunks(
        self,
        query: str,
        user_id: Optional[str],
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        asset_id: Optional[str] = None,
    ) -> list[SearchResult]:
        await self._require_index()
        limit     = limit or self._settings.search_limit
        threshold = self._settings.search_threshold if threshold is None else threshold

        vector = await self._embed_query(query)
        if vector is None:
            return []
        try:
            return await self._search(vector, self._chunk_filter(user_id, asset_id), limit, threshold)
        except VectorStoreUnavailable:
            raise
        except Exception as exc:
            logger.error("Chunk search failed | query=%r error=%s", query, exc, exc_info=True)
            return []

    @traced("vectorstore.hybrid_search")
    @_degrades_to(HybridSearchResult)
    async def hybrid_search(
        self,
        query: str,
        user_id: Optional[str],
        limit: Optional[int] = None,
        include_assets: bool = True,
        include_chunks: bool = True,
        asset_limit: Optional[int] = None,
        chunk_limit: Optional[int] = None,
        threshold: Optional[float] = None,
        asset_threshold: Optional[float] = None,
        chunk_threshold: Optional[float] = None,
    ) -> HybridSearchResult:
        """
        Run the asset and chunk searches independently and return both lists.
        The two lists are not fused or re-ranked against each other.
        """
        await self._require_index()
        limit     = limit or self._settings.search_limit
        threshold = self._settings.search_threshold if threshold is None else threshold

        result = HybridSearchResult()
        if not (include_assets or include_chunks):
            return result

        vector = await self._embed_query(query)
        if vector is None:
            return result

        try:
            if include_assets:
                result.assets = await self._search(
                    vector,
                    self._asset_filter(user_id, None, None),
                    asset_limit or limit,
                    threshold if asset_threshold is None else asset_threshold,
                )
            if include_chunks:
                result.chunks = await self._search(
                    vector,
                    self._chunk_filter(user_id, None),
                    chunk_limit or limit,
                    threshold if chunk_threshold is None else chunk_threshold,
                )
        except VectorStoreUnavailable:
            raise
        except Exception as exc:
            logger.error("Hybrid search failed | query=%r error=%s", query, exc, exc_info=True)
            return HybridSearchResult()

        logger.debug(
            "Hybrid search | assets=%d chunks=%d", len(result.assets), len(result.chunks),
        )
        return result

    @_degrades_to(list)
    async def get_similar_assets(
        self,
        asset_id: str,
        user_id: Optional[str],
        limit: int = 10,
    ) -> list[SearchResult]:
        """Assets nearest to an already-indexed asset, excluding the asset itself."""
        index = await self._require_index()
        stored = (await index.fetch([asset_id])).get(asset_id)
        if stored is None:
            return []

        results = await self._search(
            stored.vector, self._asset_filter(user_id, None, None), limit + 1, threshold=0,
        )
        return [r for r in results if r.asset_id != asset_id][:limit]

    # ------------------------------------------------------------------
    # Metadata-filtered retrieval
    # ------------------------------------------------------------------

    async def _chunk_matches(self, asset_id: str, user_id: Optional[str], top_k: int) -> list:
        index = await self._require_index()
        return await index.query(
            self._probe_vector(index.dimension),
            top_k=min(top_k, MAX_QUERY_TOP_K),
            filter=self._chunk_filter(user_id, asset_id),
        )

    @_degrades_to(list)
    async def get_asset_chunks(
        self,
        asset_id: str,
        user_id: Optional[str],
        limit: int = 50,
        start_index: int = 0,
    ) -> list[SearchResult]:
        """Chunks of one asset in chunkIndex order, paged by start_index/limit."""
        # Probe-vector scores carry no order, so page after sorting the full set
        matches = await self._chunk_matches(asset_id, user_id, MAX_QUERY_TOP_K)
        matches.sort(key=lambda m: int(m.metadata.get("chunkIndex", 0)))
        return [
            SearchResult(asset_id=asset_id, score=m.score, metadata=m.metadata, chunk_id=m.id)
            for m in matches[start_index : start_index + limit]
        ]

    @_degrades_to(lambda: None)
    async def get_document_summary(
        self,
        asset_id: str,
        user_id: Optional[str],
        max_chunks: int = 50,
    ) -> Optional[DocumentSummary]:
        """Aggregate chunk metadata of one asset; None when it has no chunks."""
        matches = await self._chunk_matches(asset_id, user_id, max_chunks)
        if not matches:
            return None

        total_words = 0
        sections: list[str] = []
        keywords: Counter[str] = Counter()
        qualities: list[float] = []

        for m in sorted(matches, key=lambda m: int(m.metadata.get("chunkIndex", 0))):
            meta = m.metadata
            total_words += int(meta.get("wordCount") or 0)
            section = meta.get("section") or meta.get("title")
            if section and section not in sections:
                sections.append(section)
            keywords.update(_as_list(meta.get("keywords")))
            if meta.get("quality") in QUALITY_SCORES:
                qualities.append(QUALITY_SCORES[meta["quality"]])

        return DocumentSummary(
            asset_id=asset_id,
            total_chunks=len(matches),
            total_word_count=total_words,
            average_quality=sum(qualities) / len(qualities) if qualities else 0.0,
            sections=sections,
            top_keywords=[k for k, _ in keywords.most_common(SUMMARY_TOP_KEYWORDS)],
        )

    async def get_stats(self) -> StoreStats:
        await self.initialize()
        if self._index is None:
            return StoreStats(available=False)
        try:
            stats: IndexStats = await self._index.describe()
        except Exception as exc:
            logger.error("Vector stats unavailable | error=%s", exc)
            return StoreStats(available=False)
        return StoreStats(
            available=True,
            total_vectors=stats.total_vectors,
            dimension=stats.dimension,
            index_fullness=stats.index_fullness,
        )
