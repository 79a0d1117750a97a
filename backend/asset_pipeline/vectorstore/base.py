"""
Vector Index — Abstract Base

The similarity index the pipeline writes to. Concrete backends (Pinecone in
production, an in-memory index in tests) implement this interface;
VectorStoreService is the only caller.

Record id shapes:
  asset-level   id == asset_id                   (at most one per asset)
  chunk-level   id == "{asset_id}_chunk_{i}"     (deterministic, prefixed)

All records in one index share the index dimension. Metadata values are
flat: str, int, float, bool or list[str].
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the index."""
    id:       str
    vector:   list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryResult:
    """One match returned by an index query."""
    id:       str
    score:    float
    metadata: dict[str, Any]
    text:     str = field(default="")   # convenience alias for metadata["content"]

    def __post_init__(self) -> None:
        if not self.text and "content" in self.metadata:
            self.text = self.metadata["content"]


@dataclass
class IndexStats:
    total_vectors:  int
    dimension:      int
    index_fullness: float = 0.0


@dataclass
class SearchResult:
    """
    A threshold-filtered search hit.
    chunk_id is set for chunk-level records and None for asset-level ones.
    """
    asset_id: str
    score:    float
    metadata: dict[str, Any]
    chunk_id: Optional[str] = None

    @property
    def is_chunk(self) -> bool:
        return self.chunk_id is not None


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndexBase(ABC):
    """Async similarity index with metadata filtering (Pinecone filter syntax)."""

    dimension: int

    @abstractmethod
    async def upsert(self, records: list[VectorRecord], batch_size: int = 100) -> int:
        """Insert or replace records by id. Returns the number written."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        top_k: int = 10,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        """Nearest neighbours by cosine similarity, best first, metadata included."""

    @abstractmethod
    async def delete(self, ids: list[str]) -> None:
        """Delete records by id; unknown ids are ignored."""

    @abstractmethod
    async def fetch(self, ids: list[str]) -> dict[str, VectorRecord]:
        """Return the stored records for the ids that exist."""

    @abstractmethod
    async def describe(self) -> IndexStats:
        """Index-wide statistics."""
