"""
Asset repository — the pipeline's only window onto asset rows.

The pipeline never creates or deletes assets. It reads them and merges keys
into their metadata bag (last-write-wins per key). Jobs on the same asset
are serialized by the JobProcessor, so no row locking happens here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from asset_pipeline.db.session import get_session_factory, session_scope
from asset_pipeline.models.assets import Asset

logger = logging.getLogger(__name__)


class AssetRepository(ABC):
    """Abstract asset store consumed by the job processor."""

    @abstractmethod
    async def get(self, asset_id: str) -> Optional[Asset]:
        """Return the asset, or None if it no longer exists."""

    @abstractmethod
    async def update_metadata(self, asset_id: str, patch: Mapping[str, Any]) -> Optional[Asset]:
        """
        Shallow-merge `patch` into the asset's metadata bag.
        Keys mapped to None are removed. Returns the updated asset or None.
        """

    @abstractmethod
    async def list_unvectorized_ids(self) -> list[str]:
        """Ids of assets whose metadata does not carry vectorized=true."""

    @abstractmethod
    async def list_ids(self) -> list[str]:
        """Ids of every asset."""


def merge_metadata(current: Mapping[str, Any] | None, patch: Mapping[str, Any]) -> dict:
    merged = dict(current or {})
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class SqlAlchemyAssetRepository(AssetRepository):
    """AssetRepository over the `assets` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get(self, asset_id: str) -> Optional[Asset]:
        async with session_scope(self._factory()) as session:
            return await session.get(Asset, asset_id)

    async def update_metadata(self, asset_id: str, patch: Mapping[str, Any]) -> Optional[Asset]:
        async with session_scope(self._factory()) as session:
            asset = await session.get(Asset, asset_id, with_for_update=True)
            if asset is None:
                logger.warning("Metadata update skipped, asset missing | asset=%s", asset_id)
                return None
            # Reassign a new dict so the JSON column is flagged dirty
            asset.asset_metadata = merge_metadata(asset.asset_metadata, patch)
            logger.debug("Asset metadata updated | asset=%s keys=%s", asset_id, sorted(patch))
            return asset

    async def list_unvectorized_ids(self) -> list[str]:
        async with session_scope(self._factory()) as session:
            rows = await session.execute(select(Asset.id, Asset.asset_metadata))
            return [
                asset_id for asset_id, metadata in rows.all()
                if not (metadata or {}).get("vectorized")
            ]

    async def list_ids(self) -> list[str]:
        async with session_scope(self._factory()) as session:
            result = await session.execute(select(Asset.id))
            return list(result.scalars().all())
