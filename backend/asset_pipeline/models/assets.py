"""
SQLAlchemy ORM Models — Assets

The asset table is owned by the upload/CRUD layer; the pipeline only reads
rows and merges keys into the free-form `metadata` JSON column.

Metadata keys written by the pipeline:
    extractedContent       — serialized ExtractionResult (CSV or PDF variant)
    vectorized             — bool, true once the asset-level vector is upserted
    vectorLastUpdated      — ISO-8601 timestamp of the last successful write
    vectorizationStatus    — VectorizationStatus value (see below)
    extractionFailed / extractionError
    vectorizationFailed / vectorizationError
    aiAnalysis / aiAnalysisPending / aiAnalysisFailed / hybridVector (images)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in local tooling)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AssetType(str, Enum):
    IMAGE    = "image"
    VIDEO    = "video"
    AUDIO    = "audio"
    DOCUMENT = "document"
    OTHER    = "other"


class VectorizationStatus(str, Enum):
    """
    Lifecycle of an asset inside the pipeline.

        notVectorized → extractionPending → extracted
                      → vectorizationPending → vectorized

    extractionFailed / vectorizationFailed are reachable from the matching
    pending state and stay put until a new job is enqueued for the asset.
    """

    NOT_VECTORIZED        = "notVectorized"
    EXTRACTION_PENDING    = "extractionPending"
    EXTRACTED             = "extracted"
    VECTORIZATION_PENDING = "vectorizationPending"
    VECTORIZED            = "vectorized"
    EXTRACTION_FAILED     = "extractionFailed"
    VECTORIZATION_FAILED  = "vectorizationFailed"


_ALLOWED_TRANSITIONS: dict[VectorizationStatus, frozenset[VectorizationStatus]] = {
    VectorizationStatus.NOT_VECTORIZED: frozenset({
        VectorizationStatus.EXTRACTION_PENDING,
        VectorizationStatus.VECTORIZATION_PENDING,
    }),
    VectorizationStatus.EXTRACTION_PENDING: frozenset({
        VectorizationStatus.EXTRACTED,
        VectorizationStatus.EXTRACTION_FAILED,
    }),
    VectorizationStatus.EXTRACTED: frozenset({
        VectorizationStatus.VECTORIZATION_PENDING,
        VectorizationStatus.EXTRACTION_PENDING,
    }),
    VectorizationStatus.VECTORIZATION_PENDING: frozenset({
        VectorizationStatus.VECTORIZED,
        VectorizationStatus.VECTORIZATION_FAILED,
        VectorizationStatus.EXTRACTION_PENDING,
    }),
    VectorizationStatus.VECTORIZED: frozenset({
        VectorizationStatus.EXTRACTION_PENDING,
        VectorizationStatus.VECTORIZATION_PENDING,
    }),
    # Failed states only move when a new job is explicitly enqueued
    VectorizationStatus.EXTRACTION_FAILED: frozenset({
        VectorizationStatus.EXTRACTION_PENDING,
    }),
    VectorizationStatus.VECTORIZATION_FAILED: frozenset({
        VectorizationStatus.EXTRACTION_PENDING,
        VectorizationStatus.VECTORIZATION_PENDING,
    }),
}


def can_transition(current: VectorizationStatus, target: VectorizationStatus) -> bool:
    return current == target or target in _ALLOWED_TRANSITIONS[current]


def derive_status(metadata: Mapping[str, Any] | None) -> VectorizationStatus:
    """
    Read the status from an asset's metadata bag.

    Rows written before vectorizationStatus existed only carry the boolean
    flags, so the state is reconstructed from those.
    """
    metadata = metadata or {}
    raw = metadata.get("vectorizationStatus")
    if raw:
        try:
            return VectorizationStatus(raw)
        except ValueError:
            pass

    if metadata.get("vectorizationFailed"):
        return VectorizationStatus.VECTORIZATION_FAILED
    if metadata.get("extractionFailed"):
        return VectorizationStatus.EXTRACTION_FAILED
    if metadata.get("vectorized"):
        return VectorizationStatus.VECTORIZED
    if metadata.get("extractedContent"):
        return VectorizationStatus.EXTRACTED
    return VectorizationStatus.NOT_VECTORIZED


# ---------------------------------------------------------------------------
# Asset model — assets
# ---------------------------------------------------------------------------

class Asset(Base):
    """
    A user-owned file record (image, CSV, PDF, ...).

    The pipeline never creates or deletes rows; it only extends
    `asset_metadata` through AssetRepository.update_metadata().
    """

    __tablename__ = "assets"
    __table_args__ = (
        Index("idx_assets_user_id",   "user_id"),
        Index("idx_assets_folder_id", "user_id", "folder_id"),
    )

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: uuid.uuid4().hex,
    )

    user_id:   Mapped[str]           = mapped_column(String(64), nullable=False)
    folder_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    name:              Mapped[str]           = mapped_column(Text, nullable=False)
    original_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type:              Mapped[str]           = mapped_column(
        String(16), nullable=False, default=AssetType.OTHER.value,
    )
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Storage locations; cloudinary_url is the CDN copy and preferred for downloads
    url:            Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cloudinary_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    asset_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=False,
        default=dict,
        comment="Free-form bag; the pipeline merges extraction/vector state here",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def source_url(self) -> Optional[str]:
        return self.cloudinary_url or self.url

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"

    @property
    def is_csv(self) -> bool:
        return self.mime_type in ("text/csv", "application/csv") or (
            self.original_filename or self.name or ""
        ).lower().endswith(".csv")

    def __repr__(self) -> str:
        return f"<Asset id={self.id} user={self.user_id} type={self.type} name={self.name!r}>"
