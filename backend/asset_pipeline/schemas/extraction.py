"""
Extraction Results — Pydantic schemas

ExtractionResult is a tagged union discriminated on `kind`:
  - CSVExtraction  (kind="csv")  — per-column statistics, sample rows, summary
  - PDFExtraction  (kind="pdf")  — cleaned text, sections, quality, language

Persisted onto Asset.metadata.extractedContent with camelCase keys
(rowCount, fillRate, pageCount, ...) via dump_extraction(), and read back
with load_extraction(), which returns None for missing or stale payloads so
the job processor can schedule a fresh extraction instead of failing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

class ColumnStats(_CamelModel):
    data_type:     str       = "unknown"   # integer | float | date | boolean | email | url | text
    null_count:    int       = 0
    unique_values: int       = 0
    sample_values: list[str] = Field(default_factory=list)   # up to 10
    fill_rate:     float     = 0.0                           # percent, 2 decimals


class CSVMetadata(_CamelModel):
    file_name:    str
    file_size:    int
    row_count:    int
    column_count: int
    headers:      list[str]
    column_stats: dict[str, ColumnStats]
    extracted_at: datetime = Field(default_factory=_utcnow)


class CSVContent(_CamelModel):
    headers:     list[str]
    sample_data: dict[str, list[str]] = Field(default_factory=dict)   # up to 5 per column
    full_data:   list[dict[str, str]] = Field(default_factory=list)   # first 1000 rows
    summary:     str = ""


class CSVExtraction(_CamelModel):
    kind:     Literal["csv"] = "csv"
    metadata: CSVMetadata
    content:  CSVContent


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PDFSection(_CamelModel):
    title:   str
    content: str
    level:   int = 1
    page:    int = 1


class PDFExtraction(_CamelModel):
    kind: Literal["pdf"] = "pdf"

    text:       str
    page_count: int
    word_count: int

    # PDF document info dictionary
    title:             str           = ""
    author:            str           = ""
    subject:           str           = ""
    creator:           str           = ""
    producer:          str           = ""
    creation_date:     Optional[str] = None
    modification_date: Optional[str] = None

    quality:  Literal["high", "medium", "low"] = "low"
    language: str                              = "en"
    sections: list[PDFSection]                 = Field(default_factory=list)

    extraction_source: Literal["url", "file"] = "file"
    extraction_method: str                    = "text-based"
    extracted_at:      datetime               = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Tagged union
# ---------------------------------------------------------------------------

ExtractionResult = Annotated[
    Union[CSVExtraction, PDFExtraction],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(ExtractionResult)


def dump_extraction(result: CSVExtraction | PDFExtraction) -> dict[str, Any]:
    """JSON-safe, camelCase dict for Asset.metadata.extractedContent."""
    return result.model_dump(by_alias=True, mode="json")


def load_extraction(data: Any) -> Optional[CSVExtraction | PDFExtraction]:
    if not data:
        return None
    try:
        return _adapter.validate_python(data)
    except ValidationError as exc:
        logger.warning("Stored extraction is invalid | errors=%d", exc.error_count())
        return None
