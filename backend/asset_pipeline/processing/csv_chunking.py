"""
CSV Chunker
═══════════

Turns a CSVExtraction into chunks that answer different kinds of questions:

  order   id suffix           type             answers
  ─────   ─────────────────   ──────────────   ───────────────────────────────
  0       _metadata_summary   csv_metadata     "what is this file?"
  1..C    _column_{i}         csv_column       "which column holds emails?"
  500     _stats_quality      csv_statistics   "how complete is this data?"
  501     _stats_types        csv_statistics   "how many numeric columns?"
  1000+k  _rows_{k}           csv_rows         "find the row for Alice"
  2000+i  _samples_{i}        csv_samples      "what do values look like?"

Chunks are emitted metadata → columns → rows → statistics → samples; the
order value alone recovers the category. Output is a pure function of the
extraction, so re-chunking the same file yields the same ids and orders.
"""

from __future__ import annotations

import logging
from typing import Any

from asset_pipeline.core.exceptions import ChunkingError
from asset_pipeline.processing.chunking import Chunk
from asset_pipeline.schemas.extraction import CSVExtraction, ColumnStats

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 1000    # characters of row text per csv_rows chunk

ORDER_METADATA   = 0
ORDER_COLUMNS    = 1
ORDER_QUALITY    = 500
ORDER_TYPES      = 501
ORDER_ROWS       = 1000
ORDER_SAMPLES    = 2000

SEARCH_TYPES = ("general", "schema", "content", "analysis")


class CSVChunker:
    """
    Usage:
        chunks = CSVChunker().chunk(csv_extraction, asset_id="a1")
    """

    def __init__(self, max_chunk_size: int = MAX_CHUNK_SIZE) -> None:
        self.max_chunk_size = max_chunk_size

    def chunk(self, extraction: CSVExtraction, asset_id: str) -> list[Chunk]:
        if not isinstance(extraction, CSVExtraction):
            raise ChunkingError(f"CSV chunker expects a CSV extraction, got {type(extraction).__name__}")
        missing = [h for h in extraction.metadata.headers if h not in extraction.metadata.column_stats]
        if missing:
            raise ChunkingError(f"Column statistics missing for: {', '.join(missing)}")

        chunks: list[Chunk] = []
        chunks.append(self._metadata_chunk(extraction, asset_id))
        chunks.extend(self._column_chunks(extraction, asset_id))
        chunks.extend(self._row_chunks(extraction, asset_id))
        chunks.extend(self._statistics_chunks(extraction, asset_id))
        chunks.extend(self._sample_chunks(extraction, asset_id))

        logger.info("CSV chunked | asset=%s chunks=%d", asset_id, len(chunks))
        return chunks

    def create_optimized_chunks(
        self,
        extraction: CSVExtraction,
        asset_id: str,
        search_type: str = "general",
    ) -> list[Chunk]:
        """Subset of chunk() tuned for one kind of search."""
        chunks = self.chunk(extraction, asset_id)
        if search_type == "schema":
            return [c for c in chunks if c.type in ("csv_column", "csv_metadata", "csv_statistics")]
        if search_type == "content":
            return [c for c in chunks if c.type in ("csv_rows", "csv_samples")]
        if search_type == "analysis":
            return [c for c in chunks if c.type == "csv_statistics"]
        return chunks

    # ------------------------------------------------------------------
    # Chunk builders
    # ------------------------------------------------------------------

    def _metadata_chunk(self, extraction: CSVExtraction, asset_id: str) -> Chunk:
        meta = extraction.metadata
        processed = f"Processed on {meta.extracted_at.date().isoformat()}" if meta.extracted_at else ""
        text = (
            f"CSV File: {meta.file_name}\n"
            f"File Size: {meta.file_size / 1024:.2f} KB\n"
            f"Rows: {meta.row_count}\n"
            f"Columns: {meta.column_count}\n"
            f"Headers: {', '.join(meta.headers)}\n"
            f"Summary: {processed}"
        )
        return Chunk(
            id=f"{asset_id}_metadata_summary",
            asset_id=asset_id,
            type="csv_metadata",
            content=text,
            metadata={
                "chunkType":   "summary",
                "title":       meta.file_name,
                "fileName":    meta.file_name,
                "rowCount":    meta.row_count,
                "columnCount": meta.column_count,
                "headers":     list(meta.headers),
            },
            order=ORDER_METADATA,
        )

    def _column_chunks(self, extraction: CSVExtraction, asset_id: str) -> list[Chunk]:
        meta = extraction.metadata
        chunks = []
        for index, header in enumerate(meta.headers):
            stats = meta.column_stats[header]
            text = (
                f"Column: {header}\n"
                f"Data Type: {stats.data_type}\n"
                f"Fill Rate: {stats.fill_rate:.2f}%\n"
                f"Unique Values: {stats.unique_values}\n"
                f"Sample Values: {', '.join(stats.sample_values)}\n"
                f"Missing Values: {stats.null_count} out of {meta.row_count} rows"
            )
            chunks.append(Chunk(
                id=f"{asset_id}_column_{index}",
                asset_id=asset_id,
                type="csv_column",
                content=text,
                metadata={
                    "chunkType":    "column",
                    "title":        header,
                    "columnName":   header,
                    "columnIndex":  index,
                    "dataType":     stats.data_type,
                    "fillRate":     stats.fill_rate,
                    "uniqueValues": stats.unique_values,
                },
                order=ORDER_COLUMNS + index,
            ))
        return chunks

    def _row_chunks(self, extraction: CSVExtraction, asset_id: str) -> list[Chunk]:
        headers = extraction.content.headers
        rows    = extraction.content.full_data
        if not rows:
            return []

        chunks: list[Chunk] = []
        batch: list[tuple[int, str]] = []
        size = 0
        for row_index, row in enumerate(rows):
            row_text = " | ".join(f"{h}: {row.get(h) or 'N/A'}" for h in headers)
            if batch and size + len(row_text) > self.max_chunk_size:
                chunks.append(self._row_chunk(batch, headers, asset_id, len(chunks)))
                batch, size = [], 0
            batch.append((row_index, row_text))
            size += len(row_text)

        if batch:
            chunks.append(self._row_chunk(batch, headers, asset_id, len(chunks)))
        return chunks

    @staticmethod
    def _row_chunk(
        batch: list[tuple[int, str]],
        headers: list[str],
        asset_id: str,
        chunk_index: int,
    ) -> Chunk:
        first, last = batch[0][0], batch[-1][0]
        return Chunk(
            id=f"{asset_id}_rows_{chunk_index}",
            asset_id=asset_id,
            type="csv_rows",
            content="\n".join(text for _, text in batch),
            metadata={
                "chunkType": "rows",
                "title":     f"Rows {first}-{last}",
                "rowRange":  [first, last],
                "rowCount":  len(batch),
                "headers":   list(headers),
            },
            order=ORDER_ROWS + chunk_index,
        )

    def _statistics_chunks(self, extraction: CSVExtraction, asset_id: str) -> list[Chunk]:
        meta = extraction.metadata
        quality = calculate_data_quality(meta.column_stats, meta.headers)
        quality_text = (
            "Data Quality Analysis:\n"
            f"Total Columns: {len(meta.headers)}\n"
            f"High Quality Columns (>90% filled): {len(quality['highQuality'])} - "
            f"{', '.join(quality['highQuality'])}\n"
            f"Medium Quality Columns (50-90% filled): {len(quality['mediumQuality'])} - "
            f"{', '.join(quality['mediumQuality'])}\n"
            f"Low Quality Columns (<50% filled): {len(quality['lowQuality'])} - "
            f"{', '.join(quality['lowQuality'])}\n"
            f"Average Fill Rate: {quality['averageFillRate']:.2f}%"
        )

        distribution = calculate_type_distribution(meta.column_stats, meta.headers)
        type_lines = "\n".join(f"{t}: {n} columns" for t, n in distribution.items())
        type_text = f"Data Type Distribution:\n{type_lines}\nTotal Rows: {meta.row_count}"

        return [
            Chunk(
                id=f"{asset_id}_stats_quality",
                asset_id=asset_id,
                type="csv_statistics",
                content=quality_text,
                metadata={
                    "chunkType":     "statistics",
                    "statisticType": "data_quality",
                    "title":         "Data Quality Analysis",
                    **quality,
                },
                order=ORDER_QUALITY,
            ),
            Chunk(
                id=f"{asset_id}_stats_types",
                asset_id=asset_id,
                type="csv_statistics",
                content=type_text,
                metadata={
                    "chunkType":        "statistics",
                    "statisticType":    "data_types",
                    "title":            "Data Type Distribution",
                    "typeDistribution": distribution,
                },
                order=ORDER_TYPES,
            ),
        ]

    def _sample_chunks(self, extraction: CSVExtraction, asset_id: str) -> list[Chunk]:
        meta = extraction.metadata
        chunks = []
        for index, header in enumerate(extraction.content.headers):
            samples = extraction.content.sample_data.get(header) or []
            if not samples:
                continue
            stats = meta.column_stats[header]
            text = (
                f'Sample data for column "{header}":\n'
                f"Data Type: {stats.data_type}\n"
                f"Sample Values: {', '.join(samples)}\n"
                f"This column contains {stats.data_type} data with {stats.unique_values} "
                f"unique values and {stats.fill_rate:.2f}% fill rate."
            )
            chunks.append(Chunk(
                id=f"{asset_id}_samples_{index}",
                asset_id=asset_id,
                type="csv_samples",
                content=text,
                metadata={
                    "chunkType":   "samples",
                    "title":       header,
                    "columnName":  header,
                    "columnIndex": index,
                    "sampleCount": len(samples),
                    "dataType":    stats.data_type,
                },
                order=ORDER_SAMPLES + index,
            ))
        return chunks


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def calculate_data_quality(stats: dict[str, ColumnStats], headers: list[str]) -> dict[str, Any]:
    high: list[str] = []
    medium: list[str] = []
    low: list[str] = []
    total = 0.0

    for header in headers:
        fill = stats[header].fill_rate
        total += fill
        if fill > 90:
            high.append(header)
        elif fill >= 50:
            medium.append(header)
        else:
            low.append(header)

    return {
        "highQuality":     high,
        "mediumQuality":   medium,
        "lowQuality":      low,
        "averageFillRate": total / len(headers) if headers else 0.0,
    }


def calculate_type_distribution(stats: dict[str, ColumnStats], headers: list[str]) -> dict[str, int]:
    distribution: dict[str, int] = {}
    for header in headers:
        data_type = stats[header].data_type
        distribution[data_type] = distribution.get(data_type, 0) + 1
    return distribution
