"""
CSV Extractor
═════════════

Turns a CSV file (local path or http(s) URL) into a CSVExtraction:

  validate (size ≤ 50 MB, first lines non-empty)
    → stream rows once, tracking per-column null counts / samples / type
    → finalise fill rates and unique counts
    → build a one-paragraph human-readable summary

Type inference looks only at the first non-empty value of each column and
tries, in order: numeric → date → boolean → email → url → text. A column with
no values keeps dataType "unknown".

Parsing is synchronous (csv module) and runs in the default executor so the
job loop is not blocked on large files.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
import re
from typing import Optional
from urllib.parse import urlparse

import httpx

from asset_pipeline.core.config import settings
from asset_pipeline.core.exceptions import ExtractionError
from asset_pipeline.observability.tracing import traced
from asset_pipeline.processing.download import is_url, local_copy
from asset_pipeline.schemas.extraction import (
    ColumnStats,
    CSVContent,
    CSVExtraction,
    CSVMetadata,
)

logger = logging.getLogger(__name__)

MAX_SAMPLE_VALUES = 10      # ColumnStats.sample_values
MAX_SAMPLE_DATA   = 5       # CSVContent.sample_data per column
MAX_FULL_ROWS     = 1000    # rows retained for row chunks
VALIDATION_LINES  = 5

HIGH_QUALITY_FILL = 90.0
LOW_QUALITY_FILL  = 50.0

_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_DATE_RE   = re.compile(r"^\d{4}-\d{2}-\d{2}$|^\d{2}/\d{2}/\d{4}$|^\d{2}-\d{2}-\d{4}$")
_EMAIL_RE  = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_BOOLEANS  = frozenset({"true", "false", "yes", "no", "1", "0"})


# ---------------------------------------------------------------------------
# Type inference
# ---------------------------------------------------------------------------

def infer_data_type(value: str) -> str:
    trimmed = value.strip()

    if _NUMBER_RE.match(trimmed):
        return "float" if "." in trimmed else "integer"
    if _DATE_RE.match(trimmed):
        return "date"
    if trimmed.lower() in _BOOLEANS:
        return "boolean"
    if _EMAIL_RE.match(trimmed):
        return "email"
    if _looks_like_url(trimmed):
        return "url"
    return "text"


def _looks_like_url(value: str) -> bool:
    if " " in value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def _display_name(source: str) -> str:
    """File name shown in chunks; URLs use the last path segment, not the temp file."""
    name = os.path.basename(urlparse(source).path) if is_url(source) else os.path.basename(source)
    return name or "data.csv"


def generate_summary(headers: list[str], stats: dict[str, ColumnStats], row_count: int) -> str:
    summary = f"This CSV file contains {row_count} rows and {len(headers)} columns. "

    descriptions = [
        f"{h} ({stats[h].data_type}, {stats[h].fill_rate:.2f}% filled, "
        f"{stats[h].unique_values} unique values)"
        for h in headers
    ]
    summary += f"The columns are: {', '.join(descriptions)}."

    high = [h for h in headers if stats[h].fill_rate > HIGH_QUALITY_FILL]
    low  = [h for h in headers if stats[h].fill_rate < LOW_QUALITY_FILL]
    if high:
        summary += f" High-quality columns with >90% data: {', '.join(high)}."
    if low:
        summary += f" Columns with missing data (<50% filled): {', '.join(low)}."
    return summary


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class CSVExtractor:
    """
    Usage:
        extractor = CSVExtractor()
        result = await extractor.extract("https://cdn.example.com/people.csv")
        result.metadata.row_count
    """

    def __init__(
        self,
        max_file_size: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._max_file_size = max_file_size or settings.max_upload_size_bytes
        self._http_client   = http_client

    @traced("csv.extract")
    async def extract(self, source: str) -> CSVExtraction:
        async with local_copy(source, suffix=".csv", client=self._http_client) as path:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(
                None, self._extract_sync, path, _display_name(source),
            )

    def _extract_sync(self, path: str, file_name: Optional[str] = None) -> CSVExtraction:
        self.validate(path)
        try:
            result = self._parse(path, file_name or os.path.basename(path))
        except (csv.Error, UnicodeDecodeError) as exc:
            raise ExtractionError(f"CSV parsing failed: {exc}", source=path) from exc

        logger.info(
            "CSV extracted | file=%s rows=%d columns=%d",
            result.metadata.file_name, result.metadata.row_count, result.metadata.column_count,
        )
        return result

    # ------------------------------------------------------------------
    # Pre-check
    # ------------------------------------------------------------------

    def validate(self, path: str) -> bool:
        """Raise ExtractionError unless `path` is a readable, non-empty CSV within the size limit."""
        if not os.path.isfile(path):
            raise ExtractionError(f"CSV file not found: {path}", source=path)

        size = os.path.getsize(path)
        if size > self._max_file_size:
            raise ExtractionError(
                f"CSV file too large (max {self._max_file_size // (1024 * 1024)}MB)", source=path,
            )

        lines = self.read_first_lines(path, VALIDATION_LINES)
        if not any(line.strip() for line in lines):
            raise ExtractionError("CSV file appears to be empty", source=path)
        return True

    @staticmethod
    def read_first_lines(path: str, count: int) -> list[str]:
        lines: list[str] = []
        with open(path, encoding="utf-8-sig", errors="replace", newline="") as fh:
            for line in fh:
                if len(lines) >= count:
                    break
                lines.append(line.rstrip("\r\n"))
        return lines

    # ------------------------------------------------------------------
    # Single streaming pass
    # ------------------------------------------------------------------

    def _parse(self, path: str, file_name: str) -> CSVExtraction:
        with open(path, encoding="utf-8-sig", newline="") as fh:
            reader  = csv.DictReader(fh)
            headers = [h.strip() for h in (reader.fieldnames or [])]
            if not headers:
                raise ExtractionError("CSV file has no header row", source=path)
            reader.fieldnames = headers

            null_counts: dict[str, int]      = {h: 0 for h in headers}
            uniques:     dict[str, set[str]] = {h: set() for h in headers}
            samples:     dict[str, list[str]] = {h: [] for h in headers}
            sample_data: dict[str, list[str]] = {h: [] for h in headers}
            data_types:  dict[str, str]      = {h: "unknown" for h in headers}
            full_data:   list[dict[str, str]] = []
            row_count = 0

            for row in reader:
                # Lines with no cells at all are not rows
                if not any((v or "").strip() for k, v in row.items() if k is not None):
                    continue
                row_count += 1

                clean = {h: (row.get(h) or "") for h in headers}
                if len(full_data) < MAX_FULL_ROWS:
                    full_data.append(clean)

                for header in headers:
                    value = clean[header]
                    if not value.strip():
                        null_counts[header] += 1
                        continue
                    uniques[header].add(value)
                    if len(samples[header]) < MAX_SAMPLE_VALUES:
                        samples[header].append(value)
                    if len(sample_data[header]) < MAX_SAMPLE_DATA:
                        sample_data[header].append(value)
                    if data_types[header] == "unknown":
                        data_types[header] = infer_data_type(value)

        column_stats: dict[str, ColumnStats] = {}
        for header in headers:
            filled = row_count - null_counts[header]
            fill_rate = round(filled / row_count * 100, 2) if row_count else 0.0
            column_stats[header] = ColumnStats(
                data_type=data_types[header],
                null_count=null_counts[header],
                unique_values=len(uniques[header]),
                sample_values=samples[header],
                fill_rate=fill_rate,
            )

        metadata = CSVMetadata(
            file_name=file_name,
            file_size=os.path.getsize(path),
            row_count=row_count,
            column_count=len(headers),
            headers=headers,
            column_stats=column_stats,
        )
        content = CSVContent(
            headers=headers,
            sample_data=sample_data,
            full_data=full_data,
            summary=generate_summary(headers, column_stats, row_count),
        )
        return CSVExtraction(metadata=metadata, content=content)
