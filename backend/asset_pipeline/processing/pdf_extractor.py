"""
PDF Extractor
═════════════

Turns a PDF (local path or http(s) URL) into a PDFExtraction using the
native text layer (pypdf). No OCR: scanned PDFs come back with little or no
text and are graded quality="low".

Post-processing, all heuristic:
  clean_text        collapse horizontal whitespace, drop bare page-number
                    lines, collapse 3+ newlines to a paragraph break
  assess_quality    high / medium / low from word count, average word length
                    and the ratio of unusual characters
  detect_language   stop-word counts over the first 500 words (en / fr / es)
  extract_sections  header-like lines open a section; following lines are
                    its body; max 50 sections, page ≈ ceil(line_index / 50)
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import re
from typing import Any, Optional

import httpx
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from asset_pipeline.core.config import settings
from asset_pipeline.core.exceptions import ExtractionError
from asset_pipeline.observability.tracing import traced
from asset_pipeline.processing.download import is_url, local_copy
from asset_pipeline.schemas.extraction import PDFExtraction, PDFSection

logger = logging.getLogger(__name__)

MAX_SECTIONS         = 50
MIN_SECTION_CHARS    = 20     # a section body must be longer than this
LINES_PER_PAGE       = 50     # rough page estimate for sections
MAX_HEADER_CHARS     = 200
MAX_TITLE_CASE_CHARS = 100
LANGUAGE_SAMPLE_WORDS = 500

_ALL_CAPS_RE   = re.compile(r"^[A-Z][A-Z\s]{5,}$")
_NUMBERED_RE   = re.compile(r"^\d+\.?\s+[A-Z]")
_CHAPTER_RE    = re.compile(r"^Chapter\s+\d+", re.IGNORECASE)
_SECTION_RE    = re.compile(r"^Section\s+\d+", re.IGNORECASE)
_TITLE_CASE_RE = re.compile(r"^[A-Z][a-z]+(\s+[A-Z][a-z]+)*:?$")
_NUMBERED_LEVEL_RE = re.compile(r"^\d+\.?\s+")

_SPECIAL_CHAR_RE = re.compile(r"[^a-zA-Z0-9\s.,!?;:'\"()\-]")

_STOPWORDS: dict[str, tuple[str, ...]] = {
    "en": ("the", "and", "is", "in", "to", "of", "a", "that", "it", "with"),
    # "et" is listed twice, so it counts double
    "fr": ("le", "de", "et", "à", "un", "il", "être", "et", "en", "avoir"),
    "es": ("el", "de", "que", "y", "a", "en", "un", "es", "se", "no"),
}


# ---------------------------------------------------------------------------
# Text heuristics (pure functions)
# ---------------------------------------------------------------------------

def clean_text(text: Optional[str]) -> str:
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[^\S\n]+", " ", text)          # horizontal whitespace only
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"(?m)^\d+$", "", text)           # bare page numbers
    text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
    return text.strip()


def count_words(text: Optional[str]) -> int:
    return len(text.split()) if text else 0


def assess_quality(text: Optional[str]) -> str:
    if not text or len(text) < 100:
        return "low"

    word_count = count_words(text)
    avg_word_len = len(re.sub(r"\s+", "", text)) / word_count
    special_ratio = len(_SPECIAL_CHAR_RE.findall(text)) / len(text)

    if word_count > 500 and 3 < avg_word_len < 10 and special_ratio < 0.05:
        return "high"
    if word_count > 100 and special_ratio < 0.15:
        return "medium"
    return "low"


def detect_language(text: Optional[str]) -> str:
    if not text:
        return "unknown"

    words = text.lower().split()[:LANGUAGE_SAMPLE_WORDS]
    scores = {
        lang: sum(words.count(w) for w in stopwords)
        for lang, stopwords in _STOPWORDS.items()
    }
    en, fr, es = scores["en"], scores["fr"], scores["es"]

    if en > fr and en > es:
        return "en"
    if fr > es:
        return "fr"
    if es > 0:
        return "es"
    return "en"


def is_likely_header(line: str, next_line: Optional[str]) -> bool:
    if not line or len(line) > MAX_HEADER_CHARS:
        return False

    if (
        _ALL_CAPS_RE.match(line)
        or _NUMBERED_RE.match(line)
        or _CHAPTER_RE.match(line)
        or _SECTION_RE.match(line)
    ):
        return True

    return bool(
        _TITLE_CASE_RE.match(line)
        and len(line) < MAX_TITLE_CASE_CHARS
        and next_line
        and next_line.strip()
        and not line.rstrip().endswith((".", "!", "?"))
    )


def header_level(line: str) -> int:
    if _ALL_CAPS_RE.match(line) or _CHAPTER_RE.match(line):
        return 1
    if _NUMBERED_LEVEL_RE.match(line) or _SECTION_RE.match(line):
        return 2
    return 3


def extract_sections(text: Optional[str]) -> list[PDFSection]:
    if not text:
        return []

    sections: list[PDFSection] = []
    lines = text.split("\n")
    current: Optional[dict[str, Any]] = None
    body: list[str] = []

    def _close() -> None:
        content = " ".join(body).strip()
        if current is not None and len(content) > MIN_SECTION_CHARS:
            sections.append(PDFSection(content=content, **current))

    for i, raw in enumerate(lines):
        line = raw.strip()
        if not line:
            continue

        next_line = lines[i + 1] if i + 1 < len(lines) else None
        if is_likely_header(line, next_line):
            _close()
            body = []
            current = {
                "title": line,
                "level": header_level(line),
                "page":  max(1, math.ceil(i / LINES_PER_PAGE)),
            }
        elif current is not None:
            body.append(line)
        elif sections:
            # Text before the first header accumulates into "Introduction"
            sections[-1].content += " " + line
        else:
            sections.append(PDFSection(title="Introduction", content=line, level=1, page=1))

    _close()
    return sections[:MAX_SECTIONS]


def is_valid_pdf(path: str) -> bool:
    try:
        with open(path, "rb") as fh:
            return fh.read(4) == b"%PDF"
    except OSError:
        return False


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class PDFExtractor:
    """
    Usage:
        extractor = PDFExtractor()
        result = await extractor.extract("/tmp/report.pdf")
        result.quality, result.sections
    """

    def __init__(
        self,
        max_file_size: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._max_file_size = max_file_size or settings.max_upload_size_bytes
        self._http_client   = http_client

    @traced("pdf.extract")
    async def extract(self, source: str) -> PDFExtraction:
        origin = "url" if is_url(source) else "file"
        async with local_copy(source, suffix=".pdf", client=self._http_client) as path:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._extract_sync, path, origin)

    def _extract_sync(self, path: str, origin: str = "file") -> PDFExtraction:
        if not os.path.isfile(path):
            raise ExtractionError(f"PDF file not found: {path}", source=path)
        if os.path.getsize(path) > self._max_file_size:
            raise ExtractionError(
                f"PDF file too large (max {self._max_file_size // (1024 * 1024)}MB)", source=path,
            )
        if not is_valid_pdf(path):
            raise ExtractionError("File is not a PDF (missing %PDF header)", source=path)

        try:
            raw_text, page_count, info = self._read(path)
        except PyPdfError as exc:
            raise ExtractionError(f"PDF text extraction failed: {exc}", source=path) from exc

        text = clean_text(raw_text)
        result = PDFExtraction(
            text=text,
            page_count=page_count,
            word_count=count_words(text),
            quality=assess_quality(text),
            language=detect_language(text),
            sections=extract_sections(text),
            extraction_source=origin,
            **info,
        )
        logger.info(
            "PDF extracted | pages=%d words=%d quality=%s language=%s sections=%d",
            result.page_count, result.word_count, result.quality,
            result.language, len(result.sections),
        )
        return result

    @staticmethod
    def _read(path: str) -> tuple[str, int, dict[str, Any]]:
        reader = PdfReader(path)
        if reader.is_encrypted:
            # Many PDFs are "encrypted" with an empty user password
            reader.decrypt("")

        pages = [page.extract_text() or "" for page in reader.pages]

        info: dict[str, Any] = {}
        meta = reader.metadata
        if meta is not None:
            info = {
                "title":             str(meta.title or ""),
                "author":            str(meta.author or ""),
                "subject":           str(meta.subject or ""),
                "creator":           str(meta.creator or ""),
                "producer":          str(meta.producer or ""),
                "creation_date":     _raw_date(meta.get("/CreationDate")),
                "modification_date": _raw_date(meta.get("/ModDate")),
            }
        return "\n\n".join(pages), len(reader.pages), info


def _raw_date(value: Any) -> Optional[str]:
    return str(value) if value else None
