"""
Document Chunker  —  PDF text → search-granular chunks
══════════════════════════════════════════════════════

Strategies
──────────
  hybrid   (default)  summary chunk, then one or more chunks per detected
                      section; falls back to `semantic` when the extractor
                      found no sections
  semantic            summary chunk, then paragraphs packed up to chunk_size
  fixed               character windows with overlap, breaking at a sentence
                      end past 70% of the window or a space past 80%
  section             summary chunk, then exactly one chunk per section

Sizing
──────
  chunk_size (1000 chars) bounds every chunk except the summary; paragraphs
  larger than chunk_size are cut into fixed windows first. When a chunk is
  closed, the next one is seeded with the trailing `overlap` characters of
  the previous one, starting at a sentence boundary when one falls in the
  first half of that window.

  At most max_chunks (100) chunks are returned per document.

Every chunk carries wordCount, title, section, page / startPage / endPage,
level, keywords (top 5 content words) and the document's quality / language.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from asset_pipeline.core.config import settings
from asset_pipeline.core.exceptions import ChunkingError
from asset_pipeline.schemas.extraction import PDFExtraction, PDFSection

logger = logging.getLogger(__name__)

STRATEGIES = ("hybrid", "semantic", "fixed", "section")

SUMMARY_PREVIEW_CHARS = 500
SUMMARY_MAX_SECTIONS  = 10
KEYWORDS_PER_CHUNK    = 5
MIN_KEYWORD_LEN       = 4

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_WORD_RE            = re.compile(r"[a-zA-Z][a-zA-Z'\-]+")

_KEYWORD_STOPWORDS = frozenset({
    "about", "after", "also", "been", "before", "being", "between", "both",
    "could", "does", "each", "from", "have", "here", "into", "just", "more",
    "most", "much", "must", "only", "other", "over", "same", "should", "some",
    "such", "than", "that", "their", "them", "then", "there", "these", "they",
    "this", "those", "through", "under", "very", "were", "what", "when",
    "where", "which", "while", "will", "with", "would", "your",
})


# ---------------------------------------------------------------------------
# Chunk — shared by the document and CSV chunkers
# ---------------------------------------------------------------------------

@dataclass
class Chunk:
    """
    A bounded, typed slice of extracted content, ready for embedding.

    Never persisted on its own: VectorStoreService turns each chunk into one
    vector record keyed "{asset_id}_chunk_{i}".
    """
    id:       str
    asset_id: str
    type:     str            # summary | section | section_part | content | fixed | csv_*
    content:  str
    metadata: dict[str, Any] = field(default_factory=dict)
    order:    int = 0

    @property
    def title(self) -> str:
        return self.metadata.get("title", "")

    @property
    def word_count(self) -> int:
        return self.metadata.get("wordCount", count_words(self.content))


@dataclass
class _Piece:
    text:     str
    type:     str
    title:    str
    page:     int = 1
    level:    int = 1
    section:  str = ""
    end_page: Optional[int] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def count_words(text: Optional[str]) -> int:
    return len(text.split()) if text else 0


def split_paragraphs(text: str) -> list[str]:
    return [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]


def extract_keywords(text: str, limit: int = KEYWORDS_PER_CHUNK) -> list[str]:
    words = [
        w for w in (m.group(0).lower() for m in _WORD_RE.finditer(text))
        if len(w) >= MIN_KEYWORD_LEN and w not in _KEYWORD_STOPWORDS
    ]
    return [w for w, _ in Counter(words).most_common(limit)]


def overlap_tail(text: str, overlap: int) -> str:
    """Trailing `overlap` chars of text, trimmed to a sentence start when possible."""
    if overlap <= 0 or len(text) <= overlap:
        return ""
    tail = text[len(text) - overlap:]
    sentence_start = tail.find(". ")
    if 0 < sentence_start < overlap * 0.5:
        tail = tail[sentence_start + 2:]
    tail = tail.strip()
    return tail + "\n\n" if tail else ""


def fixed_windows(text: str, size: int, overlap: int, limit: Optional[int] = None) -> list[tuple[int, str]]:
    """
    Cut text into (start_offset, window) pairs of at most `size` chars.
    Consecutive windows share `overlap` chars.
    """
    windows: list[tuple[int, str]] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + size, length)
        if end < length:
            last_sentence = text.rfind(".", start, end)
            last_space    = text.rfind(" ", start, end)
            if last_sentence > start + size * 0.7:
                end = last_sentence + 1
            elif last_space > start + size * 0.8:
                end = last_space

        window = text[start:end].strip()
        if window:
            windows.append((start, window))
        if end >= length or (limit is not None and len(windows) >= limit):
            break
        start = end - overlap if end - overlap > start else end
    return windows


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class DocumentChunker:
    """
    Stateless document chunker.

    Usage:
        chunker = DocumentChunker()
        chunks  = chunker.chunk(pdf_extraction, asset_id="a1")
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        max_chunks: Optional[int] = None,
        strategy: Optional[str] = None,
    ) -> None:
        self.chunk_size = chunk_size or settings.chunk_size
        self.overlap    = settings.chunk_overlap if overlap is None else overlap
        self.max_chunks = max_chunks or settings.max_chunks_per_document
        self.strategy   = strategy or settings.chunk_strategy

        if self.overlap >= self.chunk_size:
            raise ValueError("overlap must be smaller than chunk_size")

    def chunk(
        self,
        document: PDFExtraction,
        asset_id: str,
        strategy: Optional[str] = None,
    ) -> list[Chunk]:
        if not isinstance(document, PDFExtraction):
            raise ChunkingError(f"Document chunker expects a PDF extraction, got {type(document).__name__}")
        if not document.text:
            return []

        strategy = strategy or self.strategy
        if strategy == "semantic":
            pieces = self._semantic(document)
        elif strategy == "fixed":
            pieces = self._fixed(document.text)
        elif strategy == "section":
            pieces = self._by_section(document)
        else:
            strategy = "hybrid"
            pieces = self._hybrid(document)

        chunks = [
            self._to_chunk(piece, index, asset_id, strategy, document)
            for index, piece in enumerate(pieces[: self.max_chunks])
        ]
        logger.info(
            "Document chunked | asset=%s strategy=%s chunks=%d truncated=%s",
            asset_id, strategy, len(chunks), len(pieces) > self.max_chunks,
        )
        return chunks

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _hybrid(self, doc: PDFExtraction) -> list[_Piece]:
        if not doc.sections:
            return self._semantic(doc)
        pieces = [self._summary(doc)]
        for section, end_page in self._section_pages(doc):
            pieces.extend(self._chunk_section(section, end_page))
        return pieces

    def _by_section(self, doc: PDFExtraction) -> list[_Piece]:
        if not doc.sections:
            return self._semantic(doc)
        pieces = [self._summary(doc)]
        for section, end_page in self._section_pages(doc):
            pieces.append(_Piece(
                text=f"{section.title}\n\n{section.content}",
                type="section",
                title=section.title,
                section=section.title,
                page=section.page or 1,
                level=section.level or 1,
                end_page=end_page,
            ))
        return pieces

    def _semantic(self, doc: PDFExtraction) -> list[_Piece]:
        pieces = [self._summary(doc)]
        part = 1

        def _page(n: int) -> int:
            return max(1, math.ceil(n * self.chunk_size / 1000))

        current = ""
        for paragraph in self._bounded_paragraphs(doc.text):
            if current and len(current) + len(paragraph) > self.chunk_size:
                pieces.append(_Piece(
                    text=current.strip(), type="content",
                    title=f"Content Part {part}", page=_page(part), level=2,
                ))
                current = overlap_tail(current, self.overlap) + paragraph + "\n\n"
                part += 1
            else:
                current += paragraph + "\n\n"

        if current.strip():
            pieces.append(_Piece(
                text=current.strip(), type="content",
                title=f"Content Part {part}", page=_page(part), level=2,
            ))
        return pieces

    def _fixed(self, text: str) -> list[_Piece]:
        return [
            _Piece(
                text=window,
                type="fixed",
                title=f"Fixed Chunk {n}",
                page=max(1, math.ceil(start / 1000)),
                level=2,
            )
            for n, (start, window) in enumerate(
                fixed_windows(text, self.chunk_size, self.overlap, limit=self.max_chunks), start=1,
            )
        ]

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def _summary(self, doc: PDFExtraction) -> _Piece:
        parts: list[str] = []
        if doc.title:
            parts.append(f"Title: {doc.title}")
        if doc.author:
            parts.append(f"Author: {doc.author}")
        if doc.subject:
            parts.append(f"Subject: {doc.subject}")

        titles = [s.title for s in doc.sections if s.title][:SUMMARY_MAX_SECTIONS]
        if titles:
            parts.append(f"Sections: {', '.join(titles)}")

        parts.append(doc.text[:SUMMARY_PREVIEW_CHARS])
        return _Piece(
            text="\n\n".join(parts),
            type="summary",
            title="Document Summary",
            page=1,
            level=0,
            end_page=max(1, doc.page_count),
        )

    def _chunk_section(self, section: PDFSection, end_page: int) -> list[_Piece]:
        page  = section.page or 1
        level = section.level or 1
        title = section.title

        if len(title) + 2 + len(section.content) <= self.chunk_size:
            return [_Piece(
                text=f"{title}\n\n{section.content}", type="section",
                title=title, section=title, page=page, level=level, end_page=end_page,
            )]

        pieces: list[_Piece] = []
        header  = f"{title}\n\n"
        current = header
        part    = 0
        for paragraph in self._bounded_paragraphs(section.content, reserve=len(header)):
            if len(current) + len(paragraph) > self.chunk_size and len(current) > len(header):
                pieces.append(_Piece(
                    text=current.strip(), type="section_part",
                    title=f"{title} (Part {part + 1})", section=title,
                    page=page, level=level, end_page=end_page,
                ))
                current = header + overlap_tail(current, self.overlap) + paragraph + "\n\n"
                part += 1
            else:
                current += paragraph + "\n\n"

        if len(current) > len(title) + 10:
            pieces.append(_Piece(
                text=current.strip(),
                type="section_part" if part > 0 else "section",
                title=f"{title} (Part {part + 1})" if part > 0 else title,
                section=title, page=page, level=level, end_page=end_page,
            ))
        return pieces

    def _bounded_paragraphs(self, text: str, reserve: int = 0) -> list[str]:
        """Paragraphs, with any paragraph above the budget pre-cut into windows."""
        # Leave room for the overlap seed and `reserve` chars of section header
        budget = max(1, self.chunk_size - self.overlap - 2 - reserve)
        out: list[str] = []
        for paragraph in split_paragraphs(text):
            if len(paragraph) <= budget:
                out.append(paragraph)
            else:
                out.extend(w for _, w in fixed_windows(paragraph, budget, 0))
        return out

    @staticmethod
    def _section_pages(doc: PDFExtraction) -> list[tuple[PDFSection, int]]:
        sections = doc.sections
        out: list[tuple[PDFSection, int]] = []
        for i, section in enumerate(sections):
            start = section.page or 1
            if i + 1 < len(sections):
                end = max(start, sections[i + 1].page or 1)
            else:
                end = max(start, doc.page_count)
            out.append((section, end))
        return out

    def _to_chunk(
        self,
        piece: _Piece,
        index: int,
        asset_id: str,
        strategy: str,
        doc: PDFExtraction,
    ) -> Chunk:
        end_page = piece.end_page if piece.end_page is not None else piece.page
        metadata: dict[str, Any] = {
            "title":     piece.title,
            "section":   piece.section or piece.title,
            "page":      piece.page,
            "startPage": piece.page,
            "endPage":   max(end_page, piece.page),
            "level":     piece.level,
            "wordCount": count_words(piece.text),
            "keywords":  extract_keywords(piece.text),
            "quality":   doc.quality,
            "language":  doc.language,
            "strategy":  strategy,
            "index":     index,
        }
        return Chunk(
            id=f"{asset_id}_part_{index}",
            asset_id=asset_id,
            type=piece.type,
            content=piece.text,
            metadata=metadata,
            order=index,
        )
