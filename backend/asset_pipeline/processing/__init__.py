"""
Asset Processing Package
════════════════════════

Turns raw asset files into embeddable, search-granular chunks:

  Download → Extraction → Chunking → Embedding

Modules
───────
  download.py        URL → temp file (httpx), always cleaned up
  csv_extractor.py   per-column type inference, fill rates, summary sentence
  pdf_extractor.py   pypdf text layer, cleaning, quality, language, sections
  csv_chunking.py    metadata / column / row / statistics / sample chunks
  chunking.py        document chunker (hybrid, semantic, fixed, section)
  embeddings.py      batched OpenAI embeddings with retry
  image_analysis.py  vision analysis + hybrid embedding for image assets

Design principles
─────────────────
  • Extractors and chunkers are stateless; the same input yields the same output.
  • Blocking file parsing runs in the default executor, off the event loop.
  • Every step emits pipe-delimited key=value log lines.
"""

from asset_pipeline.processing.chunking import Chunk, DocumentChunker
from asset_pipeline.processing.csv_chunking import CSVChunker
from asset_pipeline.processing.csv_extractor import CSVExtractor
from asset_pipeline.processing.embeddings import Embedder
from asset_pipeline.processing.pdf_extractor import PDFExtractor

__all__ = [
    "Chunk",
    "DocumentChunker",
    "CSVChunker",
    "CSVExtractor",
    "Embedder",
    "PDFExtractor",
]
