"""
Embedder  —  text → fixed-dimension vector with retry
═════════════════════════════════════════════════════

One AsyncOpenAI client per Embedder, created lazily on first call so that a
process without OPENAI_API_KEY can still import and run everything that does
not embed.

Batching:
  embed_many() sends EMBEDDING_BATCH_SIZE texts per API call (default 100)
  and runs up to MAX_CONCURRENT_BATCHES calls at once.

Retry policy (per API call):
  RateLimitError / 5xx / connection errors → wait base × 2^(attempt-1), capped
  AuthenticationError / BadRequestError / PermissionDenied / NotFound
                                           → fail immediately
  Exhausted retries raise EmbeddingError, which the job processor counts
  against the job's retry budget.

Every returned vector is checked against the configured dimension; a
mismatch raises EmbeddingError rather than poisoning the index.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, Sequence

import openai
from openai import AsyncOpenAI

from asset_pipeline.core.config import settings
from asset_pipeline.core.exceptions import EmbeddingError

logger = logging.getLogger(__name__)

MAX_CONCURRENT_BATCHES = 4
RETRY_MAX_DELAY        = 60.0

_NON_RETRYABLE: tuple[type[BaseException], ...] = (
    openai.AuthenticationError,
    openai.BadRequestError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
)


class Embedder:
    """
    Usage:
        embedder = Embedder()
        vector   = await embedder.embed("quarterly revenue by region")
        vectors  = await embedder.embed_many(chunk_texts)
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self._client      = client
        self._api_key     = api_key if api_key is not None else settings.openai_api_key
        self.model        = model or settings.embedding_model
        self.dimensions   = dimensions or settings.embedding_dimensions
        self._batch_size  = batch_size or settings.embedding_batch_size
        self._max_retries = settings.embedding_max_retries if max_retries is None else max_retries
        self._base_delay  = (
            settings.embedding_retry_base_delay if retry_base_delay is None else retry_base_delay
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise EmbeddingError("OpenAI API key is not configured")
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        vectors = await self._embed_with_retry([text], batch_idx=0)
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in order; the result lines up index-for-index with `texts`."""
        if not texts:
            return []

        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_BATCHES)

        async def _run(batch: list[str], idx: int) -> list[list[float]]:
            async with semaphore:
                return await self._embed_with_retry(batch, idx)

        t0 = time.monotonic()
        results = await asyncio.gather(*(_run(b, i) for i, b in enumerate(batches)))
        logger.info(
            "Embedded | texts=%d batches=%d model=%s elapsed_ms=%.0f",
            len(texts), len(batches), self.model, (time.monotonic() - t0) * 1000,
        )
        return [vector for batch in results for vector in batch]

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    async def _embed_with_retry(self, texts: list[str], batch_idx: int) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                return await self._call(texts, batch_idx)
            except EmbeddingError:
                raise
            except _NON_RETRYABLE as exc:
                logger.error("Non-retryable embedding error | batch=%d error=%s", batch_idx, exc)
                raise EmbeddingError(f"Embedding request rejected: {exc}") from exc
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Retryable embedding error | batch=%d attempt=%d error=%s %s",
                    batch_idx, attempt, type(exc).__name__, exc,
                )

        raise EmbeddingError(
            f"Embedding failed after {self._max_retries + 1} attempts: {last_error}"
        ) from last_error

    async def _call(self, texts: list[str], batch_idx: int) -> list[list[float]]:
        # The API rejects empty strings
        inputs = [t if t and t.strip() else " " for t in texts]

        kwargs: dict[str, Any] = {"model": self.model, "input": inputs}
        # dimensions is only accepted by text-embedding-3-* models
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        t_api = time.monotonic()
        response = await self.client.embeddings.create(**kwargs)
        logger.debug(
            "OpenAI embeddings | batch=%d size=%d api_ms=%.0f",
            batch_idx, len(inputs), (time.monotonic() - t_api) * 1000,
        )

        data = sorted(response.data, key=lambda d: getattr(d, "index", 0))
        vectors = [list(item.embedding) for item in data]
        if len(vectors) != len(inputs):
            raise EmbeddingError(f"Expected {len(inputs)} embeddings, got {len(vectors)}")
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Embedding dimension {len(vector)} does not match index dimension {self.dimensions}"
                )
        return vectors
