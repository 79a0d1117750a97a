"""
JobProcessor — in-memory priority queue + batch loop
════════════════════════════════════════════════════

Flow per asset
──────────────
  upload / update / delete handler
        │ enqueue(type, asset_id, priority)
        ▼
  JobQueue ── every poll interval, up to batch_size jobs ──► dispatch
        │
        ├── add / update        image analysis if pending → asset vector
        ├── remove              asset vector + all chunk vectors
        ├── extractPDF / CSV    extractor → metadata.extractedContent
        │                       → enqueue vectorizePDF / CSV (same priority)
        └── vectorizePDF / CSV  chunker → chunk vectors + asset vector
                                → metadata.vectorized = true

Failure policy
──────────────
  Missing asset                 silent no-op (except `remove`)
  ExtractionError               recorded on the asset: extractionFailed + extractionError
  ChunkingError                 recorded on the asset: vectorizationFailed + vectorizationError
  anything else (EmbeddingError,
  index / repository errors)    job failure → RetryPolicy (demote to low,
                                re-queue while attempts < max_attempts)
  retries exhausted             extract / vectorize jobs leave the asset at
                                extractionFailed / vectorizationFailed

Jobs run one at a time. Jobs touching the same asset are additionally
serialized by a per-asset lock so a direct process_jobs() call cannot
interleave with the background loop on one asset. A lock lives only while
some job for its asset is running or waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from asset_pipeline.core.exceptions import (
    ChunkingError,
    ExtractionError,
    JobRetryExhausted,
)
from asset_pipeline.models.assets import (
    Asset,
    AssetType,
    VectorizationStatus,
    can_transition,
    derive_status,
)
from asset_pipeline.observability.tracing import traced
from asset_pipeline.processing.chunking import Chunk
from asset_pipeline.processing.image_analysis import analysis_metadata
from asset_pipeline.schemas.extraction import (
    CSVExtraction,
    PDFExtraction,
    dump_extraction,
    load_extraction,
)
from asset_pipeline.workers.context import PipelineContext
from asset_pipeline.workers.jobs import (
    EXTRACT_BEFORE_VECTORIZE,
    VECTORIZE_AFTER_EXTRACT,
    Job,
    JobPriority,
    JobQueue,
    JobType,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# Status written when an extract / vectorize job is dropped after its last attempt
_EXHAUSTED_STATUS: dict[JobType, tuple[VectorizationStatus, str, str]] = {
    JobType.EXTRACT_PDF:   (VectorizationStatus.EXTRACTION_FAILED,    "extractionFailed",    "extractionError"),
    JobType.EXTRACT_CSV:   (VectorizationStatus.EXTRACTION_FAILED,    "extractionFailed",    "extractionError"),
    JobType.VECTORIZE_PDF: (VectorizationStatus.VECTORIZATION_FAILED, "vectorizationFailed", "vectorizationError"),
    JobType.VECTORIZE_CSV: (VectorizationStatus.VECTORIZATION_FAILED, "vectorizationFailed", "vectorizationError"),
}


@dataclass
class JobFailure:
    job_type: str
    asset_id: str
    error:    str


@dataclass
class ProcessResult:
    processed: int = 0
    failed:    int = 0
    failures:  list[JobFailure] = field(default_factory=list)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobProcessor:
    """
    Usage:
        processor = JobProcessor(build_context())
        processor.enqueue("extractPDF", asset.id, "high")

        # deterministic, bounded run (tests, CLI backfill)
        result = await processor.process_jobs(max_jobs=10)
    """

    def __init__(
        self,
        context: PipelineContext,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        auto_start: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = context.settings
        self._ctx           = context
        self._policy        = retry_policy or RetryPolicy.from_settings(cfg)
        self.batch_size     = batch_size or cfg.job_batch_size
        self.poll_interval  = cfg.job_poll_interval_seconds if poll_interval is None else poll_interval
        self._auto_start    = auto_start
        self._clock         = clock
        self._queue         = JobQueue()
        # asset id → (lock, jobs holding or waiting on it); dropped at zero
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event    = asyncio.Event()

        self._handlers: dict[JobType, Callable[[Job], Awaitable[None]]] = {
            JobType.ADD:           self._handle_add,
            JobType.UPDATE:        self._handle_update,
            JobType.REMOVE:        self._handle_remove,
            JobType.EXTRACT_PDF:   self._handle_extract,
            JobType.EXTRACT_CSV:   self._handle_extract,
            JobType.VECTORIZE_PDF: self._handle_vectorize,
            JobType.VECTORIZE_CSV: self._handle_vectorize,
        }

    # ------------------------------------------------------------------
    # Queue API
    # ------------------------------------------------------------------

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(
        self,
        job_type: JobType | str,
        asset_id: str,
        priority: JobPriority | str = JobPriority.NORMAL,
    ) -> Job:
        """Queue a job and start the background loop if it is idle."""
        job = Job(
            type=JobType(job_type),
            asset_id=asset_id,
            priority=JobPriority(priority),
            max_attempts=self._policy.max_attempts,
        )
        self._queue.push(job)
        logger.info(
            "Job queued | job=%s type=%s asset=%s priority=%s queued=%d",
            job.id, job.type.value, asset_id, job.priority.value, len(self._queue),
        )

        if self._auto_start and not self.is_running:
            try:
                self.start()
            except RuntimeError:
                logger.debug("No running event loop; job waits for start() | job=%s", job.id)
        return job

    def get_status(self) -> dict[str, Any]:
        return {
            "running":    self.is_running,
            "queue_size": len(self._queue),
            "jobs":       [job.to_dict() for job in self._queue.snapshot()],
        }

    async def process_all_unvectorized(self) -> int:
        """Queue an `add` at low priority for every asset not yet vectorized."""
        ids = await self._ctx.repository.list_unvectorized_ids()
        for asset_id in ids:
            self.enqueue(JobType.ADD, asset_id, JobPriority.LOW)
        logger.info("Backfill queued | assets=%d", len(ids))
        return len(ids)

    async def revectorize_all(self) -> int:
        """Queue an `update` at low priority for every asset."""
        ids = await self._ctx.repository.list_ids()
        for asset_id in ids:
            self.enqueue(JobType.UPDATE, asset_id, JobPriority.LOW)
        logger.info("Re-vectorization queued | assets=%d", len(ids))
        return len(ids)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loop. Must be called with a running event loop."""
        if self.is_running:
            return
        loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._task = loop.create_task(self._run_loop(), name="job-processor")

    async def stop(self) -> None:
        """Let the in-flight batch finish, then stop the loop."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run_forever(self) -> None:
        """Worker mode: keep polling even when the queue is empty."""
        self._stop_event.clear()
        while not self._stop_event.is_set():
            await self.process_jobs(self.batch_size)
            await self._sleep()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self) -> None:
        logger.info(
            "Job processor started | batch_size=%d interval=%.1fs",
            self.batch_size, self.poll_interval,
        )
        while len(self._queue) and not self._stop_event.is_set():
            await self._sleep()
            if self._stop_event.is_set():
                break
            await self.process_jobs(self.batch_size)
        logger.info("Job processor idle | queued=%d", len(self._queue))

    async def process_jobs(self, max_jobs: Optional[int] = None) -> ProcessResult:
        """
        Process up to max_jobs ready jobs in priority order.
        One job's failure never stops the batch.
        """
        result = ProcessResult()
        limit = self.batch_size if max_jobs is None else max_jobs
        if limit <= 0:
            return result

        batch = self._queue.pop_ready(limit, now=self._clock())
        if not batch:
            return result

        logger.info("Processing batch | jobs=%d remaining=%d", len(batch), len(self._queue))
        for job in batch:
            try:
                await self._run_job(job)
                result.processed += 1
            except Exception as exc:
                result.failed += 1
                result.failures.append(JobFailure(
                    job_type=job.type.value, asset_id=job.asset_id, error=str(exc),
                ))
                await self._on_failure(job, exc)
        return result

    async def _run_job(self, job: Job) -> None:
        lock, users = self._locks.get(job.asset_id, (asyncio.Lock(), 0))
        self._locks[job.asset_id] = (lock, users + 1)
        try:
            async with lock:
                logger.debug(
                    "Job start | job=%s type=%s asset=%s attempt=%d",
                    job.id, job.type.value, job.asset_id, job.attempts + 1,
                )
                await self._handlers[job.type](job)
                logger.info("Job done | job=%s type=%s asset=%s", job.id, job.type.value, job.asset_id)
        finally:
            self._release_lock(job.asset_id)

    def _release_lock(self, asset_id: str) -> None:
        lock, users = self._locks[asset_id]
        if users <= 1:
            del self._locks[asset_id]
        else:
            self._locks[asset_id] = (lock, users - 1)

    async def _on_failure(self, job: Job, exc: Exception) -> None:
        job.attempts  += 1
        job.last_error = str(exc)

        if self._policy.should_retry(job):
            self._policy.prepare_retry(job, now=self._clock())
            self._queue.push(job)
            logger.warning(
                "Job failed, retrying | job=%s type=%s asset=%s attempt=%d/%d error=%s",
                job.id, job.type.value, job.asset_id, job.attempts, job.max_attempts, exc,
            )
            return

        exhausted = JobRetryExhausted(job.id, job.attempts, exc)
        logger.error(
            "Job dropped | type=%s asset=%s error=%s",
            job.type.value, job.asset_id, exhausted,
        )
        await self._record_exhausted(job, exc)

    async def _record_exhausted(self, job: Job, exc: Exception) -> None:
        """Leave the asset in its failed state instead of stuck at pending."""
        failed = _EXHAUSTED_STATUS.get(job.type)
        if failed is None:
            return
        status, flag, error_key = failed
        try:
            asset = await self._load(job)
            if asset is None:
                return
            await self._set_status(asset, status, {flag: True, error_key: str(exc)})
        except Exception as record_exc:
            logger.error(
                "Could not record job failure | type=%s asset=%s error=%s",
                job.type.value, job.asset_id, record_exc,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, job: Job) -> Optional[Asset]:
        asset = await self._ctx.repository.get(job.asset_id)
        if asset is None:
            logger.info(
                "Asset not found, skipping | job=%s type=%s asset=%s",
                job.id, job.type.value, job.asset_id,
            )
        return asset

    async def _patch(self, asset: Asset, patch: dict[str, Any]) -> Asset:
        updated = await self._ctx.repository.update_metadata(asset.id, patch)
        return updated or asset

    async def _set_status(
        self,
        asset: Asset,
        status: VectorizationStatus,
        extra: Optional[dict[str, Any]] = None,
    ) -> Asset:
        current = derive_status(asset.asset_metadata)
        if not can_transition(current, status):
            logger.warning(
                "Unexpected status transition | asset=%s from=%s to=%s",
                asset.id, current.value, status.value,
            )
        return await self._patch(asset, {**(extra or {}), "vectorizationStatus": status.value})

    async def _store_ready(self, job: Job) -> bool:
        if await self._ctx.vector_store.initialize():
            return True
        logger.warning(
            "Vector store disabled, job skipped | type=%s asset=%s",
            job.type.value, job.asset_id,
        )
        return False

    async def _analyze_if_pending(self, asset: Asset, include_failed: bool) -> Asset:
        analyzer = self._ctx.image_analyzer
        meta = asset.asset_metadata or {}
        if analyzer is None or asset.type != AssetType.IMAGE.value or not asset.source_url:
            return asset
        if not (meta.get("aiAnalysisPending") or (include_failed and meta.get("aiAnalysisFailed"))):
            return asset

        try:
            analysis = await analyzer.analyze(asset.source_url)
            hybrid = await analyzer.hybrid_embedding(asset.source_url, analysis)
            patch = analysis_metadata(analysis, hybrid)
            logger.info("Image analysis stored | asset=%s", asset.id)
        except Exception as exc:
            # Vectorization continues with the plain text embedding
            logger.warning("Image analysis failed | asset=%s error=%s", asset.id, exc)
            patch = {
                "aiAnalysisPending": False,
                "aiAnalysisFailed":  True,
                "aiAnalysisError":   str(exc),
            }
        return await self._patch(asset, patch)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    @traced("job.add")
    async def _handle_add(self, job: Job) -> None:
        await self._upsert_asset(job, include_failed=False)

    @traced("job.update")
    async def _handle_update(self, job: Job) -> None:
        await self._upsert_asset(job, include_failed=True)

    async def _upsert_asset(self, job: Job, include_failed: bool) -> None:
        asset = await self._load(job)
        if asset is None or not await self._store_ready(job):
            return

        asset = await self._analyze_if_pending(asset, include_failed)
        store = self._ctx.vector_store
        written = await (store.update_asset(asset) if job.type is JobType.UPDATE else store.add_asset(asset))
        if written:
            await self._patch(asset, {
                "vectorized":          True,
                "vectorLastUpdated":   _now_iso(),
                "vectorizationStatus": VectorizationStatus.VECTORIZED.value,
            })

    @traced("job.remove")
    async def _handle_remove(self, job: Job) -> None:
        # The asset row is usually gone already; vectors are removed by id
        if not await self._store_ready(job):
            return
        await self._ctx.vector_store.remove_asset(job.asset_id)
        removed = await self._ctx.vector_store.remove_document_chunks(job.asset_id)
        logger.info("Asset vectors removed | asset=%s chunks=%d", job.asset_id, removed)

    @traced("job.extract")
    async def _handle_extract(self, job: Job) -> None:
        asset = await self._load(job)
        if asset is None:
            return

        is_pdf = job.type is JobType.EXTRACT_PDF
        extractor = self._ctx.pdf_extractor if is_pdf else self._ctx.csv_extractor
        asset = await self._set_status(asset, VectorizationStatus.EXTRACTION_PENDING)

        try:
            if not asset.source_url:
                raise ExtractionError("Asset has no file URL", source=None)
            extraction = await extractor.extract(asset.source_url)
        except ExtractionError as exc:
            logger.warning("Extraction failed | asset=%s type=%s error=%s", asset.id, job.type.value, exc)
            await self._set_status(asset, VectorizationStatus.EXTRACTION_FAILED, {
                "extractionFailed": True,
                "extractionError":  str(exc),
            })
            return

        await self._set_status(asset, VectorizationStatus.EXTRACTED, {
            "extractedContent": dump_extraction(extraction),
            "extractionFailed": None,
            "extractionError":  None,
        })
        logger.info("Content extracted | asset=%s kind=%s", asset.id, extraction.kind)
        self.enqueue(VECTORIZE_AFTER_EXTRACT[job.type], asset.id, job.priority)

    @traced("job.vectorize")
    async def _handle_vectorize(self, job: Job) -> None:
        asset = await self._load(job)
        if asset is None or not await self._store_ready(job):
            return

        expected = PDFExtraction if job.type is JobType.VECTORIZE_PDF else CSVExtraction
        content = load_extraction((asset.asset_metadata or {}).get("extractedContent"))
        if not isinstance(content, expected):
            logger.info("No extracted content, re-queueing extraction | asset=%s", asset.id)
            self.enqueue(EXTRACT_BEFORE_VECTORIZE[job.type], asset.id, job.priority)
            return

        asset = await self._set_status(asset, VectorizationStatus.VECTORIZATION_PENDING)

        try:
            chunks = self._chunk(content, asset.id)
        except ChunkingError as exc:
            logger.warning("Chunking failed | asset=%s error=%s", asset.id, exc)
            await self._set_status(asset, VectorizationStatus.VECTORIZATION_FAILED, {
                "vectorizationFailed": True,
                "vectorizationError":  str(exc),
            })
            return

        store = self._ctx.vector_store
        await store.remove_document_chunks(asset.id)
        await store.add_asset(asset)
        written = await store.add_document_chunks(chunks, asset)

        await self._set_status(asset, VectorizationStatus.VECTORIZED, {
            "vectorized":          True,
            "vectorLastUpdated":   _now_iso(),
            "chunkCount":          written,
            "vectorizationFailed": None,
            "vectorizationError":  None,
        })
        logger.info("Asset vectorized | asset=%s chunks=%d", asset.id, written)

    def _chunk(self, content: PDFExtraction | CSVExtraction, asset_id: str) -> list[Chunk]:
        if isinstance(content, PDFExtraction):
            return self._ctx.document_chunker.chunk(content, asset_id)
        return self._ctx.csv_chunker.chunk(content, asset_id)
