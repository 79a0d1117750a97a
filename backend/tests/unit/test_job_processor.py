"""
Unit Tests — JobProcessor
═════════════════════════

Coverage targets:
  ✅ extractCSV → vectorizeCSV end to end (metadata + chunk vectors)
  ✅ extractPDF → vectorizePDF end to end
  ✅ missing asset → silent no-op
  ✅ vectorize without extracted content → extraction re-queued
  ✅ ExtractionError / ChunkingError recorded on the asset, not retried
  ✅ EmbeddingError → retried at low priority, dropped after max attempts
  ✅ exhausted extract / vectorize jobs leave the asset in its failed state
  ✅ process_jobs(0) processes nothing; per-asset locks are released
  ✅ one failing job never stops the batch
  ✅ remove deletes asset and chunk vectors
  ✅ image analysis: pending, failure fallback, update re-analyses failures
  ✅ disabled vector store → jobs skipped without writes
  ✅ backfill / re-vectorize enqueueing, status snapshot, background loop
"""

from __future__ import annotations

import asyncio

import pytest

from asset_pipeline.processing.chunking import Chunk
from asset_pipeline.processing.image_analysis import HybridEmbedding, ImageAnalysis
from asset_pipeline.processing.pdf_extractor import PDFExtractor
from asset_pipeline.schemas.extraction import (
    ColumnStats,
    CSVContent,
    CSVExtraction,
    CSVMetadata,
    dump_extraction,
)
from asset_pipeline.workers.context import PipelineContext
from asset_pipeline.workers.jobs import JobPriority, JobType, RetryPolicy
from asset_pipeline.workers.processor import JobProcessor

NOW = 100.0


@pytest.fixture
def processor(pipeline_context) -> JobProcessor:
    return JobProcessor(
        pipeline_context,
        retry_policy=RetryPolicy(max_attempts=3, jitter=False),
        auto_start=False,
        clock=lambda: NOW,
    )


def _meta(repository, asset_id: str) -> dict:
    return repository.assets[asset_id].asset_metadata


class FakeImageAnalyzer:

    def __init__(self, dimension: int, fail: bool = False) -> None:
        self.dimension = dimension
        self.fail = fail
        self.calls: list[str] = []

    async def analyze(self, image_url: str) -> ImageAnalysis:
        self.calls.append(image_url)
        if self.fail:
            raise RuntimeError("vision model timed out")
        return ImageAnalysis(description="a red car", objects=["car"], colors=["#ff0000"])

    async def hybrid_embedding(self, image_url: str, analysis: ImageAnalysis) -> HybridEmbedding:
        return HybridEmbedding(
            embedding=[0.3] * self.dimension,
            combined_description="red car #ff0000",
            visual_description="glossy red car",
        )


# ─────────────────────────────────────────────────────────────────────────────
# Extract → vectorize
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.jobs
class TestExtractAndVectorize:

    async def test_csv_end_to_end(self, processor, repository, fake_index, make_asset, people_csv):
        asset = repository.add(make_asset(name="people.csv", mime_type="text/csv", url=people_csv))

        processor.enqueue("extractCSV", asset.id, "high")
        first = await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert first.processed == 1
        assert meta["vectorizationStatus"] == "extracted"
        assert meta["extractedContent"]["kind"] == "csv"
        assert meta["extractedContent"]["metadata"]["rowCount"] == 3
        queued = processor.queue.snapshot()
        assert [(j.type, j.priority) for j in queued] == [(JobType.VECTORIZE_CSV, JobPriority.HIGH)]

        second = await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert second.processed == 1
        assert meta["vectorized"] is True
        assert meta["vectorizationStatus"] == "vectorized"
        assert meta["chunkCount"] == 12
        assert "vectorLastUpdated" in meta
        assert fake_index.ids_for_asset(asset.id) == {asset.id} | {
            f"{asset.id}_chunk_{i}" for i in range(12)
        }
        assert len(processor.queue) == 0

    async def test_pdf_end_to_end(self, processor, repository, fake_index, make_asset, blank_pdf, monkeypatch):
        text = "EXECUTIVE SUMMARY\nThis report covers the quarterly results for the whole team."
        monkeypatch.setattr(PDFExtractor, "_read", staticmethod(lambda path: (text, 1, {})))
        asset = repository.add(make_asset(name="report.pdf", mime_type="application/pdf", url=blank_pdf))

        processor.enqueue(JobType.EXTRACT_PDF, asset.id)
        await processor.process_jobs()
        await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert meta["vectorizationStatus"] == "vectorized"
        assert meta["chunkCount"] >= 2
        assert f"{asset.id}_chunk_0" in fake_index.records

    async def test_revectorize_replaces_old_chunks(
        self, processor, repository, vector_store, fake_index, make_asset, people_csv,
    ):
        asset = repository.add(make_asset(name="people.csv", url=people_csv))
        stale = [Chunk(id=f"old_{i}", asset_id=asset.id, type="content", content="stale") for i in range(20)]
        await vector_store.add_document_chunks(stale, asset)

        processor.enqueue("extractCSV", asset.id)
        await processor.process_jobs()
        await processor.process_jobs()

        chunk_ids = {i for i in fake_index.ids_for_asset(asset.id) if "_chunk_" in i}
        assert len(chunk_ids) == 12

    async def test_vectorize_without_content_requeues_extract(self, processor, repository, make_asset):
        asset = repository.add(make_asset(name="report.pdf"))

        processor.enqueue("vectorizePDF", asset.id, "normal")
        await processor.process_jobs()

        assert [j.type for j in processor.queue.snapshot()] == [JobType.EXTRACT_PDF]
        assert "vectorized" not in _meta(repository, asset.id)

    async def test_vectorize_with_wrong_content_kind_requeues_extract(self, processor, repository, make_asset):
        csv = CSVExtraction(
            metadata=CSVMetadata(
                file_name="x.csv", file_size=1, row_count=0, column_count=1,
                headers=["a"], column_stats={"a": ColumnStats()},
            ),
            content=CSVContent(headers=["a"]),
        )
        asset = repository.add(make_asset(metadata={"extractedContent": dump_extraction(csv)}))

        processor.enqueue("vectorizePDF", asset.id)
        await processor.process_jobs()

        assert [j.type for j in processor.queue.snapshot()] == [JobType.EXTRACT_PDF]


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.jobs
class TestFailures:

    async def test_missing_asset_is_noop(self, processor, repository, fake_index):
        processor.enqueue("add", "ghost")
        processor.enqueue("extractPDF", "ghost")
        processor.enqueue("vectorizeCSV", "ghost")

        result = await processor.process_jobs()

        assert result.processed == 3
        assert result.failed == 0
        assert repository.patches == []
        assert fake_index.records == {}
        assert len(processor.queue) == 0

    async def test_extraction_error_recorded(self, processor, repository, make_asset, tmp_path):
        asset = repository.add(make_asset(name="gone.csv", url=str(tmp_path / "gone.csv")))

        processor.enqueue("extractCSV", asset.id)
        result = await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert result.failed == 0
        assert meta["extractionFailed"] is True
        assert "not found" in meta["extractionError"]
        assert meta["vectorizationStatus"] == "extractionFailed"
        assert len(processor.queue) == 0

    async def test_asset_without_url(self, processor, repository, make_asset):
        asset = repository.add(make_asset(name="nowhere.pdf"))

        processor.enqueue("extractPDF", asset.id)
        await processor.process_jobs()

        assert _meta(repository, asset.id)["extractionFailed"] is True

    async def test_chunking_error_recorded(self, processor, repository, make_asset):
        broken = CSVExtraction(
            metadata=CSVMetadata(
                file_name="x.csv", file_size=10, row_count=1, column_count=2,
                headers=["a", "b"], column_stats={"a": ColumnStats()},
            ),
            content=CSVContent(headers=["a", "b"]),
        )
        asset = repository.add(make_asset(metadata={"extractedContent": dump_extraction(broken)}))

        processor.enqueue("vectorizeCSV", asset.id)
        result = await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert result.failed == 0
        assert meta["vectorizationFailed"] is True
        assert meta["vectorizationStatus"] == "vectorizationFailed"
        assert "vectorized" not in meta

    async def test_successful_extraction_clears_previous_failure(self, processor, repository, make_asset, people_csv):
        asset = repository.add(make_asset(
            url=people_csv, metadata={"extractionFailed": True, "extractionError": "old"},
        ))

        processor.enqueue("extractCSV", asset.id)
        await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert "extractionFailed" not in meta
        assert "extractionError" not in meta

    async def test_embedding_error_retried_then_dropped(
        self, processor, repository, fake_embedder, make_asset, embedding_error,
    ):
        asset = repository.add(make_asset(name="logo"))
        fake_embedder.fail_with = embedding_error

        processor.enqueue("add", asset.id, "high")
        first = await processor.process_jobs()

        assert first.failed == 1
        assert first.failures[0].asset_id == asset.id
        retried = processor.queue.snapshot()
        assert len(retried) == 1
        assert retried[0].attempts == 1
        assert retried[0].priority is JobPriority.LOW
        assert "embedding service unavailable" in retried[0].last_error

        await processor.process_jobs()
        await processor.process_jobs()

        assert len(processor.queue) == 0
        assert "vectorized" not in _meta(repository, asset.id)

    async def test_vectorize_retries_exhausted_recorded_on_asset(
        self, processor, repository, fake_embedder, make_asset, people_csv, embedding_error,
    ):
        asset = repository.add(make_asset(name="people.csv", url=people_csv))
        processor.enqueue("extractCSV", asset.id)
        await processor.process_jobs()
        fake_embedder.fail_with = embedding_error

        for _ in range(3):
            result = await processor.process_jobs()
            assert result.failed == 1

        meta = _meta(repository, asset.id)
        assert len(processor.queue) == 0
        assert meta["vectorizationStatus"] == "vectorizationFailed"
        assert meta["vectorizationFailed"] is True
        assert "embedding service unavailable" in meta["vectorizationError"]
        assert "vectorized" not in meta

    async def test_extract_retries_exhausted_recorded_on_asset(
        self, processor, pipeline_context, repository, make_asset, people_csv, monkeypatch,
    ):
        async def _extract(source):
            raise OSError("disk read failed")

        monkeypatch.setattr(pipeline_context.csv_extractor, "extract", _extract)
        asset = repository.add(make_asset(name="people.csv", url=people_csv))

        processor.enqueue("extractCSV", asset.id)
        for _ in range(3):
            await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert len(processor.queue) == 0
        assert meta["vectorizationStatus"] == "extractionFailed"
        assert meta["extractionFailed"] is True
        assert meta["extractionError"] == "disk read failed"

    async def test_unrecordable_exhaustion_is_logged(self, processor, repository, monkeypatch, caplog):
        async def _get(asset_id):
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(repository, "get", _get)
        processor.enqueue("vectorizePDF", "a1")

        for _ in range(3):
            result = await processor.process_jobs()
            assert result.failed == 1

        assert len(processor.queue) == 0
        assert "Could not record job failure" in caplog.text

    async def test_retry_succeeds_after_transient_error(
        self, processor, repository, fake_embedder, make_asset, embedding_error,
    ):
        asset = repository.add(make_asset(name="logo"))
        fake_embedder.fail_with = embedding_error

        processor.enqueue("add", asset.id)
        await processor.process_jobs()
        fake_embedder.fail_with = None
        result = await processor.process_jobs()

        assert result.processed == 1
        assert _meta(repository, asset.id)["vectorized"] is True

    async def test_failure_does_not_stop_batch(self, processor, repository, make_asset, monkeypatch):
        good = repository.add(make_asset(name="good"))
        original_get = repository.get

        async def _get(asset_id):
            if asset_id == "bad":
                raise ConnectionError("database unavailable")
            return await original_get(asset_id)

        monkeypatch.setattr(repository, "get", _get)
        processor.enqueue("add", "bad")
        processor.enqueue("add", good.id)

        result = await processor.process_jobs()

        assert result.processed == 1
        assert result.failed == 1
        assert result.failures[0].asset_id == "bad"
        assert _meta(repository, good.id)["vectorized"] is True


# ─────────────────────────────────────────────────────────────────────────────
# Asset-level jobs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.jobs
class TestAssetJobs:

    async def test_add(self, processor, repository, fake_index, make_asset):
        asset = repository.add(make_asset(name="banner", tags=["sale"]))

        processor.enqueue("add", asset.id)
        await processor.process_jobs()

        meta = _meta(repository, asset.id)
        assert meta["vectorized"] is True
        assert meta["vectorizationStatus"] == "vectorized"
        assert asset.id in fake_index.records

    async def test_update(self, processor, repository, fake_index, make_asset):
        asset = repository.add(make_asset(name="banner"))
        processor.enqueue("add", asset.id)
        await processor.process_jobs()

        asset.name = "spring banner"
        processor.enqueue("update", asset.id)
        await processor.process_jobs()

        assert fake_index.records[asset.id].metadata["name"] == "spring banner"

    async def test_remove(self, processor, vector_store, fake_index, make_asset):
        parent = make_asset(id="deleted")
        chunks = [Chunk(id=f"deleted_part_{i}", asset_id="deleted", type="content", content="x") for i in range(3)]
        await vector_store.add_document_with_chunks(parent, chunks)
        await vector_store.add_asset(make_asset(id="kept"))

        processor.enqueue("remove", "deleted")
        result = await processor.process_jobs()

        assert result.processed == 1
        assert fake_index.ids_for_asset("deleted") == set()
        assert "kept" in fake_index.records

    async def test_disabled_store_skips_without_writes(self, repository, disabled_store, make_asset):
        context = PipelineContext(repository=repository, vector_store=disabled_store)
        processor = JobProcessor(context, auto_start=False)
        asset = repository.add(make_asset(name="banner"))

        for job_type in ("add", "update", "remove", "vectorizeCSV"):
            processor.enqueue(job_type, asset.id)
        result = await processor.process_jobs()

        assert result.processed == 4
        assert repository.patches == []
        assert len(processor.queue) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Image analysis
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.jobs
class TestImageAnalysis:

    def _processor(self, repository, vector_store, analyzer) -> JobProcessor:
        context = PipelineContext(
            repository=repository, vector_store=vector_store, image_analyzer=analyzer,
        )
        return JobProcessor(context, auto_start=False)

    def _image(self, make_asset, **metadata):
        return make_asset(
            name="car.png", type="image", mime_type="image/png",
            url="https://cdn.example.com/car.png", metadata=metadata,
        )

    async def test_pending_analysis_runs_before_vectorizing(
        self, repository, vector_store, fake_index, make_asset,
    ):
        analyzer = FakeImageAnalyzer(fake_index.dimension)
        processor = self._processor(repository, vector_store, analyzer)
        image = repository.add(self._image(make_asset, aiAnalysisPending=True))

        processor.enqueue("add", image.id)
        await processor.process_jobs()

        meta = _meta(repository, image.id)
        assert analyzer.calls == ["https://cdn.example.com/car.png"]
        assert meta["aiDescription"] == "a red car"
        assert meta["aiAnalysisPending"] is False
        assert meta["vectorized"] is True
        assert fake_index.records[image.id].vector == [0.3] * fake_index.dimension
        assert "a red car" in fake_index.records[image.id].metadata["searchableText"]

    async def test_analysis_failure_still_vectorizes(
        self, repository, vector_store, fake_index, make_asset,
    ):
        analyzer = FakeImageAnalyzer(fake_index.dimension, fail=True)
        processor = self._processor(repository, vector_store, analyzer)
        image = repository.add(self._image(make_asset, aiAnalysisPending=True))

        processor.enqueue("add", image.id)
        result = await processor.process_jobs()

        meta = _meta(repository, image.id)
        assert result.failed == 0
        assert meta["aiAnalysisFailed"] is True
        assert meta["aiAnalysisPending"] is False
        assert "timed out" in meta["aiAnalysisError"]
        assert meta["vectorized"] is True
        assert image.id in fake_index.records

    async def test_add_skips_failed_update_retries(self, repository, vector_store, fake_index, make_asset):
        analyzer = FakeImageAnalyzer(fake_index.dimension)
        processor = self._processor(repository, vector_store, analyzer)
        image = repository.add(self._image(make_asset, aiAnalysisFailed=True))

        processor.enqueue("add", image.id)
        await processor.process_jobs()
        assert analyzer.calls == []

        processor.enqueue("update", image.id)
        await processor.process_jobs()
        assert len(analyzer.calls) == 1
        assert _meta(repository, image.id)["aiAnalysisFailed"] is False

    async def test_documents_never_analysed(self, repository, vector_store, fake_index, make_asset):
        analyzer = FakeImageAnalyzer(fake_index.dimension)
        processor = self._processor(repository, vector_store, analyzer)
        doc = repository.add(make_asset(name="notes", url="https://cdn.example.com/n.txt",
                                        metadata={"aiAnalysisPending": True}))

        processor.enqueue("add", doc.id)
        await processor.process_jobs()

        assert analyzer.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Bulk enqueue, status, loop
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.jobs
class TestQueueControl:

    async def test_process_all_unvectorized(self, processor, repository, make_asset):
        repository.add(make_asset(id="a1"))
        repository.add(make_asset(id="a2"))
        repository.add(make_asset(id="done", metadata={"vectorized": True}))

        assert await processor.process_all_unvectorized() == 2
        jobs = processor.queue.snapshot()
        assert {j.asset_id for j in jobs} == {"a1", "a2"}
        assert all(j.type is JobType.ADD and j.priority is JobPriority.LOW for j in jobs)

    async def test_revectorize_all(self, processor, repository, make_asset):
        for i in range(3):
            repository.add(make_asset(id=f"a{i}", metadata={"vectorized": True}))

        assert await processor.revectorize_all() == 3
        assert {j.type for j in processor.queue.snapshot()} == {JobType.UPDATE}

    def test_get_status(self, processor):
        job = processor.enqueue("extractPDF", "a1", "high")
        status = processor.get_status()

        assert status["running"] is False
        assert status["queue_size"] == 1
        assert status["jobs"][0]["id"] == job.id
        assert status["jobs"][0]["type"] == "extractPDF"
        assert status["jobs"][0]["priority"] == "high"

    def test_enqueue_rejects_unknown_type(self, processor):
        with pytest.raises(ValueError):
            processor.enqueue("reindex", "a1")

    def test_enqueue_without_event_loop(self, pipeline_context):
        processor = JobProcessor(pipeline_context, auto_start=True)
        processor.enqueue("add", "a1")
        assert processor.is_running is False
        assert len(processor.queue) == 1

    async def test_priority_order_across_batch(self, processor, repository, make_asset):
        for asset_id in ("low", "normal", "high"):
            repository.add(make_asset(id=asset_id))
        processor.enqueue("add", "low", "low")
        processor.enqueue("add", "normal", "normal")
        processor.enqueue("add", "high", "high")

        await processor.process_jobs(max_jobs=1)

        assert "vectorized" in _meta(repository, "high")
        assert "vectorized" not in _meta(repository, "normal")
        assert [j.asset_id for j in processor.queue.snapshot()] == ["normal", "low"]

    async def test_zero_bound_processes_nothing(self, processor, repository, make_asset):
        for i in range(3):
            repository.add(make_asset(id=f"a{i}"))
            processor.enqueue("add", f"a{i}")

        result = await processor.process_jobs(0)

        assert (result.processed, result.failed) == (0, 0)
        assert len(processor.queue) == 3
        assert repository.patches == []

    async def test_asset_locks_released_after_jobs(self, processor, repository, make_asset):
        repository.add(make_asset(id="a1"))
        processor.enqueue("add", "a1")
        processor.enqueue("update", "a1")

        first, second = await asyncio.gather(processor.process_jobs(1), processor.process_jobs(1))

        assert first.processed + second.processed == 2
        assert _meta(repository, "a1")["vectorized"] is True
        assert processor._locks == {}

    async def test_asset_lock_released_after_failure(
        self, processor, repository, fake_embedder, make_asset, embedding_error,
    ):
        repository.add(make_asset(id="a1"))
        fake_embedder.fail_with = embedding_error

        processor.enqueue("add", "a1")
        await processor.process_jobs()

        assert processor._locks == {}

    async def test_background_loop_drains_queue(self, pipeline_context, repository, make_asset):
        processor = JobProcessor(pipeline_context, poll_interval=0.01, auto_start=True)
        asset = repository.add(make_asset(name="banner"))

        processor.enqueue("add", asset.id)
        assert processor.is_running is True

        for _ in range(200):
            if not processor.is_running:
                break
            await asyncio.sleep(0.01)

        assert processor.is_running is False
        assert _meta(repository, asset.id)["vectorized"] is True

    async def test_stop(self, pipeline_context):
        processor = JobProcessor(pipeline_context, poll_interval=10.0, auto_start=True)
        processor.enqueue("add", "ghost")

        await asyncio.wait_for(processor.stop(), timeout=2.0)

        assert processor.is_running is False
        assert len(processor.queue) == 1
