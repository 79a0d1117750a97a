"""
Unit Tests — @traced and span attributes
════════════════════════════════════════

Coverage targets:
  ✅ results pass through, exceptions re-raised and logged
  ✅ job / asset identifiers extracted as span attributes
  ✅ init() is a no-op when OTEL is disabled
"""

from __future__ import annotations

import logging

import pytest

from asset_pipeline.observability import tracing
from asset_pipeline.observability.tracing import TracingConfig, span_attributes, traced
from asset_pipeline.workers.jobs import Job, JobType


@traced("test.double")
async def _double(x: int) -> int:
    return x * 2


@traced("test.fail")
async def _fail(job: Job) -> None:
    raise RuntimeError("boom")


@pytest.mark.unit
class TestTraced:

    async def test_passes_result_through(self):
        assert await _double(21) == 42

    async def test_error_logged_and_reraised(self, caplog):
        job = Job(type=JobType.ADD, asset_id="a1")

        with caplog.at_level(logging.ERROR, logger="asset_pipeline.observability.tracing"):
            with pytest.raises(RuntimeError, match="boom"):
                await _fail(job)

        assert "span=test.fail asset=a1" in caplog.text

    def test_wraps_preserves_name(self):
        assert _double.__name__ == "_double"


@pytest.mark.unit
class TestSpanAttributes:

    def test_job_attributes(self):
        job = Job(type=JobType.EXTRACT_PDF, asset_id="a1", attempts=1)
        attrs = span_attributes((object(), job), {})

        assert attrs == {
            "job.id":      job.id,
            "job.type":    "extractPDF",
            "asset.id":    "a1",
            "job.attempt": 2,
        }

    def test_asset_attributes(self, make_asset):
        asset = make_asset(id="a9", type="image")
        attrs = span_attributes((), {"asset": asset})
        assert attrs == {"asset.id": "a9", "asset.type": "image", "user.id": "user-1"}

    def test_plain_arguments(self):
        assert span_attributes(("query", 3), {"limit": 5}) == {}


@pytest.mark.unit
class TestTracingConfig:

    def test_init_without_otel_keeps_logging_only(self):
        TracingConfig.reset()
        TracingConfig.init()
        TracingConfig.init()

        assert tracing._tracer is None
        TracingConfig.reset()
