"""
Unit Tests — Asset model, status lifecycle, metadata merging
════════════════════════════════════════════════════════════

Coverage targets:
  ✅ derive_status from explicit status and from legacy flags
  ✅ allowed / forbidden status transitions
  ✅ Asset.is_csv / is_pdf / source_url
  ✅ merge_metadata: overwrite, delete on None, no mutation
  ✅ extraction payload round trip and stale payloads
"""

from __future__ import annotations

import pytest

from asset_pipeline.models.assets import VectorizationStatus as S
from asset_pipeline.models.assets import can_transition, derive_status
from asset_pipeline.repositories.assets import merge_metadata
from asset_pipeline.schemas.extraction import (
    PDFExtraction,
    PDFSection,
    dump_extraction,
    load_extraction,
)


@pytest.mark.unit
class TestVectorizationStatus:

    @pytest.mark.parametrize("metadata, expected", [
        (None,                                          S.NOT_VECTORIZED),
        ({},                                            S.NOT_VECTORIZED),
        ({"vectorizationStatus": "extracted"},          S.EXTRACTED),
        ({"vectorizationStatus": "bogus"},              S.NOT_VECTORIZED),
        ({"vectorized": True},                          S.VECTORIZED),
        ({"extractedContent": {"kind": "csv"}},         S.EXTRACTED),
        ({"extractionFailed": True},                    S.EXTRACTION_FAILED),
        ({"vectorizationFailed": True, "vectorized": True}, S.VECTORIZATION_FAILED),
    ])
    def test_derive_status(self, metadata, expected):
        assert derive_status(metadata) is expected

    @pytest.mark.parametrize("current, target", [
        (S.NOT_VECTORIZED,        S.EXTRACTION_PENDING),
        (S.EXTRACTION_PENDING,    S.EXTRACTED),
        (S.EXTRACTION_PENDING,    S.EXTRACTION_FAILED),
        (S.EXTRACTED,             S.VECTORIZATION_PENDING),
        (S.VECTORIZATION_PENDING, S.VECTORIZED),
        (S.VECTORIZATION_PENDING, S.VECTORIZATION_FAILED),
        (S.EXTRACTION_FAILED,     S.EXTRACTION_PENDING),
        (S.VECTORIZED,            S.VECTORIZED),
    ])
    def test_allowed_transitions(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize("current, target", [
        (S.NOT_VECTORIZED,     S.VECTORIZED),
        (S.EXTRACTION_PENDING, S.VECTORIZED),
        (S.EXTRACTION_FAILED,  S.VECTORIZED),
        (S.EXTRACTED,          S.EXTRACTION_FAILED),
    ])
    def test_forbidden_transitions(self, current, target):
        assert can_transition(current, target) is False


@pytest.mark.unit
class TestAsset:

    def test_is_csv_by_mime_or_name(self, make_asset):
        assert make_asset(mime_type="text/csv").is_csv
        assert make_asset(name="Export.CSV").is_csv
        assert not make_asset(name="report.pdf", mime_type="application/pdf").is_csv

    def test_is_pdf(self, make_asset):
        assert make_asset(mime_type="application/pdf").is_pdf
        assert not make_asset(mime_type="text/csv").is_pdf

    def test_source_url_prefers_cdn(self, make_asset):
        asset = make_asset(url="https://origin.example.com/a.png")
        assert asset.source_url == "https://origin.example.com/a.png"

        asset.cloudinary_url = "https://cdn.example.com/a.png"
        assert asset.source_url == "https://cdn.example.com/a.png"


@pytest.mark.unit
class TestMetadata:

    def test_merge_metadata(self):
        current = {"a": 1, "b": 2, "keep": True}
        merged = merge_metadata(current, {"a": 10, "b": None, "c": 3})

        assert merged == {"a": 10, "keep": True, "c": 3}
        assert current == {"a": 1, "b": 2, "keep": True}

    def test_merge_into_empty(self):
        assert merge_metadata(None, {"x": 1}) == {"x": 1}

    def test_extraction_round_trip(self):
        doc = PDFExtraction(
            text="hello world", page_count=2, word_count=2,
            sections=[PDFSection(title="Intro", content="hello world")],
        )
        payload = dump_extraction(doc)

        assert payload["pageCount"] == 2
        assert payload["wordCount"] == 2
        assert payload["kind"] == "pdf"
        assert load_extraction(payload) == doc

    @pytest.mark.parametrize("payload", [None, {}, {"kind": "pdf"}, {"kind": "xlsx", "text": "x"}])
    def test_stale_payload_is_none(self, payload):
        assert load_extraction(payload) is None
