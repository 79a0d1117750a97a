"""
Unit Tests — PineconeVectorIndex and get_vector_index
═════════════════════════════════════════════════════

Strategy:
  The Pinecone client is replaced with MagicMock; no network calls.

Coverage targets:
  ✅ upsert ≤ 100 per request, delete ≤ 1000 per request
  ✅ query clamps top_k, passes filters, maps matches
  ✅ fetch / describe mapping
  ✅ connect: existing index, create + wait, missing key, client errors
  ✅ factory: disabled without API key
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from pinecone.exceptions import PineconeException

from asset_pipeline.core.config import Settings
from asset_pipeline.core.exceptions import VectorStoreUnavailable
from asset_pipeline.vectorstore.base import VectorRecord
from asset_pipeline.vectorstore.factory import get_vector_index
from asset_pipeline.vectorstore.pinecone_store import PineconeVectorIndex

PINECONE_CLS = "asset_pipeline.vectorstore.pinecone_store.Pinecone"


@pytest.fixture
def mock_index() -> MagicMock:
    return MagicMock(name="pinecone.Index")


@pytest.fixture
def store(mock_index) -> PineconeVectorIndex:
    return PineconeVectorIndex(mock_index, dimension=4, name="canva-assets")


@pytest.fixture
def pinecone_settings() -> Settings:
    return Settings(
        pinecone_api_key="pk-test",
        pinecone_index_name="canva-assets",
        embedding_dimensions=4,
        pinecone_ready_timeout_seconds=5,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Data operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.vectorstore
class TestPineconeOperations:

    async def test_upsert_batches(self, store, mock_index):
        records = [VectorRecord(id=f"r{i}", vector=[0.1] * 4, metadata={"i": i}) for i in range(250)]

        assert await store.upsert(records) == 250

        sizes = [len(c.kwargs["vectors"]) for c in mock_index.upsert.call_args_list]
        assert sizes == [100, 100, 50]
        first = mock_index.upsert.call_args_list[0].kwargs["vectors"][0]
        assert first == {"id": "r0", "values": [0.1] * 4, "metadata": {"i": 0}}

    async def test_query_maps_matches(self, store, mock_index):
        mock_index.query.return_value = SimpleNamespace(matches=[
            SimpleNamespace(id="a1_chunk_0", score=0.91, metadata={"content": "hello", "assetId": "a1"}),
            SimpleNamespace(id="a2", score=None, metadata=None),
        ])

        results = await store.query([0.1] * 4, top_k=5000, filter={"userId": {"$eq": "u1"}})

        kwargs = mock_index.query.call_args.kwargs
        assert kwargs["top_k"] == 1000
        assert kwargs["filter"] == {"userId": {"$eq": "u1"}}
        assert kwargs["include_metadata"] is True
        assert results[0].id == "a1_chunk_0"
        assert results[0].text == "hello"
        assert results[1].score == 0.0
        assert results[1].metadata == {}

    async def test_query_without_filter(self, store, mock_index):
        mock_index.query.return_value = SimpleNamespace(matches=[])
        assert await store.query([0.1] * 4) == []
        assert "filter" not in mock_index.query.call_args.kwargs

    async def test_delete_batches(self, store, mock_index):
        await store.delete([f"id{i}" for i in range(2500)])
        assert [len(c.kwargs["ids"]) for c in mock_index.delete.call_args_list] == [1000, 1000, 500]

    async def test_delete_nothing(self, store, mock_index):
        await store.delete([])
        mock_index.delete.assert_not_called()

    async def test_fetch(self, store, mock_index):
        mock_index.fetch.return_value = SimpleNamespace(vectors={
            "a1": SimpleNamespace(values=[1.0, 0.0, 0.0, 0.0], metadata={"name": "logo"}),
        })

        fetched = await store.fetch(["a1", "missing"])

        assert list(fetched) == ["a1"]
        assert fetched["a1"].vector == [1.0, 0.0, 0.0, 0.0]
        assert fetched["a1"].metadata == {"name": "logo"}

    async def test_describe(self, store, mock_index):
        mock_index.describe_index_stats.return_value = SimpleNamespace(
            total_vector_count=42, dimension=4, index_fullness=0.01,
        )
        stats = await store.describe()
        assert (stats.total_vectors, stats.dimension, stats.index_fullness) == (42, 4, 0.01)


# ─────────────────────────────────────────────────────────────────────────────
# Provisioning
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.vectorstore
class TestPineconeConnect:

    def test_existing_index(self, pinecone_settings):
        with patch(PINECONE_CLS) as pinecone_cls:
            pc = pinecone_cls.return_value
            pc.list_indexes.return_value.names.return_value = ["canva-assets"]

            index = PineconeVectorIndex.connect(pinecone_settings)

        pinecone_cls.assert_called_once_with(api_key="pk-test")
        pc.create_index.assert_not_called()
        assert index.dimension == 4
        assert index.name == "canva-assets"

    def test_creates_missing_index(self, pinecone_settings):
        with patch(PINECONE_CLS) as pinecone_cls:
            pc = pinecone_cls.return_value
            pc.list_indexes.return_value.names.return_value = []

            PineconeVectorIndex.connect(pinecone_settings)

        create = pc.create_index.call_args.kwargs
        assert create["name"] == "canva-assets"
        assert create["dimension"] == 4
        assert create["metric"] == "cosine"
        pc.Index.return_value.describe_index_stats.assert_called()

    def test_missing_api_key(self):
        with pytest.raises(VectorStoreUnavailable, match="PINECONE_API_KEY"):
            PineconeVectorIndex.connect(Settings(pinecone_api_key=""))

    def test_client_error_is_unavailable(self, pinecone_settings):
        with patch(PINECONE_CLS) as pinecone_cls:
            pinecone_cls.return_value.list_indexes.side_effect = PineconeException("forbidden")

            with pytest.raises(VectorStoreUnavailable, match="forbidden"):
                PineconeVectorIndex.connect(pinecone_settings)


@pytest.mark.unit
@pytest.mark.vectorstore
class TestFactory:

    def test_disabled_without_key(self):
        assert get_vector_index(Settings(pinecone_api_key="")) is None

    def test_connects_with_key(self, pinecone_settings):
        sentinel = MagicMock(name="index")
        with patch.object(PineconeVectorIndex, "connect", return_value=sentinel) as connect:
            assert get_vector_index(pinecone_settings) is sentinel
        connect.assert_called_once_with(pinecone_settings)
