from asset_pipeline.vectorstore.base import QueryResult, SearchResult, VectorIndexBase, VectorRecord
from asset_pipeline.vectorstore.factory import get_vector_index
from asset_pipeline.vectorstore.service import VectorStoreService

__all__ = [
    "VectorIndexBase",
    "VectorRecord",
    "QueryResult",
    "SearchResult",
    "VectorStoreService",
    "get_vector_index",
]
