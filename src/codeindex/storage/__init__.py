"""
Vector storage backends for codeindex.

Provides:
- Local HNSW index (hnswlib)
- Qdrant collections (server or embedded)
"""

from codeindex.storage.vector_store import (
    SearchResult,
    VectorRecord,
    VectorStore,
    create_vector_store,
)

__all__ = [
    "SearchResult",
    "VectorRecord",
    "VectorStore",
    "create_vector_store",
]
