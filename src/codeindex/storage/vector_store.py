"""
Vector store interface and shared types.

Every backend stores one record per chunk, keyed by chunk id, with the
chunk's file path, line range and text as payload.
"""

from __future__ import annotations

import functools
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, TypeVar

import numpy as np
import structlog

from codeindex.config import VectorStoreBackend
from codeindex.errors import ConfigurationError, VectorStoreError

if TYPE_CHECKING:
    from codeindex.config import Config

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


@dataclass
class VectorRecord:
    """One chunk's vector and payload."""

    chunk_id: str
    vector: np.ndarray
    file_path: str
    start_line: int
    end_line: int
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "content": self.content,
            "start_line": self.start_line,
            "end_line": self.end_line,
            **self.metadata,
        }


@dataclass
class SearchResult:
    """Result from vector search."""

    chunk_id: str
    score: float
    payload: dict[str, Any]

    @property
    def file_path(self) -> str:
        return self.payload.get("file_path", "")

    @property
    def start_line(self) -> int:
        return int(self.payload.get("start_line", 0))

    @property
    def end_line(self) -> int:
        return int(self.payload.get("end_line", 0))

    @property
    def content(self) -> str:
        return self.payload.get("content", "")


def collection_name_for(root: Path) -> str:
    """Collection name derived from the workspace path."""
    digest = hashlib.sha256(str(Path(root).resolve()).encode("utf-8")).hexdigest()
    return f"ws_{digest[:16]}"


def normalize_prefix(directory_prefix: str | None) -> str | None:
    """Normalize a directory filter; None means no filter."""
    if directory_prefix is None:
        return None
    prefix = Path(directory_prefix).as_posix().strip()
    while prefix.startswith("./"):
        prefix = prefix[2:]
    prefix = prefix.strip("/")
    if prefix in ("", "."):
        return None
    return prefix


def path_matches_prefix(file_path: str, prefix: str | None) -> bool:
    if prefix is None:
        return True
    return file_path == prefix or file_path.startswith(prefix + "/")


def as_path_list(paths: str | Iterable[str]) -> list[str]:
    if isinstance(paths, (str, Path)):
        return [Path(paths).as_posix()]
    return [Path(p).as_posix() for p in paths]


def wrap_store_errors(operation: str) -> Callable[[F], F]:
    """Re-raise backend failures of an async method as VectorStoreError."""

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(self: "VectorStore", *args: Any, **kwargs: Any) -> Any:
            try:
                return await fn(self, *args, **kwargs)
            except VectorStoreError:
                raise
            except Exception as e:
                logger.error(
                    "Vector store operation failed",
                    backend=self.name,
                    operation=operation,
                    error=str(e),
                )
                raise VectorStoreError(f"{self.name} {operation} failed: {e}") from e

        return wrapper  # type: ignore[return-value]

    return decorator


class VectorStore(ABC):
    """Abstract base class for vector store backends."""

    def __init__(self, config: "Config", dimension: int) -> None:
        self.config = config
        self.dimension = dimension
        self.collection_name = collection_name_for(config.project_root)
        self.default_min_score = config.search.min_score
        self.default_max_results = config.search.max_results

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend identifier."""

    @abstractmethod
    async def initialize(self) -> bool:
        """
        Create the backing collection if absent.

        Returns:
            True when a new collection was created.
        """

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> None:
        """Write or overwrite records by id; no-op for an empty list."""

    @abstractmethod
    async def search(
        self,
        query_vector: np.ndarray,
        directory_prefix: str | None = None,
        min_score: float | None = None,
        max_results: int | None = None,
    ) -> list[SearchResult]:
        """
        Find the records closest to a query vector.

        Args:
            query_vector: Query embedding.
            directory_prefix: Only return records under this directory.
            min_score: Minimum similarity (configured default if None).
            max_results: Result cap (configured default if None).

        Returns:
            Results sorted by descending score, all at or above min_score.
        """

    @abstractmethod
    async def delete_path_records(self, paths: str | Iterable[str]) -> None:
        """Remove every record belonging to the given file(s)."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all records but keep the collection."""

    @abstractmethod
    async def drop(self) -> None:
        """Remove the collection entirely; no-op if it does not exist."""

    @abstractmethod
    async def collection_exists(self) -> bool:
        """Check whether the backing collection exists."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored records."""

    async def close(self) -> None:
        """Release backend resources."""

    def _resolve_limits(
        self, min_score: float | None, max_results: int | None
    ) -> tuple[float, int]:
        return (
            self.default_min_score if min_score is None else min_score,
            self.default_max_results if max_results is None else max_results,
        )

    def _check_vector(self, vector: np.ndarray) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise VectorStoreError(
                f"Vector has dimension {array.shape[0]}, collection expects {self.dimension}"
            )
        return array


def create_vector_store(config: "Config", dimension: int) -> VectorStore:
    """
    Factory function to create the configured vector store.

    Args:
        config: codeindex configuration.
        dimension: Embedding dimension of the active embedder.

    Returns:
        VectorStore instance (not yet initialized).
    """
    backend = config.vector_store.backend

    if backend is VectorStoreBackend.HNSW:
        from codeindex.storage.hnsw_store import HNSWVectorStore

        store: VectorStore = HNSWVectorStore(config, dimension)
    elif backend is VectorStoreBackend.QDRANT:
        from codeindex.storage.qdrant_store import QdrantVectorStore

        store = QdrantVectorStore(config, dimension)
    else:
        raise ConfigurationError(f"Unsupported vector store backend: {backend}")

    logger.info(
        "Created vector store",
        backend=store.name,
        collection=store.collection_name,
        dimension=dimension,
    )
    return store
