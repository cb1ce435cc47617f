"""
Local HNSW vector store.

Approximate nearest neighbour search with hnswlib in cosine space. The index
and a pickled metadata file live under the data directory, one pair per
workspace collection.
"""

from __future__ import annotations

import asyncio
import pickle
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

import hnswlib
import numpy as np
import structlog

from codeindex.storage.vector_store import (
    SearchResult,
    VectorRecord,
    VectorStore,
    as_path_list,
    normalize_prefix,
    path_matches_prefix,
    wrap_store_errors,
)

if TYPE_CHECKING:
    from codeindex.config import Config

logger = structlog.get_logger(__name__)


class HNSWVectorStore(VectorStore):
    """
    HNSW-based vector store persisted to local files.

    Features:
    - Incremental upserts (existing labels are updated in place)
    - Deletion by path through a label lookup and mark_deleted
    - Capacity grows on demand
    - Persisted after every mutation
    """

    def __init__(self, config: "Config", dimension: int) -> None:
        """
        Initialize the store.

        Args:
            config: codeindex configuration.
            dimension: Vector dimension.
        """
        super().__init__(config, dimension)
        store_dir = config.vector_store_path
        self.index_path = store_dir / f"{self.collection_name}.bin"
        self.metadata_path = store_dir / f"{self.collection_name}.meta"

        self.max_elements = config.vector_store.max_elements
        self.m = config.vector_store.hnsw_m
        self.ef_construction = config.vector_store.hnsw_ef_construction
        self.ef_search = config.vector_store.hnsw_ef_search

        self._index: hnswlib.Index | None = None
        self._label_of: dict[str, int] = {}
        self._payloads: dict[int, dict[str, Any]] = {}
        self._next_label = 0
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "hnsw"

    def _new_index(self) -> hnswlib.Index:
        index = hnswlib.Index(space="cosine", dim=self.dimension)
        index.init_index(
            max_elements=self.max_elements,
            ef_construction=self.ef_construction,
            M=self.m,
        )
        index.set_ef(self.ef_search)
        return index

    def _reset(self) -> None:
        self._index = self._new_index()
        self._label_of = {}
        self._payloads = {}
        self._next_label = 0

    def _load(self) -> None:
        with open(self.metadata_path, "rb") as f:
            metadata = pickle.load(f)

        if metadata.get("dimension") != self.dimension:
            raise ValueError(
                f"stored dimension {metadata.get('dimension')} != {self.dimension}"
            )

        index = hnswlib.Index(space="cosine", dim=self.dimension)
        capacity = max(self.max_elements, metadata.get("max_elements", 0))
        index.load_index(str(self.index_path), max_elements=capacity)
        index.set_ef(self.ef_search)

        self._index = index
        self._label_of = metadata["label_of"]
        self._payloads = metadata["payloads"]
        self._next_label = metadata["next_label"]

    def _save(self) -> None:
        if self._index is None:
            return
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        self._index.save_index(str(self.index_path))
        metadata = {
            "dimension": self.dimension,
            "max_elements": self._index.get_max_elements(),
            "label_of": self._label_of,
            "payloads": self._payloads,
            "next_label": self._next_label,
        }
        with open(self.metadata_path, "wb") as f:
            pickle.dump(metadata, f)

    def _require_index(self) -> hnswlib.Index:
        if self._index is None:
            raise RuntimeError("Index not initialized")
        return self._index

    @wrap_store_errors("initialize")
    async def initialize(self) -> bool:
        """Load the persisted index, or create an empty one."""
        async with self._lock:
            if self._index is not None:
                return False

            if self.index_path.exists() and self.metadata_path.exists():
                try:
                    await asyncio.to_thread(self._load)
                    logger.info(
                        "Loaded existing index",
                        collection=self.collection_name,
                        num_vectors=len(self._label_of),
                    )
                    return False
                except Exception as e:
                    logger.warning("Failed to load index, creating new", error=str(e))

            self._reset()
            await asyncio.to_thread(self._save)
            logger.info("Created new HNSW index", collection=self.collection_name)
            return True

    @wrap_store_errors("collection_exists")
    async def collection_exists(self) -> bool:
        return self.index_path.exists() and self.metadata_path.exists()

    def _ensure_capacity(self, index: hnswlib.Index, additional: int) -> None:
        needed = index.get_current_count() + additional
        capacity = index.get_max_elements()
        if needed > capacity:
            new_capacity = max(capacity * 2, needed)
            index.resize_index(new_capacity)
            logger.info("Resized HNSW index", capacity=new_capacity)

    @wrap_store_errors("upsert")
    async def upsert(self, records: list[VectorRecord]) -> None:
        if not records:
            return

        vectors = np.stack([self._check_vector(r.vector) for r in records])

        async with self._lock:
            index = self._require_index()

            labels = []
            new_count = 0
            for record in records:
                label = self._label_of.get(record.chunk_id)
                if label is None:
                    label = self._next_label
                    self._next_label += 1
                    new_count += 1
                labels.append(label)

            self._ensure_capacity(index, new_count)
            # Existing labels are overwritten in place.
            index.add_items(vectors, np.array(labels, dtype=np.int64))

            for record, label in zip(records, labels):
                self._label_of[record.chunk_id] = label
                self._payloads[label] = {"chunk_id": record.chunk_id, **record.payload()}

            await asyncio.to_thread(self._save)

    def _query(self, index: hnswlib.Index, query: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        while True:
            index.set_ef(max(self.ef_search, k))
            try:
                return index.knn_query(query.reshape(1, -1), k=k)
            except RuntimeError:
                # Deleted elements can leave fewer than k reachable neighbours.
                if k <= 1:
                    raise
                k = max(1, k // 2)
            finally:
                index.set_ef(self.ef_search)

    @wrap_store_errors("search")
    async def search(
        self,
        query_vector: np.ndarray,
        directory_prefix: str | None = None,
        min_score: float | None = None,
        max_results: int | None = None,
    ) -> list[SearchResult]:
        min_score, max_results = self._resolve_limits(min_score, max_results)
        prefix = normalize_prefix(directory_prefix)
        query = self._check_vector(query_vector)

        async with self._lock:
            index = self._require_index()
            active = len(self._label_of)
            if active == 0 or max_results <= 0:
                return []

            # Path filtering happens after the query, so fetch every candidate.
            k = active if prefix else min(max_results, active)
            labels, distances = self._query(index, query, k)

            results = []
            for label, distance in zip(labels[0], distances[0]):
                payload = self._payloads.get(int(label))
                if payload is None:
                    continue
                score = 1.0 - float(distance)
                if score < min_score:
                    continue
                if not path_matches_prefix(payload["file_path"], prefix):
                    continue
                results.append(
                    SearchResult(
                        chunk_id=payload["chunk_id"],
                        score=score,
                        payload={key: value for key, value in payload.items() if key != "chunk_id"},
                    )
                )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:max_results]

    @wrap_store_errors("delete")
    async def delete_path_records(self, paths: str | Iterable[str]) -> None:
        targets = set(as_path_list(paths))
        if not targets:
            return

        async with self._lock:
            index = self._require_index()
            labels = [
                label
                for label, payload in self._payloads.items()
                if payload["file_path"] in targets
            ]
            if not labels:
                return

            for label in labels:
                payload = self._payloads.pop(label)
                self._label_of.pop(payload["chunk_id"], None)
                index.mark_deleted(label)

            await asyncio.to_thread(self._save)
            logger.debug("Deleted path records", paths=len(targets), records=len(labels))

    @wrap_store_errors("clear")
    async def clear(self) -> None:
        async with self._lock:
            self._require_index()
            self._reset()
            await asyncio.to_thread(self._save)
            logger.info("Cleared HNSW index", collection=self.collection_name)

    @wrap_store_errors("drop")
    async def drop(self) -> None:
        async with self._lock:
            for path in (self.index_path, self.metadata_path):
                Path(path).unlink(missing_ok=True)
            self._index = None
            self._label_of = {}
            self._payloads = {}
            self._next_label = 0
            logger.info("Dropped HNSW index", collection=self.collection_name)

    async def count(self) -> int:
        return len(self._label_of)

    async def close(self) -> None:
        """Release the in-memory index; state is already persisted."""
        async with self._lock:
            self._index = None
