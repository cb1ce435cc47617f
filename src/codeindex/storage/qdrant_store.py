"""
Qdrant vector store.

Talks to a Qdrant server when ``vector_store.url`` is set, and otherwise
runs Qdrant's embedded local mode under the data directory (``":memory:"``
keeps everything in process).
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Iterable

import numpy as np
import structlog
from qdrant_client import AsyncQdrantClient, models

from codeindex.storage.vector_store import (
    SearchResult,
    VectorRecord,
    VectorStore,
    as_path_list,
    normalize_prefix,
    wrap_store_errors,
)

if TYPE_CHECKING:
    from codeindex.config import Config

logger = structlog.get_logger(__name__)

MEMORY_LOCATION = ":memory:"

# Segment depth covered by payload indexes on a server.
INDEXED_SEGMENT_DEPTH = 5

DELETE_CHUNK_SIZE = 100


def path_segments(file_path: str) -> dict[str, str]:
    """Payload form of a path: {"0": "src", "1": "app.py"}."""
    return {str(i): part for i, part in enumerate(PurePosixPath(file_path).parts)}


class QdrantVectorStore(VectorStore):
    """
    Qdrant-backed vector store.

    Directory filters match on ``path_segments.N`` payload keys so a prefix
    query is a conjunction of exact segment matches.
    """

    def __init__(self, config: "Config", dimension: int) -> None:
        """
        Initialize the store.

        Args:
            config: codeindex configuration.
            dimension: Vector dimension.
        """
        super().__init__(config, dimension)
        settings = config.vector_store
        self.url = settings.url
        self.is_remote = bool(self.url) and self.url != MEMORY_LOCATION

        if self.is_remote:
            self._client = AsyncQdrantClient(
                url=self.url,
                api_key=settings.api_key,
                timeout=int(settings.timeout_seconds),
            )
        elif self.url == MEMORY_LOCATION:
            self._client = AsyncQdrantClient(location=MEMORY_LOCATION)
        else:
            path = config.vector_store_path / "qdrant"
            path.mkdir(parents=True, exist_ok=True)
            self._client = AsyncQdrantClient(path=str(path))

    @property
    def name(self) -> str:
        return "qdrant"

    async def _create_collection(self) -> None:
        await self._client.create_collection(
            collection_name=self.collection_name,
            vectors_config=models.VectorParams(
                size=self.dimension,
                distance=models.Distance.COSINE,
            ),
        )

        # Payload indexes have no effect in local mode.
        if self.is_remote:
            await self._client.create_payload_index(
                collection_name=self.collection_name,
                field_name="file_path",
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
            for depth in range(INDEXED_SEGMENT_DEPTH):
                await self._client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=f"path_segments.{depth}",
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )

    def _stored_dimension(self, info: Any) -> int | None:
        vectors = info.config.params.vectors
        if isinstance(vectors, dict):
            vectors = next(iter(vectors.values()), None)
        return getattr(vectors, "size", None)

    @wrap_store_errors("initialize")
    async def initialize(self) -> bool:
        """Create the collection; recreate it when its dimension is wrong."""
        if await self._client.collection_exists(self.collection_name):
            info = await self._client.get_collection(self.collection_name)
            stored = self._stored_dimension(info)
            if stored == self.dimension:
                return False

            logger.warning(
                "Collection dimension mismatch, recreating",
                collection=self.collection_name,
                stored=stored,
                expected=self.dimension,
            )
            await self._client.delete_collection(self.collection_name)

        await self._create_collection()
        logger.info("Created Qdrant collection", collection=self.collection_name)
        return True

    @wrap_store_errors("collection_exists")
    async def collection_exists(self) -> bool:
        return await self._client.collection_exists(self.collection_name)

    @wrap_store_errors("upsert")
    async def upsert(self, records: list[VectorRecord]) -> None:
        if not records:
            return

        points = [
            models.PointStruct(
                id=record.chunk_id,
                vector=self._check_vector(record.vector).tolist(),
                payload={
                    **record.payload(),
                    "path_segments": path_segments(record.file_path),
                },
            )
            for record in records
        ]
        await self._client.upsert(
            collection_name=self.collection_name,
            points=points,
            wait=True,
        )

    @wrap_store_errors("search")
    async def search(
        self,
        query_vector: np.ndarray,
        directory_prefix: str | None = None,
        min_score: float | None = None,
        max_results: int | None = None,
    ) -> list[SearchResult]:
        min_score, max_results = self._resolve_limits(min_score, max_results)
        if max_results <= 0:
            return []

        prefix = normalize_prefix(directory_prefix)
        query_filter = None
        if prefix:
            query_filter = models.Filter(
                must=[
                    models.FieldCondition(
                        key=f"path_segments.{i}",
                        match=models.MatchValue(value=segment),
                    )
                    for i, segment in enumerate(PurePosixPath(prefix).parts)
                ]
            )

        response = await self._client.query_points(
            collection_name=self.collection_name,
            query=self._check_vector(query_vector).tolist(),
            query_filter=query_filter,
            score_threshold=min_score,
            limit=max_results,
            with_payload=True,
        )

        results = []
        for point in response.points:
            if point.score < min_score:
                continue
            payload = dict(point.payload or {})
            payload.pop("path_segments", None)
            results.append(
                SearchResult(chunk_id=str(point.id), score=float(point.score), payload=payload)
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:max_results]

    @wrap_store_errors("delete")
    async def delete_path_records(self, paths: str | Iterable[str]) -> None:
        targets = as_path_list(paths)
        for offset in range(0, len(targets), DELETE_CHUNK_SIZE):
            group = targets[offset : offset + DELETE_CHUNK_SIZE]
            await self._client.delete(
                collection_name=self.collection_name,
                points_selector=models.FilterSelector(
                    filter=models.Filter(
                        should=[
                            models.FieldCondition(
                                key="file_path",
                                match=models.MatchValue(value=path),
                            )
                            for path in group
                        ]
                    )
                ),
                wait=True,
            )

    @wrap_store_errors("clear")
    async def clear(self) -> None:
        await self._client.delete(
            collection_name=self.collection_name,
            points_selector=models.FilterSelector(filter=models.Filter(must=[])),
            wait=True,
        )
        logger.info("Cleared Qdrant collection", collection=self.collection_name)

    @wrap_store_errors("drop")
    async def drop(self) -> None:
        if await self._client.collection_exists(self.collection_name):
            await self._client.delete_collection(self.collection_name)
            logger.info("Dropped Qdrant collection", collection=self.collection_name)

    @wrap_store_errors("count")
    async def count(self) -> int:
        result = await self._client.count(collection_name=self.collection_name, exact=True)
        return result.count

    async def close(self) -> None:
        await self._client.close()
