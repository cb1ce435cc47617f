"""
Shared fixtures for the codeindex test suite.

Provides common test fixtures including:
- Temporary workspaces and configuration
- A deterministic in-process embedder
- An in-memory vector store that records every call
- A service factory wiring the fakes into IndexManager
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import numpy as np
import pytest

from codeindex.config import Config, EmbedderConfig, SearchConfig, WatcherConfig
from codeindex.indexing.cache import ChangeCache
from codeindex.indexing.embedder import Embedder
from codeindex.indexing.ignore_parser import IgnoreResolver
from codeindex.manager import IndexManager, ServiceFactory
from codeindex.storage.vector_store import (
    SearchResult,
    VectorRecord,
    VectorStore,
    as_path_list,
    normalize_prefix,
    path_matches_prefix,
)

TEST_DIMENSION = 64


# ==============================================================================
# Sample Data
# ==============================================================================

def make_ts_source(lines: int = 50) -> str:
    """A small TypeScript file with one function per line."""
    return "\n".join(
        f"export function handler{i}(x: number): number {{ return x + {i}; }}"
        for i in range(lines)
    ) + "\n"


SAMPLE_PY = '''"""Sample module."""


def add(a: int, b: int) -> int:
    return a + b


class Greeter:
    def greet(self, name: str) -> str:
        return f"hello {name}"
'''


# ==============================================================================
# Fakes
# ==============================================================================

def fake_vector(text: str, dimension: int = TEST_DIMENSION) -> np.ndarray:
    """Deterministic unit vector derived from the text's hash."""
    digest = hashlib.sha256(text.encode()).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "little"))
    vector = rng.standard_normal(dimension).astype(np.float32)
    return vector / np.linalg.norm(vector)


class FakeEmbedder(Embedder):
    """
    In-process embedder for fast tests.

    Vectors are derived from content hashes, so identical text always maps
    to the identical vector. ``gate`` lets a test hold a request open.
    """

    def __init__(self, config: Config, dimension: int = TEST_DIMENSION) -> None:
        super().__init__(config, sleep=self._no_sleep)
        self._dimension = dimension
        self.embedded_texts: list[str] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.closed = False

    @staticmethod
    async def _no_sleep(delay: float) -> None:
        return None

    @property
    def name(self) -> str:
        return "fake"

    async def _request(self, texts: list[str]) -> tuple[list[np.ndarray], int | None]:
        self.entered.set()
        if self.gate is not None:
            gate, self.gate = self.gate, None
            await gate.wait()
        self.embedded_texts.extend(texts)
        return [fake_vector(t, self._dimension) for t in texts], None

    async def close(self) -> None:
        self.closed = True


class RecordingVectorStore(VectorStore):
    """Brute-force in-memory store that logs every mutating call."""

    def __init__(self, config: Config, dimension: int = TEST_DIMENSION) -> None:
        super().__init__(config, dimension)
        self.records: dict[str, VectorRecord] = {}
        self.calls: list[tuple[str, Any]] = []
        self.exists = False

    @property
    def name(self) -> str:
        return "recording"

    async def initialize(self) -> bool:
        self.calls.append(("initialize", None))
        created = not self.exists
        self.exists = True
        return created

    async def upsert(self, records: list[VectorRecord]) -> None:
        self.calls.append(("upsert", [r.file_path for r in records]))
        for record in records:
            self.records[record.chunk_id] = record

    async def search(
        self,
        query_vector: np.ndarray,
        directory_prefix: str | None = None,
        min_score: float | None = None,
        max_results: int | None = None,
    ) -> list[SearchResult]:
        min_score, max_results = self._resolve_limits(min_score, max_results)
        prefix = normalize_prefix(directory_prefix)
        query = query_vector / np.linalg.norm(query_vector)
        results = []
        for record in self.records.values():
            if not path_matches_prefix(record.file_path, prefix):
                continue
            vector = record.vector / np.linalg.norm(record.vector)
            score = float(np.dot(query, vector))
            if score >= min_score:
                results.append(SearchResult(record.chunk_id, score, record.payload()))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:max_results]

    async def delete_path_records(self, paths: str | Iterable[str]) -> None:
        targets = set(as_path_list(paths))
        self.calls.append(("delete", sorted(targets)))
        self.records = {k: r for k, r in self.records.items() if r.file_path not in targets}

    async def clear(self) -> None:
        self.calls.append(("clear", None))
        self.records.clear()

    async def drop(self) -> None:
        self.calls.append(("drop", None))
        self.records.clear()
        self.exists = False

    async def collection_exists(self) -> bool:
        return self.exists

    async def count(self) -> int:
        return len(self.records)

    def paths(self) -> set[str]:
        return {r.file_path for r in self.records.values()}

    def upserted_paths(self) -> list[str]:
        return [p for name, arg in self.calls if name == "upsert" for p in arg]


class FakeServiceFactory(ServiceFactory):
    """Hands the same fakes to every recreate."""

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        watch: bool = False,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.watch = watch

    def create_embedder(self, config: Config) -> Embedder:
        return self.embedder

    def create_vector_store(self, config: Config, dimension: int) -> VectorStore:
        return self.store

    def create_watcher(self, config: Config):
        if not self.watch:
            return None
        return super().create_watcher(config)


# ==============================================================================
# Configuration Fixtures
# ==============================================================================

@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create an empty workspace directory."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def test_config(workspace: Path) -> Config:
    """Create a test configuration rooted at the workspace."""
    return Config(
        project_root=workspace,
        data_dir=Path(".codeindex"),
        log_level="DEBUG",
        embedder=EmbedderConfig(dimension=TEST_DIMENSION, initial_retry_delay_ms=0),
        search=SearchConfig(min_score=0.4, max_results=50),
        watcher=WatcherConfig(debounce_ms=50),
    )


# ==============================================================================
# Service Fixtures
# ==============================================================================

@pytest.fixture
def fake_embedder(test_config: Config) -> FakeEmbedder:
    return FakeEmbedder(test_config)


@pytest.fixture
def recording_store(test_config: Config) -> RecordingVectorStore:
    return RecordingVectorStore(test_config)


@pytest.fixture
def ignore_resolver(workspace: Path) -> IgnoreResolver:
    resolver = IgnoreResolver(workspace)
    resolver.reload()
    return resolver


@pytest.fixture
async def change_cache(test_config: Config) -> AsyncIterator[ChangeCache]:
    cache = ChangeCache(test_config.cache_path)
    await cache.initialize()
    yield cache
    await cache.close()


@pytest.fixture
async def manager(
    test_config: Config,
    ignore_resolver: IgnoreResolver,
    change_cache: ChangeCache,
    fake_embedder: FakeEmbedder,
    recording_store: RecordingVectorStore,
) -> AsyncIterator[IndexManager]:
    """IndexManager wired to the fake embedder and recording store."""
    factory = FakeServiceFactory(fake_embedder, recording_store)
    index_manager = IndexManager(test_config, ignore_resolver, change_cache, factory)
    yield index_manager
    await index_manager.dispose()
