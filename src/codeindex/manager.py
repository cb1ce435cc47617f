"""
Index orchestration.

IndexManager owns the index state machine and every pass over the
workspace. Work is serialized by a single lock; every configuration change
or clear request bumps a generation counter first, and work started under
an older generation drops its results instead of writing them.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Callable

import structlog

from codeindex.config import requires_recreate
from codeindex.errors import (
    CodeIndexError,
    ConfigurationError,
    EmbeddingError,
    ValidationCategory,
)
from codeindex.indexing.embedder import create_embedder
from codeindex.indexing.scanner import Scanner
from codeindex.indexing.watcher import ChangeBatch, FileWatcher
from codeindex.storage.vector_store import VectorRecord, create_vector_store

if TYPE_CHECKING:
    from codeindex.config import Config
    from codeindex.indexing.cache import ChangeCache
    from codeindex.indexing.embedder import Embedder
    from codeindex.indexing.ignore_parser import IgnoreResolver
    from codeindex.indexing.scanner import ScannedFile
    from codeindex.storage.vector_store import SearchResult, VectorStore

logger = structlog.get_logger(__name__)


class IndexState(str, Enum):
    """Lifecycle states of the index."""

    STANDBY = "standby"
    INDEXING = "indexing"
    INDEXED = "indexed"
    ERROR = "error"


@dataclass(frozen=True)
class IndexStatus:
    """Progress notification delivered to subscribers."""

    state: IndexState
    processed_count: int = 0
    total_count: int = 0
    error_message: str | None = None
    error_category: ValidationCategory | None = None
    generation: int = 0


StatusCallback = Callable[[IndexStatus], None]


class ServiceFactory:
    """
    Builds the services that are torn down on every recreate.

    Subclass to substitute backends.
    """

    def create_embedder(self, config: "Config") -> "Embedder":
        return create_embedder(config)

    def create_vector_store(self, config: "Config", dimension: int) -> "VectorStore":
        return create_vector_store(config, dimension)

    def create_scanner(self, config: "Config", ignore_resolver: "IgnoreResolver") -> Scanner:
        return Scanner(config, ignore_resolver)

    def create_watcher(self, config: "Config") -> FileWatcher | None:
        if not config.watcher.enabled:
            return None
        return FileWatcher(config)


class _Superseded(Exception):
    """The generation moved on while work was in flight."""


class IndexManager:
    """
    Drives indexing for one workspace.

    The IgnoreResolver and ChangeCache are handed in and outlive every
    recreate; the embedder, vector store, scanner and watcher are rebuilt
    from configuration each time.
    """

    def __init__(
        self,
        config: "Config",
        ignore_resolver: "IgnoreResolver",
        cache: "ChangeCache",
        factory: ServiceFactory | None = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            config: codeindex configuration.
            ignore_resolver: Long-lived ignore rule resolver.
            cache: Initialized change cache.
            factory: Builder for per-configuration services.
        """
        self.config = config
        self.ignore_resolver = ignore_resolver
        self.cache = cache
        self.factory = factory or ServiceFactory()

        self._status = IndexStatus(state=IndexState.STANDBY)
        self._generation = 0
        self._clear_requested = False
        self._lock = asyncio.Lock()
        self._subscribers: list[StatusCallback] = []

        self._embedder: Embedder | None = None
        self._store: VectorStore | None = None
        self._scanner: Scanner | None = None
        self._watcher: FileWatcher | None = None
        self._watch_task: asyncio.Task | None = None

    # Status

    @property
    def status(self) -> IndexStatus:
        return self._status

    @property
    def state(self) -> IndexState:
        return self._status.state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def vector_store(self) -> "VectorStore | None":
        return self._store

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """
        Register a status callback.

        Returns:
            A function that removes the callback.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, status: IndexStatus) -> None:
        self._status = status
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception as e:
                logger.warning("Status subscriber failed", error=str(e))

    def _set_state(
        self,
        state: IndexState,
        error_message: str | None = None,
        error_category: ValidationCategory | None = None,
        processed: int | None = None,
        total: int | None = None,
    ) -> None:
        previous = self._status
        status = IndexStatus(
            state=state,
            processed_count=previous.processed_count if processed is None else processed,
            total_count=previous.total_count if total is None else total,
            error_message=error_message,
            error_category=error_category,
            generation=self._generation,
        )
        if previous.state != state:
            logger.info(
                "Index state changed",
                previous=previous.state.value,
                state=state.value,
                error=error_message,
            )
        self._emit(status)

    def _report_progress(self, processed: int, total: int) -> None:
        self._emit(replace(self._status, processed_count=processed, total_count=total))

    # Generations

    def _bump_generation(self) -> int:
        self._generation += 1
        logger.debug("Generation advanced", generation=self._generation)
        return self._generation

    def _check(self, generation: int) -> None:
        if generation != self._generation:
            raise _Superseded()

    def _fail_pass(self, error: Exception) -> None:
        """Surface a pass-level failure through the Error state."""
        if isinstance(error, CodeIndexError):
            logger.error("Indexing pass failed", error=str(error))
        else:
            logger.exception("Indexing pass failed unexpectedly", error=repr(error))
        self._set_state(IndexState.ERROR, error_message=str(error) or type(error).__name__)

    # Lifecycle

    async def start(self) -> None:
        """Validate the configuration and run the first full pass."""
        await self.recreate(clear=False)

    async def clear_index(self) -> None:
        """Wipe stored vectors and the cache, then re-index everything."""
        self._clear_requested = True
        await self.recreate(clear=True)

    async def recreate(self, clear: bool = False) -> None:
        """
        Rebuild every per-configuration service and re-index.

        Args:
            clear: Empty the vector store and change cache before the pass.
        """
        generation = self._bump_generation()

        async with self._lock:
            if generation != self._generation:
                return

            # A superseded clear request still applies to the pass that replaced it.
            clear = clear or self._clear_requested

            await self._stop_watching()
            await self._dispose_services()

            if not self.config.enabled:
                self._set_state(IndexState.STANDBY, processed=0, total=0)
                return

            if self.state is IndexState.ERROR:
                self._set_state(IndexState.STANDBY)

            self.ignore_resolver.reload()

            try:
                if not await self._build_services(generation, clear):
                    return
                await self._full_pass(generation)
            except _Superseded:
                logger.debug("Recreate superseded", generation=generation)
                return
            except Exception as e:
                self._fail_pass(e)
                return

            if generation == self._generation and self.state is IndexState.INDEXED:
                await self._start_watching(generation)

    async def _build_services(self, generation: int, clear: bool) -> bool:
        """Create and validate services; False if the state machine stopped."""
        try:
            self._embedder = self.factory.create_embedder(self.config)
        except ConfigurationError as e:
            logger.error("Invalid embedder configuration", error=str(e))
            self._set_state(
                IndexState.STANDBY,
                error_message=str(e),
                error_category=ValidationCategory.CONFIGURATION,
            )
            return False

        result = await self._embedder.validate()
        self._check(generation)
        if not result.valid:
            self._set_state(
                IndexState.ERROR,
                error_message=result.error,
                error_category=result.category,
            )
            return False

        try:
            self._store = self.factory.create_vector_store(
                self.config, self._embedder.dimension
            )
            self._scanner = self.factory.create_scanner(self.config, self.ignore_resolver)

            created = await self._store.initialize()
            self._check(generation)
            if created:
                logger.info("New collection created, clearing change cache")
                await self.cache.clear()
            if clear:
                await self._store.clear()
                await self.cache.clear()
                self._clear_requested = False
        except ConfigurationError as e:
            self._set_state(
                IndexState.STANDBY,
                error_message=str(e),
                error_category=ValidationCategory.CONFIGURATION,
            )
            return False
        except CodeIndexError as e:
            logger.error("Vector store setup failed", error=str(e))
            self._set_state(IndexState.ERROR, error_message=str(e))
            return False

        return True

    async def reconfigure(self, config: "Config") -> None:
        """
        Apply a new configuration.

        Changes that affect backend identity or vector dimension trigger a
        recreate; result limits are applied in place.
        """
        old = self.config
        self.config = config

        if requires_recreate(old, config) or (self._store is None and config.enabled):
            await self.recreate(clear=False)
            return

        if self._store is not None:
            self._store.default_min_score = config.search.min_score
            self._store.default_max_results = config.search.max_results
        logger.info(
            "Configuration updated in place",
            min_score=config.search.min_score,
            max_results=config.search.max_results,
        )

    async def disable(self) -> None:
        """Stop all work and return to Standby."""
        self._bump_generation()
        async with self._lock:
            await self._stop_watching()
            await self._dispose_services()
            self._set_state(IndexState.STANDBY, processed=0, total=0)

    async def dispose(self) -> None:
        """Release every service; the manager cannot be used afterwards."""
        await self.disable()
        self._subscribers.clear()

    async def _dispose_services(self) -> None:
        for service in (self._embedder, self._store):
            if service is None:
                continue
            try:
                await service.close()
            except Exception as e:
                logger.warning("Failed to close service", service=type(service).__name__, error=str(e))
        self._embedder = None
        self._store = None
        self._scanner = None

    # Watching

    async def _start_watching(self, generation: int) -> None:
        watcher = self.factory.create_watcher(self.config)
        if watcher is None:
            return
        await watcher.start()
        self._watcher = watcher
        self._watch_task = asyncio.create_task(self._watch_loop(watcher, generation))

    async def _stop_watching(self) -> None:
        watcher, task = self._watcher, self._watch_task
        self._watcher = None
        self._watch_task = None

        if watcher is not None:
            await watcher.stop()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _watch_loop(self, watcher: FileWatcher, generation: int) -> None:
        async for batch in watcher.batches():
            if generation != self._generation:
                return
            try:
                await self.process_changes(batch)
            except Exception as e:
                logger.error("Failed to process changes", error=str(e))

    # Passes

    async def process_changes(self, batch: ChangeBatch) -> None:
        """
        Apply one coalesced batch of file changes.

        Ignore-file changes reload the rules and turn the batch into a full
        reconciling pass.
        """
        generation = self._generation

        async with self._lock:
            if generation != self._generation or self._scanner is None:
                return
            if self.state is not IndexState.INDEXED:
                logger.debug("Ignoring changes", state=self.state.value)
                return

            try:
                if batch.ignore_files_changed:
                    self.ignore_resolver.reload()
                    await self._full_pass(generation)
                    return

                to_index, to_delete = await self._plan_incremental(batch)
                if not to_index and not to_delete:
                    return
                self._set_state(IndexState.INDEXING, processed=0, total=len(to_index) + len(to_delete))
                await self._run_pass(generation, to_index, to_delete)
            except _Superseded:
                logger.debug("Incremental pass superseded", generation=generation)
            except Exception as e:
                self._fail_pass(e)

    async def _plan_incremental(self, batch: ChangeBatch) -> tuple[list[str], list[str]]:
        scanner = self._scanner
        assert scanner is not None
        cached = await self.cache.get_all()

        to_delete: set[str] = set()
        for path in batch.deleted:
            if path in cached:
                to_delete.add(path)
            prefix = path.rstrip("/") + "/"
            to_delete.update(p for p in cached if p.startswith(prefix))

        to_index: set[str] = set()
        for path in batch.changed:
            absolute = scanner.root / path
            if path in batch.directories or absolute.is_dir():
                to_index.update(
                    p for p in await asyncio.to_thread(scanner.list_files)
                    if p.startswith(path.rstrip("/") + "/")
                )
            elif scanner.is_eligible(path):
                to_index.add(path)
            elif path in cached:
                to_delete.add(path)

        to_delete -= to_index
        return sorted(to_index), sorted(to_delete)

    async def _full_pass(self, generation: int) -> None:
        """Index new and changed files; drop records for files no longer eligible."""
        scanner = self._scanner
        assert scanner is not None

        self._set_state(IndexState.INDEXING, processed=0, total=0)
        eligible = await asyncio.to_thread(scanner.list_files)
        self._check(generation)

        eligible_set = set(eligible)
        cached = await self.cache.get_all()
        to_delete = sorted(p for p in cached if p not in eligible_set)

        logger.info(
            "Starting full pass",
            files=len(eligible),
            stale=len(to_delete),
            generation=generation,
        )
        await self._run_pass(generation, eligible, to_delete)

    async def _run_pass(self, generation: int, to_index: list[str], to_delete: list[str]) -> None:
        store = self._store
        scanner = self._scanner
        assert store is not None and scanner is not None

        total = len(to_index) + len(to_delete)
        processed = 0
        indexed = 0
        self._report_progress(processed, total)

        if to_delete:
            self._check(generation)
            await store.delete_path_records(to_delete)
            for path in to_delete:
                await self.cache.remove(path)
            processed += len(to_delete)
            self._report_progress(processed, total)

        cached = await self.cache.get_all()
        seen: set[str] = set()

        async with aclosing(scanner.scan(to_index)) as files:
            async for scanned in files:
                self._check(generation)
                seen.add(scanned.file_path)

                if cached.get(scanned.file_path) != scanned.content_hash:
                    if await self._index_file(generation, scanned):
                        indexed += 1

                processed += 1
                self._report_progress(processed, total)

        # Previously indexed files that are now too large or unreadable.
        dropped = [p for p in to_index if p not in seen and p in cached]
        if dropped:
            self._check(generation)
            await store.delete_path_records(dropped)
            for path in dropped:
                await self.cache.remove(path)

        self._check(generation)

        logger.info(
            "Pass complete",
            processed=processed,
            indexed=indexed,
            deleted=len(to_delete),
            skipped_large=scanner.stats.skipped_large,
            skipped_unreadable=scanner.stats.skipped_unreadable,
            generation=generation,
        )
        self._set_state(IndexState.INDEXED, processed=processed, total=total)

    async def _index_file(self, generation: int, scanned: "ScannedFile") -> bool:
        """
        Replace one file's records.

        Returns:
            False when the provider rejected one of the file's batches.
        """
        embedder, store, scanner = self._embedder, self._store, self._scanner
        assert embedder is not None and store is not None and scanner is not None

        records: list[VectorRecord] = []
        for batch in scanner.batches(scanned.chunks):
            try:
                response = await embedder.embed([chunk.content for chunk in batch])
            except EmbeddingError as e:
                logger.warning(
                    "Embedding rejected, skipping file",
                    path=scanned.file_path,
                    error=str(e),
                )
                return False

            for chunk, vector in zip(batch, response.embeddings):
                if vector is None:
                    continue
                records.append(
                    VectorRecord(
                        chunk_id=chunk.chunk_id,
                        vector=vector,
                        file_path=chunk.file_path,
                        start_line=chunk.start_line,
                        end_line=chunk.end_line,
                        content=chunk.content,
                    )
                )

        # Nothing below runs for a superseded pass.
        self._check(generation)
        await store.delete_path_records(scanned.file_path)
        await store.upsert(records)
        await self.cache.put(scanned.file_path, scanned.content_hash)
        return True

    # Queries

    async def search(
        self,
        query: str,
        directory_prefix: str | None = None,
        min_score: float | None = None,
        max_results: int | None = None,
    ) -> list["SearchResult"]:
        """
        Semantic search over the index.

        Args:
            query: Free text.
            directory_prefix: Restrict results to this workspace directory.
            min_score: Minimum similarity (configured default if None).
            max_results: Result cap (configured default if None).

        Returns:
            Results sorted by descending score.

        Raises:
            CodeIndexError: The index is not ready.
        """
        if self._embedder is None or self._store is None:
            raise CodeIndexError(f"Index is not ready (state: {self.state.value})")
        if self.state not in (IndexState.INDEXED, IndexState.INDEXING):
            raise CodeIndexError(f"Index is not ready (state: {self.state.value})")

        if directory_prefix is not None:
            directory_prefix = self._workspace_relative(directory_prefix)

        response = await self._embedder.embed([query])
        vector = response.embeddings[0] if response.embeddings else None
        if vector is None:
            logger.warning("Query too long to embed", chars=len(query))
            return []

        return await self._store.search(
            vector,
            directory_prefix=directory_prefix,
            min_score=min_score,
            max_results=max_results,
        )

    def _workspace_relative(self, directory: str) -> str:
        path = Path(directory)
        if path.is_absolute():
            try:
                return path.relative_to(self.config.project_root).as_posix()
            except ValueError:
                return path.as_posix()
        return PurePosixPath(path.as_posix()).as_posix()
