"""
File system watcher with debouncing.

Watchdog events are handed from the observer thread to the event loop and
coalesced there: a burst of events separated by less than the debounce
window becomes a single ChangeBatch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator

import structlog
from watchdog.events import (
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from codeindex.indexing.ignore_parser import IgnoreResolver

if TYPE_CHECKING:
    from codeindex.config import Config

logger = structlog.get_logger(__name__)

SKIPPED_PARTS = frozenset({".git", ".hg", ".svn"})


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    """A single file system notification."""

    kind: ChangeKind
    path: str
    is_directory: bool = False


@dataclass
class ChangeBatch:
    """
    Union of changes seen during one debounce window.

    Paths are workspace-relative posix paths. A path is never in both sets;
    the last event seen for it wins. Directory paths may appear in either
    set when the platform reports a directory-level event only.
    """

    changed: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)
    ignore_files_changed: bool = False
    directories: set[str] = field(default_factory=set)

    def add(self, change: FileChange) -> None:
        if IgnoreResolver.is_ignore_file(change.path):
            self.ignore_files_changed = True
            return

        if change.is_directory:
            self.directories.add(change.path)

        if change.kind is ChangeKind.DELETED:
            self.deleted.add(change.path)
            self.changed.discard(change.path)
        else:
            self.changed.add(change.path)
            self.deleted.discard(change.path)

    def __bool__(self) -> bool:
        return bool(self.changed or self.deleted or self.ignore_files_changed)


_STOP = object()


class _EventHandler(FileSystemEventHandler):
    """Translates watchdog events into FileWatcher notifications."""

    def __init__(self, watcher: "FileWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self.watcher.notify(ChangeKind.CREATED, event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self.watcher.notify(ChangeKind.MODIFIED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self.watcher.notify(ChangeKind.DELETED, event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        # A move is a delete of the source plus a create of the destination.
        self.watcher.notify(ChangeKind.DELETED, event.src_path, event.is_directory)
        self.watcher.notify(ChangeKind.CREATED, event.dest_path, event.is_directory)


class FileWatcher:
    """
    Watches the workspace and emits debounced change batches.

    Usage:
        watcher = FileWatcher(config)
        await watcher.start()
        async for batch in watcher.batches():
            ...
        await watcher.stop()
    """

    def __init__(self, config: "Config") -> None:
        """
        Initialize the watcher.

        Args:
            config: codeindex configuration.
        """
        self.root = config.project_root
        self.data_dir = config.absolute_data_dir
        self.debounce_seconds = config.watcher.debounce_ms / 1000.0

        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _relative(self, path: str | Path) -> str | None:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        try:
            candidate.relative_to(self.data_dir)
            return None
        except ValueError:
            pass
        try:
            rel = candidate.relative_to(self.root)
        except ValueError:
            return None
        if not rel.parts or any(part in SKIPPED_PARTS for part in rel.parts):
            return None
        return rel.as_posix()

    def notify(self, kind: ChangeKind, path: str | Path, is_directory: bool = False) -> None:
        """
        Report a change. Safe to call from any thread.

        Paths outside the workspace or under the data directory are dropped.
        """
        if self._loop is None or self._queue is None or not self._running:
            return

        rel = self._relative(path)
        if rel is None:
            return

        change = FileChange(kind=ChangeKind(kind), path=rel, is_directory=is_directory)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, change)

    async def start(self, observe: bool = True) -> None:
        """
        Start watching for file changes.

        Args:
            observe: Schedule a watchdog observer. Without it, only explicit
                ``notify`` calls produce batches.
        """
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._running = True

        if observe:
            self._observer = Observer()
            self._observer.schedule(_EventHandler(self), str(self.root), recursive=True)
            self._observer.start()

        logger.info("File watcher started", path=str(self.root))

    async def stop(self) -> None:
        """Stop watching; a pending ``batches()`` iteration ends."""
        if not self._running:
            return

        self._running = False
        if self._observer:
            observer = self._observer
            self._observer = None
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)

        if self._queue is not None:
            self._queue.put_nowait(_STOP)

        logger.info("File watcher stopped")

    async def batches(self) -> AsyncIterator[ChangeBatch]:
        """
        Yield coalesced change batches until the watcher stops.

        A batch is emitted once no new event has arrived for the debounce
        window.
        """
        if self._queue is None:
            return
        queue = self._queue

        while True:
            item = await queue.get()
            if item is _STOP:
                return

            batch = ChangeBatch()
            batch.add(item)
            stopping = False

            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self.debounce_seconds)
                except asyncio.TimeoutError:
                    break
                if item is _STOP:
                    stopping = True
                    break
                batch.add(item)

            if batch:
                logger.debug(
                    "Change batch ready",
                    changed=len(batch.changed),
                    deleted=len(batch.deleted),
                    ignore_files_changed=batch.ignore_files_changed,
                )
                yield batch

            if stopping:
                return
