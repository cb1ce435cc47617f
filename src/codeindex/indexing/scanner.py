"""
Workspace scanning.

Walks the eligible file set, reads and hashes each file, splits it into
chunks and groups chunks into embedding batches. Nothing here touches the
network.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Iterable, Iterator

import structlog

from codeindex.errors import FileSystemError, OversizedItemWarning
from codeindex.indexing.chunker import Chunk, Chunker

if TYPE_CHECKING:
    from codeindex.config import Config
    from codeindex.indexing.ignore_parser import IgnoreResolver

logger = structlog.get_logger(__name__)

# Directories never worth descending into, whatever the ignore rules say.
ALWAYS_SKIP_DIRS = frozenset({".git", ".hg", ".svn"})


@dataclass
class ScannedFile:
    """A file read from disk and split into chunks."""

    file_path: str
    chunks: list[Chunk]
    content_hash: str
    size_bytes: int = 0


@dataclass
class ScanStats:
    """Counters for the most recent scan."""

    files: int = 0
    skipped_large: int = 0
    skipped_unreadable: int = 0
    errors: list[FileSystemError] = field(default_factory=list)


def hash_bytes(data: bytes) -> str:
    """Content hash used for change detection and chunk ids."""
    return hashlib.sha256(data).hexdigest()


class Scanner:
    """
    Reads eligible workspace files and prepares them for embedding.

    Features:
    - Ignore-aware directory walk with pruning
    - Bounded concurrent file reads in worker threads
    - Size ceiling and binary detection
    - Token-budgeted batching of chunks
    """

    def __init__(
        self,
        config: "Config",
        ignore_resolver: "IgnoreResolver",
    ) -> None:
        """
        Initialize the scanner.

        Args:
            config: codeindex configuration.
            ignore_resolver: Resolver deciding which paths are eligible.
        """
        self.config = config
        self.root = config.project_root
        self.ignore_resolver = ignore_resolver
        self.chunker = Chunker(config)
        self.extensions = {e.lower() for e in config.scanner.extensions}
        self.max_file_size = config.scanner.max_file_size_bytes
        self.concurrency = config.scanner.parsing_concurrency
        self.batch_size = config.scanner.batch_size
        self.max_item_tokens = config.embedder.max_item_tokens
        self.max_batch_tokens = config.embedder.max_batch_tokens
        self.stats = ScanStats()

    def _is_data_path(self, path: Path) -> bool:
        try:
            path.relative_to(self.config.absolute_data_dir)
            return True
        except ValueError:
            return False

    def has_supported_extension(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in self.extensions

    def is_eligible(self, path: str | Path) -> bool:
        """Check extension, location and ignore rules for one path."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        if self._is_data_path(candidate):
            return False
        if any(part in ALWAYS_SKIP_DIRS for part in candidate.parts):
            return False
        if self.ignore_resolver.is_ignore_file(candidate):
            return False
        if not self.has_supported_extension(candidate):
            return False
        return self.ignore_resolver.is_allowed(candidate)

    def relative(self, path: str | Path) -> str:
        """Workspace-relative posix path, as stored in the index."""
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.relative_to(self.root)
            except ValueError:
                return candidate.as_posix()
        return candidate.as_posix()

    def list_files(self) -> list[str]:
        """
        Walk the workspace and return eligible files.

        Returns:
            Sorted workspace-relative posix paths.
        """
        found: list[str] = []

        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)

            dirnames[:] = sorted(
                d
                for d in dirnames
                if d not in ALWAYS_SKIP_DIRS
                and not self._is_data_path(current / d)
                and self.ignore_resolver.is_dir_allowed(current / d)
            )

            for filename in filenames:
                file_path = current / filename
                if self.is_eligible(file_path):
                    found.append(self.relative(file_path))

        found.sort()
        logger.info("Workspace scanned", root=str(self.root), files=len(found))
        return found

    def _read_file(self, rel_path: str) -> ScannedFile | None:
        """Read, hash and chunk one file. Runs in a worker thread."""
        path = self.root / rel_path

        try:
            size = path.stat().st_size
        except OSError as e:
            raise FileSystemError(rel_path, str(e)) from e

        if size > self.max_file_size:
            logger.warning(
                "Skipping large file",
                path=rel_path,
                size=size,
                limit=self.max_file_size,
            )
            self.stats.skipped_large += 1
            return None

        try:
            data = path.read_bytes()
        except OSError as e:
            raise FileSystemError(rel_path, str(e)) from e

        if b"\x00" in data[:8192]:
            logger.debug("Skipping binary file", path=rel_path)
            return None

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FileSystemError(rel_path, "not valid UTF-8") from e

        content_hash = hash_bytes(data)
        chunks = self.chunker.chunk_file(rel_path, text, content_hash)
        return ScannedFile(
            file_path=rel_path,
            chunks=chunks,
            content_hash=content_hash,
            size_bytes=size,
        )

    async def read_file(self, rel_path: str) -> ScannedFile | None:
        """Read one file off the event loop; None if skipped or unreadable."""
        try:
            return await asyncio.to_thread(self._read_file, rel_path)
        except FileSystemError as e:
            logger.warning("Skipping unreadable file", path=e.path, error=e.reason)
            self.stats.skipped_unreadable += 1
            self.stats.errors.append(e)
            return None

    async def scan(self, paths: Iterable[str]) -> AsyncIterator[ScannedFile]:
        """
        Read files with bounded concurrency, yielding them in input order.

        Args:
            paths: Workspace-relative paths, already filtered for eligibility.

        Yields:
            ScannedFile for every file that could be read. Counters in
            ``stats`` start over for each scan.
        """
        self.stats = ScanStats()
        semaphore = asyncio.Semaphore(self.concurrency)
        path_list = list(paths)
        window = max(self.concurrency * 2, 1)

        async def bounded(rel_path: str) -> ScannedFile | None:
            async with semaphore:
                return await self.read_file(rel_path)

        # Only a window of reads is in flight so memory stays bounded.
        for offset in range(0, len(path_list), window):
            tasks = [
                asyncio.ensure_future(bounded(p))
                for p in path_list[offset : offset + window]
            ]
            try:
                for task in tasks:
                    scanned = await task
                    if scanned is not None:
                        self.stats.files += 1
                        yield scanned
            finally:
                for task in tasks:
                    task.cancel()

    def batches(self, chunks: Iterable[Chunk]) -> Iterator[list[Chunk]]:
        """
        Group chunks into embedding batches.

        Chunks are appended until the batch would exceed the size cap or the
        token budget. A chunk over the per-item ceiling is skipped and logged.
        """
        batch: list[Chunk] = []
        batch_tokens = 0

        for chunk in chunks:
            tokens = chunk.token_estimate
            if tokens > self.max_item_tokens:
                logger.warning(
                    "Skipping oversized chunk",
                    path=chunk.file_path,
                    start_line=chunk.start_line,
                    tokens=tokens,
                    limit=self.max_item_tokens,
                )
                warnings.warn(
                    f"{chunk.file_path}:{chunk.start_line} exceeds {self.max_item_tokens} tokens",
                    OversizedItemWarning,
                    stacklevel=2,
                )
                continue

            if batch and (
                len(batch) >= self.batch_size
                or batch_tokens + tokens > self.max_batch_tokens
            ):
                yield batch
                batch, batch_tokens = [], 0

            batch.append(chunk)
            batch_tokens += tokens

        if batch:
            yield batch
