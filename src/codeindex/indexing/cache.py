"""
Persisted file-hash cache for change detection.

A file whose current content hash equals its cached hash is not embedded
again. Entries are written only after the file's vectors were stored.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

import aiosqlite
import structlog

from codeindex.errors import CacheError

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _wrap_db_errors(fn: F) -> F:
    """Re-raise SQLite failures of an async method as CacheError."""

    @functools.wraps(fn)
    async def wrapper(self: "ChangeCache", *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(self, *args, **kwargs)
        except aiosqlite.Error as e:
            logger.error("Change cache operation failed", operation=fn.__name__, error=str(e))
            raise CacheError(f"change cache {fn.__name__} failed: {e}") from e

    return wrapper  # type: ignore[return-value]


@dataclass
class FileRecord:
    """Cache entry for one indexed file."""

    file_path: str
    content_hash: str
    indexed_at: datetime


class ChangeCache:
    """
    SQLite-backed mapping of file path to content hash.

    Lives in the data directory and survives service recreation; only an
    explicit clear empties it.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS files (
        file_path TEXT PRIMARY KEY,
        content_hash TEXT NOT NULL,
        indexed_at TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the cache.

        Args:
            db_path: SQLite database file, created on initialize.
        """
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    @_wrap_db_errors
    async def initialize(self) -> None:
        """Open the database and create the schema."""
        if self._db is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(self.SCHEMA)
        await self._db.commit()

        logger.info("Change cache opened", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Change cache not initialized")
        return self._db

    @_wrap_db_errors
    async def get(self, file_path: str) -> str | None:
        """Return the cached hash for a file, or None."""
        async with self._conn().execute(
            "SELECT content_hash FROM files WHERE file_path = ?",
            (file_path,),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else None

    @_wrap_db_errors
    async def get_record(self, file_path: str) -> FileRecord | None:
        async with self._conn().execute(
            "SELECT file_path, content_hash, indexed_at FROM files WHERE file_path = ?",
            (file_path,),
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return FileRecord(
                    file_path=row[0],
                    content_hash=row[1],
                    indexed_at=datetime.fromisoformat(row[2]),
                )
            return None

    @_wrap_db_errors
    async def put(self, file_path: str, content_hash: str) -> None:
        """Record a file as indexed at the given hash."""
        db = self._conn()
        now = datetime.now(timezone.utc).isoformat()
        await db.execute(
            "INSERT OR REPLACE INTO files (file_path, content_hash, indexed_at) VALUES (?, ?, ?)",
            (file_path, content_hash, now),
        )
        await db.commit()

    @_wrap_db_errors
    async def remove(self, file_path: str) -> None:
        db = self._conn()
        await db.execute("DELETE FROM files WHERE file_path = ?", (file_path,))
        await db.commit()

    @_wrap_db_errors
    async def clear(self) -> None:
        """Forget every entry."""
        db = self._conn()
        await db.execute("DELETE FROM files")
        await db.commit()
        logger.info("Change cache cleared")

    @_wrap_db_errors
    async def get_all(self) -> dict[str, str]:
        """Return every cached path with its hash."""
        async with self._conn().execute(
            "SELECT file_path, content_hash FROM files"
        ) as cursor:
            rows = await cursor.fetchall()
            return {row[0]: row[1] for row in rows}

    @_wrap_db_errors
    async def count(self) -> int:
        async with self._conn().execute("SELECT COUNT(*) FROM files") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0
