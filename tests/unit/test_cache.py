"""
Unit tests for the file-hash change cache.

Tests cover:
- Put, get and remove
- Persistence across connections
- Clearing
- Database failures surfacing as CacheError
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from codeindex.errors import CacheError
from codeindex.indexing.cache import ChangeCache


class TestChangeCache:
    """Tests for ChangeCache operations."""

    @pytest.mark.asyncio
    async def test_get_missing(self, change_cache: ChangeCache):
        assert await change_cache.get("a.ts") is None
        assert await change_cache.get_record("a.ts") is None

    @pytest.mark.asyncio
    async def test_put_and_get(self, change_cache: ChangeCache):
        await change_cache.put("a.ts", "hash-1")

        assert await change_cache.get("a.ts") == "hash-1"
        record = await change_cache.get_record("a.ts")
        assert record is not None
        assert record.content_hash == "hash-1"
        assert record.indexed_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_put_overwrites(self, change_cache: ChangeCache):
        await change_cache.put("a.ts", "hash-1")
        await change_cache.put("a.ts", "hash-2")

        assert await change_cache.get("a.ts") == "hash-2"
        assert await change_cache.count() == 1

    @pytest.mark.asyncio
    async def test_remove(self, change_cache: ChangeCache):
        await change_cache.put("a.ts", "hash-1")
        await change_cache.put("b.ts", "hash-2")

        await change_cache.remove("a.ts")

        assert await change_cache.get_all() == {"b.ts": "hash-2"}

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self, change_cache: ChangeCache):
        await change_cache.remove("never.ts")
        assert await change_cache.count() == 0

    @pytest.mark.asyncio
    async def test_clear(self, change_cache: ChangeCache):
        await change_cache.put("a.ts", "1")
        await change_cache.put("b.ts", "2")

        await change_cache.clear()

        assert await change_cache.get_all() == {}

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path: Path):
        db_path = tmp_path / "data" / "cache.db"

        first = ChangeCache(db_path)
        await first.initialize()
        await first.put("src/a.ts", "abc")
        await first.close()

        second = ChangeCache(db_path)
        await second.initialize()
        try:
            assert await second.get("src/a.ts") == "abc"
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_requires_initialize(self, tmp_path: Path):
        cache = ChangeCache(tmp_path / "cache.db")

        with pytest.raises(RuntimeError):
            await cache.get("a.ts")

    @pytest.mark.asyncio
    async def test_database_failures_become_cache_errors(self, change_cache: ChangeCache):
        await change_cache._conn().execute("DROP TABLE files")

        with pytest.raises(CacheError) as exc_info:
            await change_cache.get_all()

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        with pytest.raises(CacheError):
            await change_cache.put("a.ts", "hash-1")
