"""
Unit tests for workspace scanning.

Tests cover:
- Eligible file discovery
- Size ceiling and unreadable files
- Content hashing
- Token-budgeted batching
"""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import aclosing
from pathlib import Path

import pytest

from codeindex.config import Config, EmbedderConfig, ScannerConfig
from codeindex.errors import OversizedItemWarning
from codeindex.indexing.chunker import Chunk, make_chunk_id
from codeindex.indexing.ignore_parser import IgnoreResolver
from codeindex.indexing.scanner import ScannedFile, Scanner, hash_bytes

from tests.conftest import SAMPLE_PY, make_ts_source


def make_scanner(config: Config) -> Scanner:
    resolver = IgnoreResolver(config.project_root)
    resolver.reload()
    return Scanner(config, resolver)


def make_chunk(index: int, content: str) -> Chunk:
    return Chunk(
        chunk_id=make_chunk_id("a.ts", index, index, "h"),
        file_path="a.ts",
        content=content,
        start_line=index,
        end_line=index,
        file_hash="h",
    )


# ==============================================================================
# Discovery Tests
# ==============================================================================

class TestListFiles:
    """Tests for eligible file discovery."""

    def test_lists_supported_files(self, test_config: Config, workspace: Path):
        (workspace / "src").mkdir()
        (workspace / "src" / "app.ts").write_text(make_ts_source(5))
        (workspace / "util.py").write_text(SAMPLE_PY)
        (workspace / "image.png").write_bytes(b"\x89PNG")

        files = make_scanner(test_config).list_files()

        assert files == ["src/app.ts", "util.py"]

    def test_skips_ignored_and_data_directories(self, test_config: Config, workspace: Path):
        (workspace / ".codeindexignore").write_text("node_modules/\n")
        (workspace / "node_modules").mkdir()
        (workspace / "node_modules" / "dep.js").write_text("module.exports = 1;\n")
        (workspace / ".git").mkdir()
        (workspace / ".git" / "hooks.py").write_text("x = 1\n")
        test_config.ensure_directories()
        (test_config.absolute_data_dir / "notes.md").write_text("# internal\n")
        (workspace / "a.ts").write_text(make_ts_source(3))

        files = make_scanner(test_config).list_files()

        assert files == ["a.ts"]

    def test_ignore_files_are_not_indexed(self, test_config: Config, workspace: Path):
        (workspace / ".gitignore").write_text("*.log\n")
        (workspace / "a.py").write_text("x = 1\n")

        scanner = make_scanner(test_config)

        assert scanner.list_files() == ["a.py"]
        assert not scanner.is_eligible(".gitignore")


# ==============================================================================
# Scan Tests
# ==============================================================================

class TestScan:
    """Tests for reading and chunking files."""

    @pytest.mark.asyncio
    async def test_scan_hashes_raw_bytes(self, test_config: Config, workspace: Path):
        data = make_ts_source(10).encode()
        (workspace / "a.ts").write_bytes(data)

        scanned = [f async for f in make_scanner(test_config).scan(["a.ts"])]

        assert len(scanned) == 1
        assert scanned[0].file_path == "a.ts"
        assert scanned[0].content_hash == hashlib.sha256(data).hexdigest()
        assert scanned[0].content_hash == hash_bytes(data)
        assert scanned[0].chunks
        assert all(c.file_hash == scanned[0].content_hash for c in scanned[0].chunks)

    @pytest.mark.asyncio
    async def test_scan_preserves_order(self, test_config: Config, workspace: Path):
        names = [f"f{i:02d}.py" for i in range(25)]
        for name in names:
            (workspace / name).write_text(f"value = {name!r}\n")

        scanned = [f.file_path async for f in make_scanner(test_config).scan(names)]

        assert scanned == names

    @pytest.mark.asyncio
    async def test_large_files_are_skipped(self, test_config: Config, workspace: Path):
        config = test_config.model_copy(
            update={"scanner": ScannerConfig(max_file_size_bytes=1024)}
        )
        (workspace / "big.py").write_text("x = 1\n" * 1000)
        (workspace / "small.py").write_text("x = 1\n")
        scanner = make_scanner(config)

        scanned = [f.file_path async for f in scanner.scan(["big.py", "small.py"])]

        assert scanned == ["small.py"]
        assert scanner.stats.skipped_large == 1

    @pytest.mark.asyncio
    async def test_unreadable_files_are_skipped(self, test_config: Config, workspace: Path):
        (workspace / "ok.py").write_text("x = 1\n")
        (workspace / "latin1.py").write_bytes("caf\xe9 = 1\n".encode("latin-1"))
        scanner = make_scanner(test_config)

        scanned = [f.file_path async for f in scanner.scan(["missing.py", "latin1.py", "ok.py"])]

        assert scanned == ["ok.py"]
        assert scanner.stats.skipped_unreadable == 2
        assert {e.path for e in scanner.stats.errors} == {"missing.py", "latin1.py"}

    @pytest.mark.asyncio
    async def test_stats_reset_per_scan(self, test_config: Config, workspace: Path):
        (workspace / "ok.py").write_text("x = 1\n")
        scanner = make_scanner(test_config)

        [f async for f in scanner.scan(["missing.py", "ok.py"])]
        [f async for f in scanner.scan(["ok.py"])]

        assert scanner.stats.files == 1
        assert scanner.stats.skipped_unreadable == 0
        assert scanner.stats.errors == []

    @pytest.mark.asyncio
    async def test_closing_scan_cancels_pending_reads(
        self, test_config: Config, monkeypatch: pytest.MonkeyPatch
    ):
        scanner = make_scanner(test_config)
        cancelled: list[str] = []

        async def read_file(rel_path: str) -> ScannedFile | None:
            if rel_path == "a.py":
                return ScannedFile(file_path=rel_path, chunks=[], content_hash="h")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(rel_path)
                raise
            return None

        monkeypatch.setattr(scanner, "read_file", read_file)

        async with aclosing(scanner.scan(["a.py", "b.py", "c.py"])) as files:
            async for scanned in files:
                assert scanned.file_path == "a.py"
                break
        await asyncio.sleep(0)

        assert sorted(cancelled) == ["b.py", "c.py"]

    @pytest.mark.asyncio
    async def test_binary_files_are_skipped(self, test_config: Config, workspace: Path):
        (workspace / "blob.json").write_bytes(b"{\x00\x01\x02}")

        scanned = [f async for f in make_scanner(test_config).scan(["blob.json"])]

        assert scanned == []


# ==============================================================================
# Batching Tests
# ==============================================================================

class TestBatches:
    """Tests for grouping chunks into embedding batches."""

    def test_respects_batch_size(self, test_config: Config):
        config = test_config.model_copy(update={"scanner": ScannerConfig(batch_size=3)})
        chunks = [make_chunk(i, f"chunk {i}") for i in range(7)]

        batches = list(make_scanner(config).batches(chunks))

        assert [len(b) for b in batches] == [3, 3, 1]

    def test_respects_token_budget(self, test_config: Config):
        config = test_config.model_copy(
            update={
                "embedder": EmbedderConfig(
                    dimension=64, max_item_tokens=300, max_batch_tokens=500
                )
            }
        )
        # 200 estimated tokens each
        chunks = [make_chunk(i, "x" * 800) for i in range(5)]

        batches = list(make_scanner(config).batches(chunks))

        assert [len(b) for b in batches] == [2, 2, 1]

    def test_oversized_chunk_is_skipped_with_warning(self, test_config: Config):
        config = test_config.model_copy(
            update={"embedder": EmbedderConfig(dimension=64, max_item_tokens=16)}
        )
        chunks = [make_chunk(1, "small"), make_chunk(2, "y" * 200), make_chunk(3, "tiny")]

        with pytest.warns(OversizedItemWarning):
            batches = list(make_scanner(config).batches(chunks))

        assert [[c.start_line for c in b] for b in batches] == [[1, 3]]
