"""
Line-range code chunking.

Splits file text into bounded line ranges so a file can be embedded piece by
piece. Chunk ids are stable for identical content at the same location.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from codeindex.config import Config

logger = structlog.get_logger(__name__)

# Namespace for chunk ids; uuid5 keeps them valid point ids for every backend.
CHUNK_ID_NAMESPACE = uuid.UUID("f47ac10b-58cc-4372-a567-0e02b2c3d479")

MAX_CHARS_TOLERANCE_FACTOR = 1.15


@dataclass
class Chunk:
    """Represents a line range of one file."""

    chunk_id: str
    file_path: str
    content: str
    start_line: int
    end_line: int
    file_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.content)


def estimate_tokens(text: str) -> int:
    """Cheap length-based token estimate (about four characters per token)."""
    return math.ceil(len(text) / 4)


def make_chunk_id(
    file_path: str,
    start_line: int,
    end_line: int,
    file_hash: str,
    segment: int = 0,
) -> str:
    """Derive a stable chunk id from location and file content hash."""
    key = f"{file_path}:{start_line}-{end_line}:{file_hash}"
    if segment:
        key = f"{key}#{segment}"
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, key))


class Chunker:
    """
    Line-based chunker.

    Lines accumulate until the next one would push the chunk past
    max_chunk_chars. Fragments shorter than min_chunk_chars are folded into
    the previous chunk when the result stays within a small tolerance above
    max_chunk_chars. A single line longer than that tolerance is cut into
    character segments that share its line number.
    """

    def __init__(self, config: "Config") -> None:
        self.max_chars = config.scanner.max_chunk_chars
        self.min_chars = config.scanner.min_chunk_chars
        self.limit = int(self.max_chars * MAX_CHARS_TOLERANCE_FACTOR)

    def chunk_file(self, path: Path | str, content: str, file_hash: str) -> list[Chunk]:
        """
        Chunk a file's text.

        Args:
            path: Workspace-relative file path used in ids and payloads.
            content: Decoded file text.
            file_hash: Content hash of the raw file bytes.

        Returns:
            Chunks in file order; empty for blank files.
        """
        file_path = Path(path).as_posix()
        if not content.strip():
            return []

        ranges: list[tuple[int, int, str, int | None]] = []
        current: list[str] = []
        current_len = 0
        start_line = 1

        lines = content.split("\n")
        if content.endswith("\n"):
            lines.pop()
        for index, line in enumerate(lines, start=1):
            line_len = len(line) + 1

            if line_len > self.limit:
                if current:
                    ranges.append((start_line, index - 1, "\n".join(current), None))
                    current, current_len = [], 0
                for segment, offset in enumerate(range(0, len(line), self.max_chars)):
                    ranges.append((index, index, line[offset : offset + self.max_chars], segment))
                start_line = index + 1
                continue

            if current and current_len + line_len > self.max_chars:
                ranges.append((start_line, index - 1, "\n".join(current), None))
                current, current_len = [], 0
                start_line = index

            current.append(line)
            current_len += line_len

        if current:
            ranges.append((start_line, len(lines), "\n".join(current), None))

        ranges = self._merge_small(ranges)

        chunks = []
        for start, end, text, segment in ranges:
            if not text.strip():
                continue
            chunks.append(
                Chunk(
                    chunk_id=make_chunk_id(file_path, start, end, file_hash, segment or 0),
                    file_path=file_path,
                    content=text,
                    start_line=start,
                    end_line=end,
                    file_hash=file_hash,
                )
            )

        return chunks

    def _merge_small(
        self, ranges: list[tuple[int, int, str, int | None]]
    ) -> list[tuple[int, int, str, int | None]]:
        """Fold undersized ranges into their predecessor while it stays within the tolerance."""
        merged: list[tuple[int, int, str, int | None]] = []
        for start, end, text, segment in ranges:
            if merged and segment is None and len(text) < self.min_chars:
                prev_start, prev_end, prev_text, prev_segment = merged[-1]
                joined = f"{prev_text}\n{text}"
                if prev_segment is None and len(joined) <= self.limit:
                    merged[-1] = (prev_start, end, joined, None)
                    continue
            merged.append((start, end, text, segment))
        return merged
