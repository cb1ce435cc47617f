"""
Indexing modules for codeindex.

Provides:
- Ignore rule resolution (.codeindexignore, .gitignore, defaults)
- Workspace scanning and line-range chunking
- Change detection cache
- Embedding backends with batching and retries
- File system watching with debouncing
"""

from codeindex.indexing.cache import ChangeCache
from codeindex.indexing.chunker import Chunk, Chunker
from codeindex.indexing.embedder import (
    Embedder,
    EmbeddingResponse,
    ValidationResult,
    create_embedder,
)
from codeindex.indexing.ignore_parser import IgnoreResolver, RuleSource
from codeindex.indexing.scanner import ScannedFile, Scanner
from codeindex.indexing.watcher import ChangeBatch, FileWatcher

__all__ = [
    "ChangeCache",
    "Chunk",
    "Chunker",
    "Embedder",
    "EmbeddingResponse",
    "ValidationResult",
    "create_embedder",
    "IgnoreResolver",
    "RuleSource",
    "Scanner",
    "ScannedFile",
    "ChangeBatch",
    "FileWatcher",
]
