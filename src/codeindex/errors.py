"""
Error taxonomy for codeindex.

Per-file and per-batch failures are recovered where they happen; pass-level
and validation failures surface through the index state machine.
"""

from __future__ import annotations

from enum import Enum


class ValidationCategory(str, Enum):
    """User-actionable classes of embedder validation failure."""

    SERVICE_UNAVAILABLE = "service_unavailable"
    HOST_NOT_FOUND = "host_not_found"
    MODEL_NOT_FOUND = "model_not_found"
    MODEL_NOT_EMBEDDING_CAPABLE = "model_not_embedding_capable"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"


class CodeIndexError(Exception):
    """Base class for all codeindex errors."""


class ConfigurationError(CodeIndexError):
    """A required setting is missing or invalid."""


class ValidationError(CodeIndexError):
    """The embedder failed its self-test before indexing started."""

    def __init__(
        self,
        message: str,
        category: ValidationCategory = ValidationCategory.CONFIGURATION,
    ) -> None:
        super().__init__(message)
        self.category = category


class EmbeddingError(CodeIndexError):
    """The provider rejected a batch with a non-retriable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConnectivityError(CodeIndexError):
    """An embedding or storage backend became unreachable mid-pass."""


class TransientProviderError(ConnectivityError):
    """A retriable provider failure that outlived its retry budget."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VectorStoreError(ConnectivityError):
    """A vector store operation failed."""


class CacheError(CodeIndexError):
    """The change cache could not be read or written."""


class FileSystemError(CodeIndexError):
    """A single file could not be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class OversizedItemWarning(UserWarning):
    """A chunk exceeded the embedder's per-item limit and was skipped."""
