"""
Configuration module for codeindex.

Provides strongly-typed configuration with pydantic, supporting both
file-based and environment variable configuration.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EmbedderProvider(str, Enum):
    """Supported embedding backends."""

    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai_compatible"
    OLLAMA = "ollama"
    LOCAL_ONNX = "local_onnx"


class VectorStoreBackend(str, Enum):
    """Supported vector store backends."""

    HNSW = "hnsw"
    QDRANT = "qdrant"


class EmbedderConfig(BaseModel):
    """Embedding backend configuration."""

    provider: EmbedderProvider = Field(
        default=EmbedderProvider.OLLAMA,
        description="Embedding backend to use",
    )
    base_url: str | None = Field(
        default=None,
        description="Endpoint for remote backends (provider default if None)",
    )
    model: str | None = Field(
        default=None,
        description="Embedding model name (provider default if None)",
    )
    api_key: str | None = Field(
        default=None,
        description="API key for authenticated providers",
    )
    dimension: int | None = Field(
        default=None,
        ge=64,
        le=8192,
        description="Embedding dimension (looked up from the model if None)",
    )
    model_path: Path | None = Field(
        default=None,
        description="Directory holding a local ONNX model and tokenizer",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Timeout applied to every embedding request",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempt cap for retriable provider failures",
    )
    initial_retry_delay_ms: int = Field(
        default=500,
        ge=0,
        le=60000,
        description="Delay before the first retry; doubles per attempt",
    )
    max_retry_delay_ms: int = Field(
        default=30000,
        ge=0,
        le=600000,
        description="Upper bound on a single retry delay",
    )
    max_item_tokens: int = Field(
        default=8191,
        ge=16,
        le=131072,
        description="Estimated token ceiling for a single input",
    )
    max_batch_tokens: int = Field(
        default=100000,
        ge=256,
        le=1000000,
        description="Estimated token budget for one request",
    )


class VectorStoreConfig(BaseModel):
    """Vector store configuration."""

    backend: VectorStoreBackend = Field(
        default=VectorStoreBackend.HNSW,
        description="Vector store backend",
    )
    url: str | None = Field(
        default=None,
        description="Remote store URL (Qdrant); embedded mode if None",
    )
    api_key: str | None = Field(
        default=None,
        description="API key for the remote store",
    )
    path: Path | None = Field(
        default=None,
        description="Local storage directory (defaults under data_dir)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for store requests",
    )
    max_elements: int = Field(
        default=100000,
        ge=1000,
        le=10000000,
        description="Initial HNSW capacity (grows on demand)",
    )
    hnsw_m: int = Field(
        default=16,
        ge=4,
        le=64,
        description="HNSW M parameter (connections per node)",
    )
    hnsw_ef_construction: int = Field(
        default=200,
        ge=50,
        le=500,
        description="HNSW ef_construction (index build quality)",
    )
    hnsw_ef_search: int = Field(
        default=100,
        ge=10,
        le=500,
        description="HNSW ef_search (query quality vs speed)",
    )


class SearchConfig(BaseModel):
    """Query defaults."""

    min_score: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Minimum similarity score for results",
    )
    max_results: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum number of results",
    )


class ScannerConfig(BaseModel):
    """File scanning and chunking configuration."""

    max_file_size_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        le=100 * 1024 * 1024,
        description="Files larger than this are skipped",
    )
    max_chunk_chars: int = Field(
        default=1000,
        ge=100,
        le=20000,
        description="Target upper bound for a chunk",
    )
    min_chunk_chars: int = Field(
        default=50,
        ge=0,
        le=1000,
        description="Chunks smaller than this merge into their predecessor",
    )
    batch_size: int = Field(
        default=60,
        ge=1,
        le=2048,
        description="Maximum chunks per embedding batch",
    )
    parsing_concurrency: int = Field(
        default=10,
        ge=1,
        le=64,
        description="Bounded number of concurrent file reads",
    )
    extensions: list[str] = Field(
        default_factory=lambda: [
            ".py", ".pyi", ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx",
            ".go", ".rs", ".java", ".kt", ".scala", ".c", ".h", ".cpp",
            ".hpp", ".cc", ".cs", ".rb", ".php", ".swift", ".m", ".lua",
            ".sh", ".sql", ".vue", ".svelte", ".css", ".scss", ".html",
            ".md", ".rst", ".json", ".yaml", ".yml", ".toml",
        ],
        description="File extensions eligible for indexing",
    )


class WatcherConfig(BaseModel):
    """File system watcher configuration."""

    enabled: bool = Field(
        default=True,
        description="Watch the workspace after the initial pass",
    )
    debounce_ms: int = Field(
        default=300,
        ge=10,
        le=5000,
        description="Quiet period before a burst of events is processed",
    )


class Config(BaseSettings):
    """
    Main codeindex configuration.

    Can be configured via:
    1. Configuration file (codeindex.toml or .codeindex/config.toml)
    2. Environment variables with CODEINDEX_ prefix
    3. Programmatic overrides
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEINDEX_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    enabled: bool = Field(default=True, description="Master switch for indexing")
    project_root: Path = Field(
        default_factory=lambda: Path.cwd(),
        description="Workspace root directory",
    )
    data_dir: Path = Field(
        default=Path(".codeindex"),
        description="Data directory (relative to project_root)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    embedder: EmbedderConfig = Field(default_factory=EmbedderConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)

    @field_validator("project_root", mode="before")
    @classmethod
    def resolve_project_root(cls, v: Path | str) -> Path:
        """Resolve project root to absolute path."""
        path = Path(v) if isinstance(v, str) else v
        return path.resolve()

    @property
    def absolute_data_dir(self) -> Path:
        """Get absolute path to data directory."""
        if self.data_dir.is_absolute():
            return self.data_dir
        return self.project_root / self.data_dir

    @property
    def cache_path(self) -> Path:
        """Get absolute path to the change cache database."""
        return self.absolute_data_dir / "cache.db"

    @property
    def vector_store_path(self) -> Path:
        """Get absolute path to local vector storage."""
        if self.vector_store.path is not None:
            return self.vector_store.path
        return self.absolute_data_dir / "vectors"

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        self.absolute_data_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Load configuration from a TOML or JSON file."""
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()
        content = path.read_text()

        if suffix == ".toml":
            try:
                import tomllib
            except ImportError:
                import tomli as tomllib  # type: ignore
            data = tomllib.loads(content)
        elif suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {suffix}")

        return cls(**data)


# Fields whose change alters the embedding space or backend identity.
_RECREATE_FIELDS: dict[str, tuple[str, ...]] = {
    "embedder": (
        "provider",
        "base_url",
        "model",
        "api_key",
        "dimension",
        "model_path",
    ),
    "vector_store": ("backend", "url", "api_key", "path"),
}


def requires_recreate(old: Config, new: Config) -> bool:
    """
    Decide whether a configuration change needs a full service recreation.

    Changes to result limits or timeouts are applied in place.
    """
    if old.enabled != new.enabled or old.project_root != new.project_root:
        return True
    if old.absolute_data_dir != new.absolute_data_dir:
        return True

    for section, fields in _RECREATE_FIELDS.items():
        old_section = getattr(old, section)
        new_section = getattr(new, section)
        for name in fields:
            if getattr(old_section, name) != getattr(new_section, name):
                return True

    return old.scanner.extensions != new.scanner.extensions


def load_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
) -> Config:
    """
    Load configuration with automatic discovery.

    Priority:
    1. Explicit config_path if provided
    2. codeindex.toml in project_root
    3. .codeindex/config.toml in project_root
    4. Default configuration
    """
    root = project_root or Path.cwd()

    if config_path and config_path.exists():
        config = Config.from_file(config_path)
        return config.model_copy(update={"project_root": root.resolve()})

    candidates = [
        root / "codeindex.toml",
        root / ".codeindex" / "config.toml",
        root / "codeindex.json",
    ]

    for candidate in candidates:
        if candidate.exists():
            config = Config.from_file(candidate)
            return config.model_copy(update={"project_root": root.resolve()})

    return Config(project_root=root)
