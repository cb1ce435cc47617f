"""
Embedding backend abstraction.

Provides:
- Abstract base class with shared token-budgeted sub-batching and retries
- OpenAI and OpenAI-compatible (LM Studio, vLLM, ...) backends
- Ollama backend over its native HTTP API
- Local ONNX backend (no network required)
- Validation with user-actionable failure categories
"""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator

import httpx
import numpy as np
import structlog

from codeindex.config import EmbedderProvider
from codeindex.errors import (
    CodeIndexError,
    ConfigurationError,
    ConnectivityError,
    EmbeddingError,
    TransientProviderError,
    ValidationCategory,
    ValidationError,
)
from codeindex.indexing.chunker import estimate_tokens
from codeindex.indexing.retry import is_retriable_status, retry_async

if TYPE_CHECKING:
    from codeindex.config import Config

logger = structlog.get_logger(__name__)

VALIDATION_PROBE = "test"

# Known output sizes, used when the configuration does not set a dimension.
MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "nomic-embed-text": 768,
    "text-embedding-nomic-embed-text-v1.5@f16": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "bge-small-en-v1.5": 384,
    "all-MiniLM-L6-v2": 384,
    "all-mpnet-base-v2": 768,
}

HOST_NOT_FOUND_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "no address associated",
    "temporary failure in name resolution",
    "enotfound",
)


@dataclass
class EmbeddingUsage:
    """Token usage for one embed call."""

    prompt_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False


@dataclass
class EmbeddingResponse:
    """
    Result of embedding a list of texts.

    ``embeddings`` is aligned with the input; skipped items hold None and
    their input indices are listed in ``skipped``.
    """

    embeddings: list[np.ndarray | None]
    usage: EmbeddingUsage = field(default_factory=EmbeddingUsage)
    skipped: list[int] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Outcome of an embedder self-test."""

    valid: bool
    error: str | None = None
    category: ValidationCategory | None = None


def status_of(exc: BaseException) -> int | None:
    """Best-effort HTTP status code carried by an exception."""
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _error_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1
    return vectors / norms


class Embedder(ABC):
    """
    Abstract base class for embedding backends.

    Subclasses implement ``_request`` for one already-planned sub-batch.
    Splitting, retrying and usage accounting happen here.
    """

    def __init__(
        self,
        config: "Config",
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        settings = config.embedder
        self.config = config
        self.model = settings.model or self.default_model
        self._dimension = settings.dimension or MODEL_DIMENSIONS.get(self.model)
        self.timeout = settings.timeout_seconds
        self.max_attempts = settings.max_retries
        self.initial_delay = settings.initial_retry_delay_ms / 1000
        self.max_delay = settings.max_retry_delay_ms / 1000
        self.max_item_tokens = settings.max_item_tokens
        self.max_batch_tokens = settings.max_batch_tokens
        self._sleep = sleep or asyncio.sleep

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend identifier."""

    @property
    def default_model(self) -> str:
        return "nomic-embed-text"

    @property
    def dimension(self) -> int:
        """Return the embedding dimension."""
        if self._dimension is None:
            raise ConfigurationError(
                f"Unknown dimension for model '{self.model}'; set embedder.dimension"
            )
        return self._dimension

    @abstractmethod
    async def _request(self, texts: list[str]) -> tuple[list[np.ndarray], int | None]:
        """
        Embed one sub-batch.

        Returns:
            Vectors aligned with ``texts`` and the provider-reported token
            count, or None when the provider does not report usage.
        """

    def _plan_batches(self, texts: list[str]) -> tuple[list[list[int]], list[int]]:
        """Split input indices into sub-batches within the token limits."""
        batches: list[list[int]] = []
        skipped: list[int] = []
        current: list[int] = []
        current_tokens = 0

        for index, text in enumerate(texts):
            tokens = estimate_tokens(text)
            if tokens > self.max_item_tokens:
                logger.warning(
                    "Skipping oversized embedding input",
                    embedder=self.name,
                    index=index,
                    tokens=tokens,
                    limit=self.max_item_tokens,
                )
                skipped.append(index)
                continue

            if current and current_tokens + tokens > self.max_batch_tokens:
                batches.append(current)
                current, current_tokens = [], 0

            current.append(index)
            current_tokens += tokens

        if current:
            batches.append(current)
        return batches, skipped

    def _is_retriable(self, exc: Exception) -> bool:
        return is_retriable_status(status_of(exc))

    def _is_connection_error(self, exc: BaseException) -> bool:
        return isinstance(exc, (httpx.TransportError, ConnectionError))

    def _translate_error(self, exc: Exception) -> CodeIndexError:
        if self._is_connection_error(exc):
            return ConnectivityError(f"{self.name} embedder unreachable: {exc}")
        return EmbeddingError(
            f"{self.name} embedding request failed: {exc}",
            status_code=status_of(exc),
        )

    async def _request_with_retry(
        self, texts: list[str]
    ) -> tuple[list[np.ndarray], int | None]:
        try:
            return await retry_async(
                lambda: self._request(texts),
                self._is_retriable,
                max_attempts=self.max_attempts,
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
                status_of=status_of,
            )
        except CodeIndexError:
            raise
        except Exception as e:
            raise self._translate_error(e) from e

    async def embed(self, texts: list[str]) -> EmbeddingResponse:
        """
        Embed texts, splitting them into sub-batches as needed.

        Args:
            texts: Input texts.

        Returns:
            EmbeddingResponse aligned with ``texts``.

        Raises:
            TransientProviderError: Retries exhausted for a sub-batch.
            ConnectivityError: The backend could not be reached.
            EmbeddingError: The backend rejected a sub-batch.
        """
        response = EmbeddingResponse(embeddings=[None] * len(texts))
        if not texts:
            return response

        plan, response.skipped = self._plan_batches(texts)

        for indices in plan:
            batch = [texts[i] for i in indices]
            vectors, tokens = await self._request_with_retry(batch)
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"{self.name} returned {len(vectors)} vectors for {len(batch)} inputs"
                )

            for index, vector in zip(indices, vectors):
                response.embeddings[index] = np.asarray(vector, dtype=np.float32)

            if tokens is None:
                tokens = sum(estimate_tokens(t) for t in batch)
                response.usage.estimated = True
            response.usage.prompt_tokens += tokens
            response.usage.total_tokens += tokens

        return response

    async def _preflight(self) -> None:
        """Cheap backend metadata check run before the validation probe."""

    async def validate(self) -> ValidationResult:
        """
        Self-test the backend with a minimal round-trip.

        Never raises; failures are returned with a category.
        """
        try:
            await self._preflight()
            response = await self.embed([VALIDATION_PROBE])
            vector = response.embeddings[0] if response.embeddings else None
            if vector is None or vector.size == 0:
                raise ValidationError(
                    f"{self.name} returned no embedding for the validation probe",
                    ValidationCategory.CONFIGURATION,
                )
            if self._dimension is None:
                self._dimension = int(vector.shape[0])
            elif vector.shape[0] != self._dimension:
                raise ValidationError(
                    f"Model '{self.model}' produces {vector.shape[0]}-dimensional "
                    f"vectors, expected {self._dimension}",
                    ValidationCategory.CONFIGURATION,
                )
        except Exception as e:
            category = self._classify(e)
            message = self._describe(category, e)
            logger.warning(
                "Embedder validation failed",
                embedder=self.name,
                category=category.value,
                error=str(e),
            )
            return ValidationResult(valid=False, error=message, category=category)

        logger.info("Embedder validated", embedder=self.name, model=self.model)
        return ValidationResult(valid=True)

    def _classify(self, exc: BaseException) -> ValidationCategory:
        for err in _error_chain(exc):
            if isinstance(err, ValidationError):
                return err.category
            if isinstance(err, ConfigurationError):
                return ValidationCategory.CONFIGURATION
            if isinstance(err, TransientProviderError):
                return ValidationCategory.SERVICE_UNAVAILABLE

            status = status_of(err)
            if status in (401, 403):
                return ValidationCategory.AUTHENTICATION
            if status == 404:
                return ValidationCategory.MODEL_NOT_FOUND
            if status is not None and is_retriable_status(status):
                return ValidationCategory.SERVICE_UNAVAILABLE

        for err in _error_chain(exc):
            message = str(err).lower()
            if any(hint in message for hint in HOST_NOT_FOUND_HINTS):
                return ValidationCategory.HOST_NOT_FOUND
        if any(self._is_connection_error(err) for err in _error_chain(exc)):
            return ValidationCategory.SERVICE_UNAVAILABLE
        return ValidationCategory.CONFIGURATION

    def _describe(self, category: ValidationCategory, exc: BaseException) -> str:
        if category is ValidationCategory.SERVICE_UNAVAILABLE:
            return f"The {self.name} embedding service is not reachable or not running: {exc}"
        if category is ValidationCategory.HOST_NOT_FOUND:
            return f"The {self.name} host could not be resolved: {exc}"
        if category is ValidationCategory.MODEL_NOT_FOUND:
            return f"Model '{self.model}' was not found by {self.name}: {exc}"
        if category is ValidationCategory.MODEL_NOT_EMBEDDING_CAPABLE:
            return f"Model '{self.model}' does not support embeddings: {exc}"
        if category is ValidationCategory.AUTHENTICATION:
            return f"{self.name} rejected the configured credentials: {exc}"
        return f"Invalid {self.name} embedder configuration: {exc}"

    async def close(self) -> None:
        """Cleanup resources."""


class OpenAIEmbedder(Embedder):
    """
    OpenAI embeddings API backend.

    The client's own retries are disabled so that the shared retry policy
    governs every request.
    """

    def __init__(
        self,
        config: "Config",
        sleep: Callable[[float], Awaitable[None]] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, sleep=sleep)
        from openai import AsyncOpenAI

        self.base_url = self._resolve_base_url(config.embedder.base_url)
        self._client = AsyncOpenAI(
            api_key=self._resolve_api_key(config.embedder.api_key),
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=http_client,
        )

    @property
    def name(self) -> str:
        return "openai"

    @property
    def default_model(self) -> str:
        return "text-embedding-3-small"

    def _resolve_base_url(self, base_url: str | None) -> str | None:
        return base_url

    def _resolve_api_key(self, api_key: str | None) -> str:
        if not api_key:
            raise ConfigurationError("embedder.api_key is required for the openai provider")
        return api_key

    def _is_connection_error(self, exc: BaseException) -> bool:
        import openai

        return isinstance(exc, openai.APIConnectionError) or super()._is_connection_error(exc)

    async def _request(self, texts: list[str]) -> tuple[list[np.ndarray], int | None]:
        response = await self._client.embeddings.create(
            model=self.model,
            input=texts,
            encoding_format="float",
        )
        data = sorted(response.data, key=lambda d: d.index)
        vectors = [np.asarray(d.embedding, dtype=np.float32) for d in data]
        tokens = response.usage.prompt_tokens if response.usage else None
        return vectors, tokens

    async def close(self) -> None:
        await self._client.close()


class OpenAICompatibleEmbedder(OpenAIEmbedder):
    """
    Backend for servers speaking the OpenAI embeddings protocol.

    Covers LM Studio, vLLM and similar local servers. The base URL is
    normalized to end in ``/v1`` and a placeholder key is used when none is
    configured.
    """

    DEFAULT_BASE_URL = "http://localhost:1234"

    @property
    def name(self) -> str:
        return "openai-compatible"

    @property
    def default_model(self) -> str:
        return "text-embedding-nomic-embed-text-v1.5@f16"

    def _resolve_base_url(self, base_url: str | None) -> str:
        url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        if not url.endswith("/v1"):
            url = f"{url}/v1"
        return url

    def _resolve_api_key(self, api_key: str | None) -> str:
        return api_key or "noop"


class OllamaEmbedder(Embedder):
    """
    Ollama backend using ``POST /api/embed``.

    Validation first lists installed models via ``GET /api/tags`` and then
    embeds a probe string.
    """

    DEFAULT_BASE_URL = "http://localhost:11434"

    def __init__(
        self,
        config: "Config",
        sleep: Callable[[float], Awaitable[None]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config, sleep=sleep)
        self.base_url = (config.embedder.base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "ollama"

    async def _request(self, texts: list[str]) -> tuple[list[np.ndarray], int | None]:
        response = await self._client.post(
            "/api/embed",
            json={"model": self.model, "input": texts},
        )
        if response.is_error:
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code}: {response.text.strip()}",
                request=response.request,
                response=response,
            )

        data = response.json()
        vectors = [np.asarray(v, dtype=np.float32) for v in data.get("embeddings", [])]
        return vectors, data.get("prompt_eval_count")

    def _model_matches(self, name: str) -> bool:
        return name == self.model or name.split(":")[0] == self.model or (
            ":" not in self.model and name == f"{self.model}:latest"
        )

    async def _preflight(self) -> None:
        response = await self._client.get("/api/tags")
        if response.is_error:
            raise ValidationError(
                f"Ollama at {self.base_url} answered HTTP {response.status_code} "
                f"for /api/tags",
                ValidationCategory.SERVICE_UNAVAILABLE,
            )

        names = [m.get("name", "") for m in response.json().get("models", [])]
        if not any(self._model_matches(n) for n in names):
            raise ValidationError(
                f"Model '{self.model}' is not installed "
                f"(available: {', '.join(names) or 'none'})",
                ValidationCategory.MODEL_NOT_FOUND,
            )

    def _classify(self, exc: BaseException) -> ValidationCategory:
        category = super()._classify(exc)
        if category is ValidationCategory.CONFIGURATION:
            for err in _error_chain(exc):
                status = status_of(err)
                if status is not None and 400 <= status < 500:
                    return ValidationCategory.MODEL_NOT_EMBEDDING_CAPABLE
        return category

    async def close(self) -> None:
        await self._client.aclose()


class LocalONNXEmbedder(Embedder):
    """
    Local ONNX embedding backend.

    Features:
    - No network access at all
    - Lazy model loading
    - Mean pooling with attention mask and L2 normalization

    ``embedder.model_path`` must point at a directory holding ``model.onnx``
    and ``tokenizer.json``.
    """

    MAX_SEQUENCE_TOKENS = 256

    def __init__(
        self,
        config: "Config",
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        super().__init__(config, sleep=sleep)
        self.model_path = config.embedder.model_path
        self._session: Any = None
        self._tokenizer: Any = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "local-onnx"

    @property
    def default_model(self) -> str:
        return "all-MiniLM-L6-v2"

    def _is_retriable(self, exc: Exception) -> bool:
        return False

    def _model_files(self) -> tuple[Path, Path]:
        if self.model_path is None:
            raise ConfigurationError("embedder.model_path is required for the local_onnx provider")
        model_dir = Path(self.model_path)
        model_file = model_dir / "model.onnx"
        tokenizer_file = model_dir / "tokenizer.json"
        missing = [str(p) for p in (model_file, tokenizer_file) if not p.is_file()]
        if missing:
            raise ConfigurationError(f"Model files not found: {', '.join(missing)}")
        return model_file, tokenizer_file

    async def initialize(self) -> None:
        """Load the ONNX session and tokenizer once."""
        if self._session is not None:
            return

        async with self._lock:
            if self._session is not None:
                return

            model_file, tokenizer_file = self._model_files()
            logger.info("Loading ONNX embedding model", path=str(model_file))

            import onnxruntime as ort
            from tokenizers import Tokenizer

            sess_options = ort.SessionOptions()
            sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
            sess_options.intra_op_num_threads = min(4, os.cpu_count() or 1)

            session = await asyncio.to_thread(
                ort.InferenceSession,
                str(model_file),
                sess_options,
                providers=["CPUExecutionProvider"],
            )

            tokenizer = Tokenizer.from_file(str(tokenizer_file))
            tokenizer.enable_truncation(max_length=self.MAX_SEQUENCE_TOKENS)
            tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")

            self._tokenizer = tokenizer
            self._session = session

    async def _request(self, texts: list[str]) -> tuple[list[np.ndarray], int | None]:
        await self.initialize()
        vectors = await asyncio.to_thread(self._embed_sync, texts)
        return vectors, None

    def _embed_sync(self, texts: list[str]) -> list[np.ndarray]:
        encodings = self._tokenizer.encode_batch(texts)

        input_ids = np.array([e.ids for e in encodings], dtype=np.int64)
        attention_mask = np.array([e.attention_mask for e in encodings], dtype=np.int64)

        inputs = {"input_ids": input_ids, "attention_mask": attention_mask}
        input_names = {i.name for i in self._session.get_inputs()}
        if "token_type_ids" in input_names:
            inputs["token_type_ids"] = np.zeros_like(input_ids)

        last_hidden_state = self._session.run(None, inputs)[0]

        mask = np.expand_dims(attention_mask, -1).astype(last_hidden_state.dtype)
        summed = np.sum(last_hidden_state * mask, axis=1)
        counts = np.clip(np.sum(mask, axis=1), a_min=1e-9, a_max=None)
        embeddings = _normalize(summed / counts)

        return [embeddings[i] for i in range(len(texts))]

    async def close(self) -> None:
        self._session = None
        self._tokenizer = None


def create_embedder(config: "Config") -> Embedder:
    """
    Factory function to create the configured embedding backend.

    Args:
        config: codeindex configuration.

    Returns:
        Embedder instance.

    Raises:
        ConfigurationError: The provider is missing required settings.
    """
    provider = config.embedder.provider

    if provider is EmbedderProvider.OPENAI:
        embedder: Embedder = OpenAIEmbedder(config)
    elif provider is EmbedderProvider.OPENAI_COMPATIBLE:
        embedder = OpenAICompatibleEmbedder(config)
    elif provider is EmbedderProvider.OLLAMA:
        embedder = OllamaEmbedder(config)
    elif provider is EmbedderProvider.LOCAL_ONNX:
        embedder = LocalONNXEmbedder(config)
    else:
        raise ConfigurationError(f"Unsupported embedder provider: {provider}")

    logger.info("Created embedder", provider=embedder.name, model=embedder.model)
    return embedder
