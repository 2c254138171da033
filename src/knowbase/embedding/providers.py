"""Embedding providers.

Two implementations share one protocol: the OpenAI embeddings API and a
local sentence-transformers model. Provider failures are translated into
the engine's error taxonomy so the retry policy can tell transient errors
from permanent ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
import openai
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from knowbase.errors import ProviderError, ProviderUnavailableError, TransientProviderError

if TYPE_CHECKING:
    from knowbase.config import AppConfig

DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_LOCAL_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"

OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into fixed-length vectors."""

    @property
    def name(self) -> str:
        """Tag stored on every chunk embedded by this provider."""
        ...

    @property
    def dimension(self) -> int:
        """Length of every vector this provider returns."""
        ...

    def embed(self, text: str) -> List[float]:
        ...

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...


def _retry_after(exc: openai.APIStatusError) -> Optional[float]:
    try:
        value = exc.response.headers.get("retry-after")
        return float(value) if value else None
    except (AttributeError, ValueError):
        return None


def translate_openai_error(exc: Exception) -> ProviderError:
    """Map an OpenAI SDK exception onto the retry taxonomy."""
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderUnavailableError(str(exc), status_code=exc.status_code)
    if isinstance(exc, openai.APITimeoutError):
        return TransientProviderError(f"Request timed out: {exc}")
    if isinstance(exc, openai.APIConnectionError):
        return TransientProviderError(f"Connection error: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429 or exc.status_code >= 500:
            return TransientProviderError(
                str(exc), status_code=exc.status_code, retry_after=_retry_after(exc)
            )
        return ProviderError(str(exc), status_code=exc.status_code)
    return ProviderError(str(exc))


@dataclass(slots=True)
class OpenAIEmbeddingConfig:
    model: str = DEFAULT_OPENAI_MODEL
    api_key: Optional[str] = None
    timeout: float = 30.0
    dimension: Optional[int] = None


class OpenAIEmbeddingProvider:
    """Embeddings from the OpenAI API.

    The SDK's own retries are disabled; callers wrap each batch in
    ``knowbase.utils.retry.with_retry`` instead.
    """

    def __init__(self, config: OpenAIEmbeddingConfig | None = None, *, client: OpenAI | None = None) -> None:
        self.config = config or OpenAIEmbeddingConfig()
        if client is None:
            try:
                client = OpenAI(api_key=self.config.api_key, timeout=self.config.timeout, max_retries=0)
            except openai.OpenAIError as exc:
                raise ProviderUnavailableError(f"OpenAI client unavailable: {exc}") from exc
        self._client = client
        self._dimension = self.config.dimension or OPENAI_DIMENSIONS.get(self.config.model, 1536)

    @property
    def name(self) -> str:
        return "openai"

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = self._client.embeddings.create(
                model=self.config.model,
                input=list(texts),
                encoding_format="float",
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc

        embeddings = [list(item.embedding) for item in response.data]
        if len(embeddings) != len(texts):
            raise ProviderError(f"Expected {len(texts)} embeddings, got {len(embeddings)}")
        for vector in embeddings:
            if len(vector) != self._dimension:
                raise ProviderError(
                    f"Embedding dimension mismatch: expected {self._dimension}, got {len(vector)}"
                )
        logger.debug(f"Generated {len(embeddings)} embeddings with {self.config.model}")
        return embeddings

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]


@dataclass(slots=True)
class LocalEmbeddingConfig:
    model_name: str = DEFAULT_LOCAL_MODEL
    batch_size: int = 16
    normalize: bool = True
    device: str | None = None


class SentenceTransformerProvider:
    """Thin wrapper around `SentenceTransformer`, loaded on first use."""

    def __init__(self, config: LocalEmbeddingConfig | None = None) -> None:
        self.config = config or LocalEmbeddingConfig()
        self._model: SentenceTransformer | None = None

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load the model on first access."""
        if self._model is None:
            logger.info(f"Loading local embedding model {self.config.model_name}")
            try:
                self._model = SentenceTransformer(self.config.model_name, device=self.config.device)
            except Exception as exc:
                raise ProviderUnavailableError(
                    f"Could not load {self.config.model_name}: {exc}"
                ) from exc
        return self._model

    @property
    def name(self) -> str:
        return "local"

    @property
    def dimension(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Return float32 embeddings for input texts."""
        if not texts:
            return []
        embeddings = self.model.encode(
            list(texts),
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return np.asarray(embeddings, dtype="float32").tolist()

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]


def build_provider(config: "AppConfig") -> Optional[EmbeddingProvider]:
    """Construct the configured provider, or ``None`` for keyword-only mode."""
    if config.provider == "none":
        return None
    try:
        if config.provider == "local":
            return SentenceTransformerProvider(LocalEmbeddingConfig(model_name=config.local_model))
        return OpenAIEmbeddingProvider(
            OpenAIEmbeddingConfig(model=config.embedding_model, timeout=config.request_timeout)
        )
    except ProviderError as exc:
        logger.warning(f"Embedding provider {config.provider!r} unavailable, using keyword search only: {exc}")
        return None
