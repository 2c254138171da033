"""Shared fixtures for the KnowBase test-suite."""

from __future__ import annotations

import threading
import zlib
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from knowbase.config import AppConfig
from knowbase.ingestion.extractor import extract_keywords
from knowbase.service import KnowledgeBase
from knowbase.utils.text import fold_accents


HORARIOS_TEXT = (
    "El horario de atención al público es de lunes a viernes, de nueve a dieciocho horas.\n\n"
    "Los envíos a domicilio se realizan en un plazo máximo de cuarenta y ocho horas hábiles."
)
PRECIOS_TEXT = (
    "La matrícula anual cuesta doscientos euros y se abona en el momento de la inscripción.\n\n"
    "Las cuotas mensuales se pagan por transferencia bancaria antes del día cinco de cada mes."
)


class FakeEmbeddingProvider:
    """Deterministic bag-of-words embedder with call recording and failure injection.

    Each accent-folded keyword is hashed into one bucket, so texts sharing
    words have positive cosine similarity and unrelated texts score zero.
    """

    def __init__(self, dimension: int = 64, name: str = "fake", failures: Optional[List[Exception]] = None) -> None:
        self._dimension = dimension
        self._name = name
        self.failures = list(failures or [])
        self.batches: List[List[str]] = []
        self.queries: List[str] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def dimension(self) -> int:
        return self._dimension

    def vector(self, text: str) -> List[float]:
        values = [0.0] * self._dimension
        for word in extract_keywords(text):
            bucket = zlib.crc32(fold_accents(word).encode("utf-8")) % self._dimension
            values[bucket] += 1.0
        return values

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batches.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.vector(text) for text in texts]

    def embed(self, text: str) -> List[float]:
        self.queries.append(text)
        return self.vector(text)


class BlockingEmbeddingProvider(FakeEmbeddingProvider):
    """Holds every batch until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.release.wait(timeout=10)
        return super().embed_batch(texts)


class RecordingSleep:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_kb(tmp_path: Path, no_sleep: RecordingSleep) -> Callable[..., KnowledgeBase]:
    """Factory for a KnowledgeBase rooted in a temporary directory."""

    def _make(provider: Optional[FakeEmbeddingProvider] = None, **overrides) -> KnowledgeBase:
        config = AppConfig(knowledge_dir=tmp_path / "kb", provider="none", **overrides)
        return KnowledgeBase(config, provider=provider, sleep=no_sleep)

    return _make
