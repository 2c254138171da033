"""Cosine-similarity retrieval over a cache snapshot."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

import numpy as np

from knowbase.embedding.providers import EmbeddingProvider
from knowbase.models import CacheSnapshot, SnapshotEntry

LOGGER = logging.getLogger(__name__)

QUERY_CACHE_TTL = 300.0
QUERY_CACHE_SIZE = 200
DEFAULT_TOP_K = 15


class QueryEmbeddingCache:
    """Small LRU of query embeddings with a time-to-live."""

    def __init__(
        self,
        *,
        ttl: float = QUERY_CACHE_TTL,
        max_size: int = QUERY_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[float, np.ndarray]]" = OrderedDict()

    def get(self, query: str) -> Optional[np.ndarray]:
        with self._lock:
            item = self._entries.get(query)
            if item is None:
                return None
            stored_at, vector = item
            if self._clock() - stored_at > self.ttl:
                del self._entries[query]
                return None
            self._entries.move_to_end(query)
            return vector

    def put(self, query: str, vector: np.ndarray) -> None:
        with self._lock:
            self._entries[query] = (self._clock(), vector)
            self._entries.move_to_end(query)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SemanticRetriever:
    """Ranks embedded chunks by cosine similarity to the query.

    Any provider failure or dimension mismatch yields an empty result;
    callers fall back to keyword results.
    """

    def __init__(self, provider: Optional[EmbeddingProvider], *, cache: QueryEmbeddingCache | None = None) -> None:
        self.provider = provider
        self.cache = cache or QueryEmbeddingCache()

    def clear_cache(self, *_: object) -> None:
        """Drop cached query embeddings; usable as a reload listener."""
        self.cache.clear()

    async def embed_query(self, query: str) -> Optional[np.ndarray]:
        """Unit-length query vector, or ``None`` if it cannot be computed."""
        if self.provider is None:
            return None
        key = query.strip()
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            raw = await asyncio.to_thread(self.provider.embed, key)
        except Exception as exc:
            LOGGER.warning("Could not embed query, skipping semantic search: %s", exc)
            return None
        vector = np.asarray(raw, dtype="float32")
        norm = float(np.linalg.norm(vector))
        if vector.ndim != 1 or norm == 0.0:
            LOGGER.warning("Provider returned an unusable query embedding")
            return None
        vector = vector / norm
        self.cache.put(key, vector)
        return vector

    async def find_relevant_chunks(
        self,
        snapshot: CacheSnapshot,
        query: str,
        top_k: int = DEFAULT_TOP_K,
    ) -> List[Tuple[SnapshotEntry, float]]:
        """Top ``top_k`` embedded entries by cosine similarity, best first."""
        if not query.strip() or top_k <= 0 or not snapshot.has_embeddings:
            return []
        vector = await self.embed_query(query)
        if vector is None:
            return []
        if vector.shape[0] != snapshot.dimension:
            LOGGER.warning(
                "Query embedding has %d dimensions but the knowledge base uses %d; skipping semantic search",
                vector.shape[0],
                snapshot.dimension,
            )
            return []

        scores = snapshot.matrix @ vector
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [(snapshot.entries[snapshot.embedded_rows[idx]], float(scores[idx])) for idx in order]
