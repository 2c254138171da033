"""KnowledgeBase: wires storage, stages, embeddings and search together."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from knowbase.config import AppConfig
from knowbase.embedding.cache import EmbeddingCacheManager
from knowbase.embedding.providers import EmbeddingProvider, build_provider
from knowbase.index.stages import StageRegistry
from knowbase.index.store import DocumentStore
from knowbase.models import CacheSnapshot, EmbeddingReport, FileRecord, SearchOutcome, SearchResult, Stage
from knowbase.search.facade import KnowledgeSearch
from knowbase.search.semantic import SemanticRetriever
from knowbase.utils.retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

_FROM_CONFIG: Any = object()


class KnowledgeBase:
    """Composition root for one knowledge directory.

    Pass ``provider=None`` to force keyword-only mode; when omitted the
    provider is built from ``config.provider``.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        provider: Optional[EmbeddingProvider] = _FROM_CONFIG,
        base_dir: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or AppConfig()
        self.root = self.config.resolve_knowledge_dir(base_dir)
        self.root.mkdir(parents=True, exist_ok=True)

        if provider is _FROM_CONFIG:
            provider = build_provider(self.config)
        self.provider = provider

        self.stages = StageRegistry(self.root)
        self.store = DocumentStore(self.root, stages=self.stages, max_upload_bytes=self.config.max_upload_bytes)
        self.cache = EmbeddingCacheManager(
            self.store,
            stages=self.stages,
            provider=provider,
            batch_size=self.config.embedding_batch_size,
            retry_policy=RetryPolicy(
                max_retries=self.config.max_retries,
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
            ),
            sleep=sleep,
        )
        self.retriever = SemanticRetriever(provider) if provider is not None else None
        self.search_engine = KnowledgeSearch(self.cache, stages=self.stages, retriever=self.retriever)

        self.stages.subscribe(self.cache.invalidate)
        if self.retriever is not None:
            self.cache.on_reload(self.retriever.clear_cache)

        LOGGER.debug("Knowledge base at %s (provider: %s)", self.root, provider.name if provider else "none")

    async def upload(self, data: bytes, name: str, stage_id: Optional[str] = None) -> FileRecord:
        record = await asyncio.to_thread(self.store.add_file, data, name, stage_id)
        self.cache.invalidate()
        return record

    async def delete(self, file_id: str) -> bool:
        deleted = await asyncio.to_thread(self.store.delete_file, file_id)
        if deleted:
            self.cache.invalidate()
        return deleted

    def list_files(self) -> List[FileRecord]:
        return self.store.list_files()

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        return self.store.get_file(file_id)

    def list_stages(self) -> List[Stage]:
        return self.stages.list_stages()

    def create_stage(self, name: str) -> Stage:
        return self.stages.create_stage(name)

    def toggle_stage(self, stage_id: str, is_active: Optional[bool] = None) -> Stage:
        """Set (or flip, when ``is_active`` is None) a stage's active flag."""
        if is_active is None:
            stage = self.stages.get_stage(stage_id)
            if stage is None:
                raise KeyError(f"Stage not found: {stage_id}")
            is_active = not stage.is_active
        return self.stages.set_active(stage_id, is_active)

    def delete_stage(self, stage_id: str) -> bool:
        return self.stages.delete_stage(stage_id)

    async def regenerate_embeddings(self, file_ids: Optional[Iterable[str]] = None) -> EmbeddingReport:
        return await self.cache.regenerate_embeddings(file_ids)

    async def search(self, query: str, max_results: int = 5) -> List[SearchResult]:
        return await self.search_engine.search(query, max_results)

    async def retrieve(self, query: str, max_results: int = 5) -> SearchOutcome:
        return await self.search_engine.retrieve(query, max_results)

    async def get_context(self, query: str, max_results: int = 5) -> List[str]:
        return await self.search_engine.get_context(query, max_results)

    async def warmup(self) -> bool:
        """Embed a throwaway text so the first real query skips model start-up.

        Failures are logged and reported as ``False``; they never raise.
        """
        if self.provider is None:
            return False
        start = time.perf_counter()
        try:
            await asyncio.to_thread(self.provider.embed, "warmup")
        except Exception as exc:
            LOGGER.warning("Embedding provider warmup failed: %s", exc)
            return False
        elapsed_ms = (time.perf_counter() - start) * 1000
        LOGGER.info("Embedding provider %s warmed up in %.0f ms", self.provider.name, elapsed_ms)
        return True

    async def reload(self) -> CacheSnapshot:
        """Re-read storage now; concurrent callers share one load."""
        return await self.cache.reload()

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.cache.stats())
        stats["files"] = len(self.store.list_files())
        stats["stages"] = len(self.stages.list_stages())
        stats["provider"] = self.provider.name if self.provider is not None else "none"
        return stats
