"""In-memory snapshot of every searchable chunk, with single-flight reloads.

The manager owns two pieces of shared state: the published snapshot and
the in-flight load task. Both change only inside a short critical section;
disk reads and embedding calls happen in worker threads outside it.

Concurrency contract:

- ``reload()`` callers that arrive while a load is running join that load
  and receive the very same ``CacheSnapshot`` object.
- Once a load settles (success or failure) the slot is cleared; the next
  ``reload()`` re-reads storage.
- ``invalidate()`` is synchronous and bumps a generation counter. A snapshot
  built for an older generation is stale, and ``get_snapshot()`` replaces it
  before answering.
- ``get_snapshot()`` waits for the disk read only. A load that has chunks to
  embed first publishes a ``pending`` snapshot, then a complete one once the
  provider is done.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from knowbase.embedding.providers import EmbeddingProvider
from knowbase.errors import ProviderError, ProviderUnavailableError
from knowbase.index.stages import StageRegistry, get_active_files
from knowbase.index.store import DocumentStore
from knowbase.models import CacheSnapshot, Chunk, ChunkData, EmbeddingReport, FileRecord, SnapshotEntry
from knowbase.utils.retry import RetryPolicy, with_retry

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
MAX_STALE_RELOADS = 3

LoadedFile = Tuple[FileRecord, ChunkData]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _resolve(ready: Optional[asyncio.Future], snapshot: CacheSnapshot) -> None:
    if ready is not None and not ready.done():
        ready.set_result(snapshot)


def _embed_texts(provider: EmbeddingProvider, texts: List[str]) -> List[List[float]]:
    """Blocking provider call, validated against the declared dimension."""
    vectors = provider.embed_batch(texts)
    if len(vectors) != len(texts):
        raise ProviderError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts")
    expected = provider.dimension
    for vector in vectors:
        if len(vector) != expected:
            raise ProviderError(f"Embedding dimension mismatch: expected {expected}, got {len(vector)}")
    return vectors


def build_snapshot(
    entries: Sequence[SnapshotEntry],
    *,
    generation: int,
    report: EmbeddingReport | None = None,
    pending: bool = False,
) -> CacheSnapshot:
    """Freeze ``entries`` into a snapshot with a normalized embedding matrix.

    Only embeddings of the dominant dimension are indexed; vectors left over
    from a different provider are ignored for semantic search.
    """
    entries = tuple(entries)
    lengths = Counter(len(e.chunk.embedding) for e in entries if e.chunk.embedding)
    matrix = None
    rows: Tuple[int, ...] = ()
    if lengths:
        dimension, _ = lengths.most_common(1)[0]
        if len(lengths) > 1:
            LOGGER.warning(
                "Mixed embedding dimensions %s; indexing only %d-dimensional vectors",
                dict(lengths),
                dimension,
            )
        candidates = [
            i for i, e in enumerate(entries) if e.chunk.embedding and len(e.chunk.embedding) == dimension
        ]
        vectors = np.asarray([entries[i].chunk.embedding for i in candidates], dtype="float32")
        norms = np.linalg.norm(vectors, axis=1)
        keep = norms > 0
        if keep.any():
            matrix = vectors[keep] / norms[keep][:, None]
            rows = tuple(i for i, ok in zip(candidates, keep) if ok)
    return CacheSnapshot(
        entries=entries,
        generation=generation,
        loaded_at=_utc_now(),
        report=report or EmbeddingReport(),
        matrix=matrix,
        embedded_rows=rows,
        pending=pending,
    )


@dataclass(slots=True)
class _Load:
    """A running full load; ``ready`` resolves once its files are searchable."""

    task: asyncio.Task
    ready: asyncio.Future
    generation: int


class EmbeddingCacheManager:
    """Loads visible chunks, fills in missing embeddings and publishes snapshots."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        stages: Optional[StageRegistry] = None,
        provider: Optional[EmbeddingProvider] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.stages = stages
        self.provider = provider
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._snapshot: Optional[CacheSnapshot] = None
        self._generation = 0
        self._inflight: Optional[_Load] = None
        self._rereading: Optional[asyncio.Task] = None
        self._warned_unavailable = False
        self._reload_listeners: List[Callable[[CacheSnapshot], None]] = []
        self.load_count = 0

    @property
    def current(self) -> Optional[CacheSnapshot]:
        """Last published snapshot, or ``None`` before the first load."""
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def on_reload(self, listener: Callable[[CacheSnapshot], None]) -> None:
        self._reload_listeners.append(listener)

    def invalidate(self) -> None:
        """Mark the published snapshot stale; the next search reloads."""
        with self._lock:
            self._generation += 1
            generation = self._generation
        LOGGER.debug("Knowledge cache invalidated (generation %d)", generation)

    def is_stale(self, snapshot: Optional[CacheSnapshot]) -> bool:
        return snapshot is None or snapshot.generation != self._generation

    async def get_snapshot(self) -> CacheSnapshot:
        """Current snapshot, reloading first if it is missing or stale.

        Only the disk read of a load is awaited. The same load then embeds
        new chunks and publishes again, so a slow provider never holds up
        keyword search.
        """
        snapshot = self._snapshot
        attempts = 0
        while self._needs_load(snapshot) and attempts < MAX_STALE_RELOADS:
            snapshot = await self._refresh()
            attempts += 1
        if self.is_stale(snapshot):
            LOGGER.warning("Knowledge cache kept changing during reload; serving generation %d", snapshot.generation)
        return snapshot

    def _needs_load(self, snapshot: Optional[CacheSnapshot]) -> bool:
        if self.is_stale(snapshot):
            return True
        # A pending snapshot whose load is gone (e.g. its event loop closed) never completes
        return snapshot.pending and self._live_load() is None

    async def _refresh(self) -> CacheSnapshot:
        load = self._live_load()
        if load is None:
            load = self._start_load()
        elif load.generation != self._generation:
            # The running load read the files before the latest change
            return await self._reread()
        await asyncio.wait({load.ready, load.task}, return_when=asyncio.FIRST_COMPLETED)
        if load.ready.done():
            return load.ready.result()
        return load.task.result()

    async def reload(self) -> CacheSnapshot:
        """Run a full load, or join the one already in flight."""
        load = self._live_load()
        if load is not None:
            LOGGER.debug("Joining in-flight knowledge load")
        else:
            load = self._start_load()
        return await asyncio.shield(load.task)

    def _live_load(self) -> Optional[_Load]:
        load = self._inflight
        if load is None or load.task.done() or load.task.get_loop() is not asyncio.get_running_loop():
            return None
        return load

    def _start_load(self) -> _Load:
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        load = _Load(task=loop.create_task(self.load_all(ready)), ready=ready, generation=self._generation)
        self._inflight = load
        load.task.add_done_callback(self._settle)
        return load

    def _settle(self, task: asyncio.Task) -> None:
        if self._inflight is not None and self._inflight.task is task:
            self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("Knowledge load failed: %s", task.exception())

    async def _reread(self) -> CacheSnapshot:
        loop = asyncio.get_running_loop()
        task = self._rereading
        if task is None or task.done() or task.get_loop() is not loop:
            task = loop.create_task(self._read_and_publish())
            self._rereading = task
        return await asyncio.shield(task)

    async def _read_and_publish(self) -> CacheSnapshot:
        """Publish the files as stored now, leaving embedding to the next full load."""
        generation = self._generation
        loaded = await asyncio.to_thread(self._read_visible)
        snapshot = self._snapshot_of(loaded, generation, pending=self._embeddable(loaded))
        self._publish(snapshot)
        return snapshot

    async def load_all(self, ready: Optional[asyncio.Future] = None) -> CacheSnapshot:
        """Read every visible file, embed what is missing and publish a snapshot.

        When chunks need embedding, a pending snapshot is published (and
        ``ready`` resolved) straight after the disk read.
        """
        generation = self._generation
        started = time.perf_counter()
        self.load_count += 1

        loaded = await asyncio.to_thread(self._read_visible)
        report = EmbeddingReport()
        if any(not c.embedding_generated for _, data in loaded for c in data.chunks):
            if self.provider is not None:
                early = self._snapshot_of(loaded, generation, pending=True)
                self._publish(early)
                _resolve(ready, early)
            loaded, report = await self._embed_and_persist(loaded)

        snapshot = self._snapshot_of(loaded, generation, report=report)
        self._publish(snapshot)
        LOGGER.info(
            "Loaded %d chunks from %d files (%d with embeddings) in %.2fs",
            len(snapshot),
            len(loaded),
            len(snapshot.embedded_rows),
            time.perf_counter() - started,
        )
        _resolve(ready, snapshot)
        return snapshot

    def _embeddable(self, loaded: Sequence[LoadedFile]) -> bool:
        if self.provider is None:
            return False
        return any(not c.embedding_generated for _, data in loaded for c in data.chunks)

    @staticmethod
    def _snapshot_of(
        loaded: Sequence[LoadedFile],
        generation: int,
        *,
        report: EmbeddingReport | None = None,
        pending: bool = False,
    ) -> CacheSnapshot:
        entries = [
            SnapshotEntry.build(file, position, chunk)
            for file, data in loaded
            for position, chunk in enumerate(data.chunks)
        ]
        return build_snapshot(entries, generation=generation, report=report, pending=pending)

    def _publish(self, snapshot: CacheSnapshot) -> None:
        with self._lock:
            current = self._snapshot
            if current is not None and current.generation > snapshot.generation:
                LOGGER.debug("Discarding snapshot for superseded generation %d", snapshot.generation)
                return
            self._snapshot = snapshot
        for listener in list(self._reload_listeners):
            listener(snapshot)

    def _visible_files(self) -> List[FileRecord]:
        stages = self.stages.snapshot() if self.stages is not None else {}
        return get_active_files(self.store.list_files(), stages)

    def _read_files(self, files: Iterable[FileRecord]) -> List[LoadedFile]:
        loaded = []
        for file in files:
            data = self.store.read_chunk_data(file)
            if data is not None:
                loaded.append((file, data))
        return loaded

    def _read_visible(self) -> List[LoadedFile]:
        return self._read_files(self._visible_files())

    def _persist(self, loaded: Sequence[LoadedFile], changed: Iterable[int]) -> None:
        for index in changed:
            file, data = loaded[index]
            if self.store.get_file(file.id) is None:
                LOGGER.debug("Skipping embeddings for %s, deleted during load", file.original_name)
                continue
            try:
                self.store.write_chunk_data(file, data)
            except OSError as exc:
                LOGGER.warning("Could not persist embeddings for %s: %s", file.original_name, exc)

    async def _embed_and_persist(self, loaded: List[LoadedFile]) -> Tuple[List[LoadedFile], EmbeddingReport]:
        flat = [chunk for _, data in loaded for chunk in data.chunks]
        embedded, report = await self.ensure_embeddings(flat)

        changed = []
        offset = 0
        for index, (_, data) in enumerate(loaded):
            count = len(data.chunks)
            updated = embedded[offset : offset + count]
            offset += count
            if any(new is not old for new, old in zip(updated, data.chunks)):
                data.chunks = updated
                changed.append(index)
        if changed:
            await asyncio.to_thread(self._persist, loaded, changed)
        return loaded, report

    def _warn_unavailable(self, reason: str) -> None:
        if not self._warned_unavailable:
            LOGGER.warning("Embeddings unavailable, continuing with keyword search only: %s", reason)
            self._warned_unavailable = True

    async def ensure_embeddings(self, chunks: Sequence[Chunk]) -> Tuple[List[Chunk], EmbeddingReport]:
        """Return ``chunks`` with embeddings filled in where the provider allows.

        Chunks are never mutated; embedded ones are replaced by new objects.
        A batch that still fails after retries leaves its chunks without an
        embedding and is recorded in the report.
        """
        result = list(chunks)
        pending = [i for i, chunk in enumerate(result) if not chunk.embedding_generated]
        report = EmbeddingReport(requested=len(pending))
        if not pending:
            return result, report

        provider = self.provider
        if provider is None:
            self._warn_unavailable("no embedding provider configured")
            report.skipped = len(pending)
            return result, report

        batches = [pending[i : i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        LOGGER.info("Generating embeddings for %d chunks in %d batches", len(pending), len(batches))
        for number, batch in enumerate(batches, start=1):
            texts = [result[i].text for i in batch]
            try:
                vectors = await with_retry(
                    lambda texts=texts: asyncio.to_thread(_embed_texts, provider, texts),
                    policy=self.retry_policy,
                    name=f"Embedding batch {number}/{len(batches)}",
                    sleep=self._sleep,
                )
            except ProviderUnavailableError as exc:
                self._warn_unavailable(str(exc))
                remaining = sum(len(b) for b in batches[number - 1 :])
                report.skipped += remaining
                report.errors.append(str(exc))
                break
            except Exception as exc:
                LOGGER.warning("Embedding batch %d/%d failed, %d chunks left without embeddings: %s",
                               number, len(batches), len(batch), exc)
                report.failed += len(batch)
                report.errors.append(str(exc))
                continue

            stamp = _utc_now()
            for index, vector in zip(batch, vectors):
                result[index] = replace(
                    result[index],
                    embedding=tuple(float(v) for v in vector),
                    embedding_generated=True,
                    embedding_provider=provider.name,
                    embedding_date=stamp,
                )
            report.embedded += len(batch)
            LOGGER.debug("Embedding batch %d/%d done", number, len(batches))

        if not report.complete:
            LOGGER.warning(
                "Embedded %d/%d chunks (%d failed, %d skipped)",
                report.embedded,
                report.requested,
                report.failed,
                report.skipped,
            )
        return result, report

    async def regenerate_embeddings(self, file_ids: Optional[Iterable[str]] = None) -> EmbeddingReport:
        """Strip and recompute embeddings for the given files (all when ``None``).

        Hidden-stage files are included. Results are persisted and a full
        reload follows.
        """
        wanted = set(file_ids) if file_ids is not None else None
        files = self.store.list_files()
        if wanted is not None:
            missing = wanted - {f.id for f in files}
            if missing:
                LOGGER.warning("Ignoring unknown file ids: %s", ", ".join(sorted(missing)))
            files = [f for f in files if f.id in wanted]

        loaded = await asyncio.to_thread(self._read_files, files)
        flat = [chunk.without_embedding() for _, data in loaded for chunk in data.chunks]
        embedded, report = await self.ensure_embeddings(flat)

        stamp = _utc_now()
        offset = 0
        for _, data in loaded:
            count = len(data.chunks)
            data.chunks = embedded[offset : offset + count]
            data.embeddings_regenerated_at = stamp
            offset += count
        await asyncio.to_thread(self._persist, loaded, range(len(loaded)))
        for file, data in loaded:
            self.store.update_chunk_count(file.id, len(data.chunks))

        LOGGER.info("Regenerated embeddings for %d files (%d/%d chunks)", len(loaded), report.embedded, report.requested)
        self.invalidate()
        await self.reload()
        return report

    def stats(self) -> Dict[str, object]:
        snapshot = self._snapshot
        if snapshot is None:
            return {"loaded": False, "total_chunks": 0, "with_embeddings": 0, "without_embeddings": 0, "dimension": 0}
        with_embeddings = len(snapshot.embedded_rows)
        return {
            "loaded": True,
            "stale": self.is_stale(snapshot),
            "total_chunks": len(snapshot),
            "with_embeddings": with_embeddings,
            "without_embeddings": len(snapshot) - with_embeddings,
            "dimension": snapshot.dimension,
            "loaded_at": snapshot.loaded_at,
        }
