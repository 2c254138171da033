"""Tests for the embedding cache manager."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from conftest import HORARIOS_TEXT, PRECIOS_TEXT, BlockingEmbeddingProvider, FakeEmbeddingProvider
from knowbase.embedding.cache import build_snapshot
from knowbase.errors import ProviderError, ProviderUnavailableError, TransientProviderError
from knowbase.models import Chunk, FileRecord, SnapshotEntry


def _upload_samples(kb) -> list:
    return [
        asyncio.run(kb.upload(HORARIOS_TEXT.encode("utf-8"), "horarios.txt")),
        asyncio.run(kb.upload(PRECIOS_TEXT.encode("utf-8"), "precios.txt")),
    ]


def _chunks(count: int) -> list:
    return [Chunk(text=f"texto número {i} sobre horarios y tarifas") for i in range(count)]


class TestLoadAll:
    """Test EmbeddingCacheManager.load_all."""

    def test_keyword_only_load(self, make_kb) -> None:
        """Should load every chunk without embeddings when no provider is set."""
        kb = make_kb()
        _upload_samples(kb)

        snapshot = asyncio.run(kb.cache.load_all())

        assert len(snapshot) == 4
        assert not snapshot.has_embeddings
        assert snapshot.report.requested == 4
        assert snapshot.report.skipped == 4

    def test_embeds_and_persists(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should embed missing chunks and write them back to storage."""
        kb = make_kb(fake_provider)
        _upload_samples(kb)

        snapshot = asyncio.run(kb.cache.load_all())

        assert snapshot.has_embeddings
        assert len(snapshot.embedded_rows) == 4
        assert snapshot.dimension == fake_provider.dimension
        for record in kb.list_files():
            data = kb.store.read_chunk_data(record)
            assert all(c.embedding_generated for c in data.chunks)
            assert all(c.embedding_provider == "fake" for c in data.chunks)
            assert all(len(c.embedding) == fake_provider.dimension for c in data.chunks)

    def test_reload_does_not_reembed(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should reuse persisted embeddings on later loads."""
        kb = make_kb(fake_provider)
        _upload_samples(kb)

        asyncio.run(kb.cache.reload())
        asyncio.run(kb.cache.reload())

        assert len(fake_provider.batches) == 1

    def test_inactive_stage_not_loaded(self, make_kb) -> None:
        """Should leave files of inactive stages out of the snapshot."""
        kb = make_kb()
        stage = kb.create_stage("Etapa 1")
        hidden = asyncio.run(kb.upload(HORARIOS_TEXT.encode("utf-8"), "horarios.txt", stage.id))
        asyncio.run(kb.upload(PRECIOS_TEXT.encode("utf-8"), "precios.txt"))
        kb.toggle_stage(stage.id, False)

        snapshot = asyncio.run(kb.cache.load_all())

        assert {e.file.id for e in snapshot.entries}.isdisjoint({hidden.id})
        assert len(snapshot) == 2

    def test_missing_chunk_data_skipped(self, make_kb) -> None:
        """Should load the other files when one chunk-data record is gone."""
        kb = make_kb()
        first, _ = _upload_samples(kb)
        kb.store.data_path(first).unlink()

        snapshot = asyncio.run(kb.cache.load_all())

        assert len(snapshot) == 2
        assert all(e.file.original_name == "precios.txt" for e in snapshot.entries)


class TestSingleFlight:
    """Test concurrent reload behaviour."""

    def test_concurrent_reloads_share_one_load(self, make_kb) -> None:
        """Should return the very same snapshot to every concurrent caller."""
        kb = make_kb()
        _upload_samples(kb)

        async def scenario():
            return await asyncio.gather(*(kb.cache.reload() for _ in range(5)))

        snapshots = asyncio.run(scenario())

        assert all(s is snapshots[0] for s in snapshots)
        assert kb.cache.load_count == 1

    def test_sequential_reloads_read_again(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should start a fresh load once the previous one settled, with equal content."""
        kb = make_kb(fake_provider)
        _upload_samples(kb)

        first = asyncio.run(kb.cache.reload())
        second = asyncio.run(kb.cache.reload())

        def content(snapshot):
            return [
                (e.file.id, e.position, e.chunk.text, e.chunk.keywords, e.chunk.is_qa, e.chunk.embedding)
                for e in snapshot.entries
            ]

        assert first is not second
        assert len(first) == len(second) == 4
        assert content(first) == content(second)
        np.testing.assert_allclose(first.matrix, second.matrix)
        assert kb.cache.load_count == 2

    def test_failed_load_clears_slot(self, make_kb) -> None:
        """Should let the next caller retry after a failed load."""
        kb = make_kb()

        with patch.object(kb.store, "list_files", side_effect=[RuntimeError("disk error"), []]):
            with pytest.raises(RuntimeError):
                asyncio.run(kb.cache.reload())
            snapshot = asyncio.run(kb.cache.reload())

        assert len(snapshot) == 0
        assert kb.cache._inflight is None

    def test_joiners_share_the_failure(self, make_kb) -> None:
        """Should propagate one failure to all joined callers."""
        kb = make_kb()

        async def scenario():
            return await asyncio.gather(*(kb.cache.reload() for _ in range(3)), return_exceptions=True)

        with patch.object(kb.store, "list_files", side_effect=RuntimeError("disk error")) as mock_list:
            outcomes = asyncio.run(scenario())

        assert all(isinstance(o, RuntimeError) for o in outcomes)
        assert mock_list.call_count == 1


class TestInvalidation:
    """Test invalidate/get_snapshot."""

    def test_get_snapshot_reuses_fresh_snapshot(self, make_kb) -> None:
        """Should not reload while the snapshot is current."""
        kb = make_kb()
        _upload_samples(kb)

        first = asyncio.run(kb.cache.get_snapshot())
        second = asyncio.run(kb.cache.get_snapshot())

        assert first is second
        assert kb.cache.load_count == 1

    def test_invalidate_forces_reload(self, make_kb) -> None:
        """Should reload on the next get_snapshot after invalidation."""
        kb = make_kb()
        _upload_samples(kb)
        first = asyncio.run(kb.cache.get_snapshot())

        kb.cache.invalidate()

        assert kb.cache.is_stale(first)
        second = asyncio.run(kb.cache.get_snapshot())
        assert second is not first
        assert not kb.cache.is_stale(second)

    def test_invalidation_during_load(self, make_kb) -> None:
        """Should not serve a load that started before the latest invalidation."""
        kb = make_kb()
        _upload_samples(kb)
        original = kb.store.list_files
        calls = []

        def list_files():
            calls.append(1)
            if len(calls) == 1:
                kb.cache.invalidate()
            return original()

        with patch.object(kb.store, "list_files", side_effect=list_files):
            snapshot = asyncio.run(kb.cache.get_snapshot())

        assert snapshot.generation == kb.cache.generation
        assert kb.cache.load_count == 2

    def test_older_generation_not_published(self, make_kb) -> None:
        """Should keep the newer snapshot when an older load finishes last."""
        kb = make_kb()
        newer = build_snapshot([], generation=5)
        kb.cache._publish(newer)
        kb.cache._publish(build_snapshot([], generation=3))

        assert kb.cache.current is newer

    def test_change_during_embedding_is_served(self, make_kb) -> None:
        """Should re-read storage for a change made while an older load is still embedding."""
        provider = BlockingEmbeddingProvider()
        kb = make_kb(provider)

        async def scenario():
            await kb.upload(HORARIOS_TEXT.encode("utf-8"), "horarios.txt")
            await kb.cache.get_snapshot()
            await kb.upload(PRECIOS_TEXT.encode("utf-8"), "precios.txt")
            served = await asyncio.wait_for(kb.cache.get_snapshot(), timeout=2.0)
            provider.release.set()
            outdated = await kb.cache.reload()
            await kb.cache.get_snapshot()
            complete = await kb.cache.reload()
            return served, outdated, complete

        served, outdated, complete = asyncio.run(scenario())

        assert {e.file.original_name for e in served.entries} == {"horarios.txt", "precios.txt"}
        assert served.pending
        assert kb.cache.is_stale(outdated)
        assert not complete.pending
        assert len(complete.embedded_rows) == 4
        assert kb.cache.current is complete
        assert kb.cache.load_count == 2

    def test_pending_snapshot_completed_later(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should finish embedding on a later call when the first load was abandoned."""
        kb = make_kb(fake_provider)
        _upload_samples(kb)
        kb.cache._publish(build_snapshot([], generation=kb.cache.generation, pending=True))

        async def scenario():
            await kb.cache.get_snapshot()
            return await kb.cache.reload()

        complete = asyncio.run(scenario())

        assert not complete.pending
        assert len(complete.embedded_rows) == 4
        assert kb.cache.load_count == 1
    def test_reload_listeners(self, make_kb) -> None:
        """Should notify listeners with each published snapshot."""
        kb = make_kb()
        listener = MagicMock()
        kb.cache.on_reload(listener)

        snapshot = asyncio.run(kb.cache.reload())

        listener.assert_called_once_with(snapshot)


class TestEnsureEmbeddings:
    """Test EmbeddingCacheManager.ensure_embeddings."""

    def test_batches_and_dimension(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should embed in batches and return provider-length vectors."""
        kb = make_kb(fake_provider, embedding_batch_size=2)
        chunks = _chunks(5)

        result, report = asyncio.run(kb.cache.ensure_embeddings(chunks))

        assert [len(batch) for batch in fake_provider.batches] == [2, 2, 1]
        assert all(c.embedding_generated and len(c.embedding) == fake_provider.dimension for c in result)
        assert (report.requested, report.embedded) == (5, 5)
        assert report.complete
        # Inputs are left untouched
        assert all(c.embedding is None for c in chunks)

    def test_skips_embedded_chunks(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should only request chunks that lack an embedding."""
        kb = make_kb(fake_provider)
        done = Chunk(text="ya calculado", embedding=(1.0,), embedding_generated=True)

        result, report = asyncio.run(kb.cache.ensure_embeddings([done] + _chunks(1)))

        assert result[0] is done
        assert report.requested == 1
        assert fake_provider.batches == [[_chunks(1)[0].text]]

    def test_failed_batch_left_unembedded(self, make_kb) -> None:
        """Should record a failing batch and continue with the rest."""
        provider = FakeEmbeddingProvider(failures=[ProviderError("bad request", status_code=400)])
        kb = make_kb(provider, embedding_batch_size=2)

        result, report = asyncio.run(kb.cache.ensure_embeddings(_chunks(5)))

        assert (report.failed, report.embedded) == (2, 3)
        assert not report.complete
        assert report.errors == ["bad request"]
        assert [c.embedding_generated for c in result] == [False, False, True, True, True]
        assert len(provider.batches) == 3

    def test_transient_failure_retried(self, make_kb, no_sleep) -> None:
        """Should retry a rate-limited batch with backoff."""
        provider = FakeEmbeddingProvider(failures=[TransientProviderError("rate limited", status_code=429)])
        kb = make_kb(provider, embedding_batch_size=2)

        result, report = asyncio.run(kb.cache.ensure_embeddings(_chunks(5)))

        assert report.complete
        assert all(c.embedding_generated for c in result)
        assert no_sleep.delays == [1.0]
        assert len(provider.batches) == 4

    def test_dimension_mismatch_rejected(self, make_kb) -> None:
        """Should not accept vectors of the wrong length."""
        provider = FakeEmbeddingProvider()
        provider.vector = lambda text: [1.0, 2.0]
        kb = make_kb(provider)

        result, report = asyncio.run(kb.cache.ensure_embeddings(_chunks(3)))

        assert report.failed == 3
        assert not any(c.embedding_generated for c in result)

    def test_unavailable_provider_stops_and_warns_once(self, make_kb, caplog: pytest.LogCaptureFixture) -> None:
        """Should skip the remaining chunks and warn a single time."""
        auth_error = ProviderUnavailableError("invalid api key", status_code=401)
        provider = FakeEmbeddingProvider(failures=[auth_error, auth_error])
        kb = make_kb(provider, embedding_batch_size=2)

        with caplog.at_level(logging.WARNING, logger="knowbase.embedding.cache"):
            _, first = asyncio.run(kb.cache.ensure_embeddings(_chunks(5)))
            _, second = asyncio.run(kb.cache.ensure_embeddings(_chunks(5)))

        assert (first.skipped, first.embedded) == (5, 0)
        assert second.skipped == 5
        assert len(provider.batches) == 2
        assert caplog.text.count("Embeddings unavailable") == 1

    def test_no_provider(self, make_kb) -> None:
        """Should return the chunks unchanged without a provider."""
        kb = make_kb()
        chunks = _chunks(2)

        result, report = asyncio.run(kb.cache.ensure_embeddings(chunks))

        assert result == chunks
        assert report.skipped == 2


class TestRegenerateEmbeddings:
    """Test EmbeddingCacheManager.regenerate_embeddings."""

    def test_regenerates_all(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should recompute, persist and reload."""
        kb = make_kb(fake_provider)
        _upload_samples(kb)
        asyncio.run(kb.cache.reload())

        report = asyncio.run(kb.regenerate_embeddings())

        assert (report.requested, report.embedded) == (4, 4)
        assert len(fake_provider.batches) == 2
        for record in kb.list_files():
            assert kb.store.read_chunk_data(record).embeddings_regenerated_at is not None
        assert not kb.cache.is_stale(kb.cache.current)

    def test_selected_files(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should only touch the requested files and ignore unknown ids."""
        kb = make_kb(fake_provider)
        first, second = _upload_samples(kb)

        report = asyncio.run(kb.regenerate_embeddings([first.id, "missing"]))

        assert report.requested == 2
        assert kb.store.read_chunk_data(first).embeddings_regenerated_at is not None
        assert kb.store.read_chunk_data(second).embeddings_regenerated_at is None


class TestStats:
    """Test EmbeddingCacheManager.stats."""

    def test_before_load(self, make_kb) -> None:
        """Should report an unloaded cache."""
        assert make_kb().cache.stats()["loaded"] is False

    def test_after_load(self, make_kb, fake_provider: FakeEmbeddingProvider) -> None:
        """Should count chunks with and without embeddings."""
        kb = make_kb(fake_provider)
        _upload_samples(kb)
        asyncio.run(kb.cache.reload())

        stats = kb.cache.stats()

        assert stats["total_chunks"] == 4
        assert stats["with_embeddings"] == 4
        assert stats["without_embeddings"] == 0
        assert stats["dimension"] == fake_provider.dimension


class TestBuildSnapshot:
    """Test build_snapshot."""

    def test_matrix_uses_dominant_dimension(self) -> None:
        """Should index normalized vectors of the dominant length only."""
        record = FileRecord(id="f", original_name="f.txt", file_name="f_f.txt", type="txt", size=1, chunk_count=5, upload_date="")
        embeddings = [(1.0, 0.0, 0.0), (0.0, 2.0, 0.0), (1.0, 1.0), (0.0, 0.0, 0.0), None]
        entries = [
            SnapshotEntry.build(
                record,
                i,
                Chunk(text=str(i), embedding=vector, embedding_generated=vector is not None),
            )
            for i, vector in enumerate(embeddings)
        ]

        snapshot = build_snapshot(entries, generation=1)

        assert snapshot.embedded_rows == (0, 1)
        assert snapshot.dimension == 3
        np.testing.assert_allclose(snapshot.matrix, [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        assert len(snapshot) == 5
