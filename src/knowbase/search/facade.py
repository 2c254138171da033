"""Hybrid keyword + semantic search over the knowledge cache."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from knowbase.embedding.cache import EmbeddingCacheManager
from knowbase.index.stages import StageRegistry, is_file_visible
from knowbase.models import SearchOutcome, SearchResult, SnapshotEntry
from knowbase.search.keyword import KeywordHit, KeywordScorer
from knowbase.search.semantic import SemanticRetriever

LOGGER = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.75
KEYWORD_WEIGHT = 0.25
QA_BOOST = 1.15
MIN_SIMILARITY = 0.20
SEMANTIC_TOP_K = 15
DEFAULT_MAX_RESULTS = 5
MIN_QUERY_LENGTH = 3

# Best similarity needed for each quality tier, highest first
QUALITY_THRESHOLDS = (("high", 0.55), ("medium", 0.40), ("low", 0.30))


def rate_results(results: Sequence[SearchResult]) -> SearchOutcome:
    """Wrap ``results`` with similarity statistics and a quality tier."""
    similarities = [r.similarity for r in results if r.similarity is not None]
    top = max(similarities, default=0.0)
    average = sum(similarities) / len(similarities) if similarities else 0.0
    quality = next((name for name, threshold in QUALITY_THRESHOLDS if top >= threshold), "none")
    return SearchOutcome(results=list(results), quality=quality, top_similarity=top, avg_similarity=average)


class KnowledgeSearch:
    """Entry point used by the chat layer to fetch relevant knowledge.

    Keyword scoring always runs; semantic retrieval joins in when the
    snapshot carries embeddings. Visibility is checked against the current
    stages at query time, so a result from a just-deactivated stage is never
    returned even if the snapshot predates the toggle.
    """

    def __init__(
        self,
        cache: EmbeddingCacheManager,
        *,
        stages: Optional[StageRegistry] = None,
        keyword_scorer: KeywordScorer | None = None,
        retriever: SemanticRetriever | None = None,
        vector_weight: float = VECTOR_WEIGHT,
        keyword_weight: float = KEYWORD_WEIGHT,
        qa_boost: float = QA_BOOST,
        min_similarity: float = MIN_SIMILARITY,
        semantic_top_k: int = SEMANTIC_TOP_K,
    ) -> None:
        self.cache = cache
        self.stages = stages
        self.keyword_scorer = keyword_scorer or KeywordScorer()
        self.retriever = retriever
        self.vector_weight = vector_weight
        self.keyword_weight = keyword_weight
        self.qa_boost = qa_boost
        self.min_similarity = min_similarity
        self.semantic_top_k = semantic_top_k

    async def search(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> List[SearchResult]:
        return (await self.retrieve(query, max_results)).results

    async def retrieve(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> SearchOutcome:
        """Search and rate how well the knowledge base covers ``query``."""
        query = (query or "").strip()
        if not query or max_results <= 0:
            return SearchOutcome()
        if len(query) < MIN_QUERY_LENGTH:
            LOGGER.warning("Query too short (%d chars): %r", len(query), query)
            return SearchOutcome(error="query_too_short")
        try:
            snapshot = await self.cache.get_snapshot()
            stages = self.stages.snapshot() if self.stages is not None else {}
            entries = [e for e in snapshot.entries if is_file_visible(e.file, stages)]

            keyword_hits = self.keyword_scorer.search(entries, query)
            semantic_hits: List[Tuple[SnapshotEntry, float]] = []
            if self.retriever is not None and snapshot.has_embeddings:
                found = await self.retriever.find_relevant_chunks(snapshot, query, top_k=self.semantic_top_k)
                semantic_hits = [
                    (entry, similarity)
                    for entry, similarity in found
                    if similarity >= self.min_similarity and is_file_visible(entry.file, stages)
                ]

            results = self._merge(keyword_hits, semantic_hits)
        except Exception:
            LOGGER.exception("Knowledge search failed for %r", query)
            return SearchOutcome(error="search_failed")

        outcome = rate_results(results[:max_results])
        LOGGER.debug(
            "Search %r: %d keyword, %d semantic, %d merged, quality %s (top %.3f, avg %.3f)",
            query,
            len(keyword_hits),
            len(semantic_hits),
            len(results),
            outcome.quality,
            outcome.top_similarity,
            outcome.avg_similarity,
        )
        return outcome

    def _merge(
        self,
        keyword_hits: Sequence[KeywordHit],
        semantic_hits: Sequence[Tuple[SnapshotEntry, float]],
    ) -> List[SearchResult]:
        merged: Dict[Tuple[str, int], SearchResult] = {}

        for entry, similarity in semantic_hits:
            weighted = similarity * self.qa_boost if entry.chunk.is_qa else similarity
            merged[entry.key] = SearchResult(
                text=entry.chunk.text,
                source_file_name=entry.file.original_name,
                file_id=entry.file.id,
                similarity=similarity,
                rank=self.vector_weight * min(weighted, 1.0),
                is_qa=entry.chunk.is_qa,
            )

        top_score = max((hit.score for hit in keyword_hits), default=0)
        for hit in keyword_hits:
            contribution = self.keyword_weight * hit.score / top_score if top_score else 0.0
            result = merged.get(hit.entry.key)
            if result is None:
                merged[hit.entry.key] = SearchResult(
                    text=hit.entry.chunk.text,
                    source_file_name=hit.entry.file.original_name,
                    file_id=hit.entry.file.id,
                    score=hit.score,
                    rank=contribution,
                    is_qa=hit.entry.chunk.is_qa,
                    is_partial=hit.is_partial,
                )
            else:
                result.score = hit.score
                result.rank += contribution
                result.is_partial = hit.is_partial

        ranked = sorted(merged.values(), key=lambda r: r.rank, reverse=True)
        seen = set()
        unique = []
        for result in ranked:
            fingerprint = " ".join(result.text.lower().split())
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            unique.append(result)
        return unique

    async def get_context(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> List[str]:
        """Chunk texts for ``query``, best first."""
        return [result.text for result in await self.search(query, max_results)]

    @staticmethod
    def format_context(results: Sequence[SearchResult]) -> str:
        """Render results as the knowledge block inserted into a chat prompt."""
        blocks = []
        for result in results:
            label = "Q&A" if result.is_qa else "Excerpt"
            blocks.append(f"[{label} from {result.source_file_name}]\n{result.text}")
        return "\n\n---\n\n".join(blocks)
