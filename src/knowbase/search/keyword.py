"""Accent-insensitive keyword scoring over loaded chunks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from knowbase.ingestion.extractor import extract_keywords
from knowbase.models import Chunk, SnapshotEntry
from knowbase.utils.text import fold_accents

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 5

EXACT_MATCH = 50
CASE_INSENSITIVE_MATCH = 30
ACCENT_INSENSITIVE_MATCH = 20
KEYWORD_MATCH = 5
FOLDED_KEYWORD_MATCH = 3
TEXT_KEYWORD_MATCH = 2
FOLDED_TEXT_KEYWORD_MATCH = 1
FALLBACK_MATCH = 1

FALLBACK_GRAM = 4


@dataclass(slots=True)
class KeywordHit:
    entry: SnapshotEntry
    score: int
    is_partial: bool = False


@dataclass(frozen=True, slots=True)
class _Query:
    raw: str
    lowered: str
    folded: str
    keywords: Tuple[Tuple[str, str], ...]

    @classmethod
    def parse(cls, query: str) -> "_Query":
        raw = query.strip()
        keywords = tuple((k, fold_accents(k)) for k in extract_keywords(raw))
        return cls(raw=raw, lowered=raw.lower(), folded=fold_accents(raw), keywords=keywords)


def _grams(word: str) -> List[str]:
    return [word[i : i + FALLBACK_GRAM] for i in range(len(word) - FALLBACK_GRAM + 1)]


class KeywordScorer:
    """Scores chunks by tiered phrase and keyword matches.

    Every matching tier adds to the score: whole-query matches (exact, case-
    and accent-insensitive) dominate, and each query keyword adds a smaller
    amount per tier it hits. When nothing scores, a looser pass over
    four-character fragments of the query keywords returns results flagged
    ``is_partial``.
    """

    def __init__(self, limit: int = DEFAULT_LIMIT) -> None:
        self.limit = limit

    @staticmethod
    def _score(query: _Query, text: str, keywords: Iterable[str], folded_text: str, folded_keywords: frozenset) -> int:
        lowered = text.lower()
        score = 0
        # Tiers add up: an exact hit also counts as case- and accent-insensitive
        if query.raw in text:
            score += EXACT_MATCH
        if query.lowered in lowered:
            score += CASE_INSENSITIVE_MATCH
        if query.folded in folded_text:
            score += ACCENT_INSENSITIVE_MATCH

        keyword_set = set(keywords)
        for keyword, folded in query.keywords:
            if keyword in keyword_set:
                score += KEYWORD_MATCH
            if folded in folded_keywords:
                score += FOLDED_KEYWORD_MATCH
            if keyword in lowered:
                score += TEXT_KEYWORD_MATCH
            if folded in folded_text:
                score += FOLDED_TEXT_KEYWORD_MATCH
        return score

    @staticmethod
    def _fallback_score(query: _Query, folded_text: str) -> int:
        score = 0
        for _, folded in query.keywords:
            if any(gram in folded_text for gram in _grams(folded)):
                score += FALLBACK_MATCH
        return score

    def score(self, chunk: Chunk, query: str) -> int:
        """Relevance of a single chunk; 0 means no match."""
        parsed = _Query.parse(query)
        if not parsed.raw:
            return 0
        return self._score(
            parsed,
            chunk.text,
            chunk.keywords,
            fold_accents(chunk.text),
            frozenset(fold_accents(k) for k in chunk.keywords),
        )

    def search(self, entries: Sequence[SnapshotEntry], query: str, limit: Optional[int] = None) -> List[KeywordHit]:
        """Top-scoring entries, best first; ties keep snapshot order."""
        limit = self.limit if limit is None else limit
        parsed = _Query.parse(query)
        if not parsed.raw or limit <= 0:
            return []

        hits = []
        for entry in entries:
            folded_text = entry.folded_text or fold_accents(entry.chunk.text)
            score = self._score(parsed, entry.chunk.text, entry.chunk.keywords, folded_text, entry.folded_keywords)
            if score > 0:
                hits.append(KeywordHit(entry=entry, score=score))

        if not hits:
            for entry in entries:
                folded_text = entry.folded_text or fold_accents(entry.chunk.text)
                score = self._fallback_score(parsed, folded_text)
                if score > 0:
                    hits.append(KeywordHit(entry=entry, score=score, is_partial=True))
            if hits:
                LOGGER.debug("No direct keyword matches for %r; using %d partial matches", parsed.raw, len(hits))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]
