"""
Metadata-aware re-ranking of fused results.

    final = 0.50 * semantic + 0.25 * keyword + 0.10 * recency + 0.15 * category

Re-ranking is pure: it performs no I/O and reads "now" from an injectable
clock so recency boosts are reproducible in tests.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from .bm25_service import weighted_keyword_overlap
from .errors import InvalidConfigurationError
from .rank_fusion import clamp_weight
from .types import EnrichedResult, FusedResult, SearchSource


DEFAULT_SUFFICIENCY_THRESHOLD = 0.6

PREFERRED_CATEGORY_BOOST = 0.15
INFERRED_CATEGORY_BOOST = 0.10

# (max age in days, boost), checked in order
RECENCY_TIERS = ((7, 0.10), (30, 0.05), (90, 0.02))

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RerankWeights:
    semantic: float = 0.5
    keyword: float = 0.25
    recency: float = 0.10
    category: float = 0.15

    def __post_init__(self) -> None:
        values = (self.semantic, self.keyword, self.recency, self.category)
        if any(not 0.0 <= v <= 1.0 for v in values):
            raise InvalidConfigurationError(f"Re-rank weights must be within [0, 1], got {values}")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-9):
            raise InvalidConfigurationError(f"Re-rank weights must sum to 1.0, got {sum(values)}")


def recency_boost(updated_at: Optional[datetime], now: datetime) -> float:
    """Boost by document age; naive timestamps are taken as UTC."""
    if updated_at is None:
        return 0.0
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    age_days = (now - updated_at).total_seconds() / 86400
    for max_age, boost in RECENCY_TIERS:
        if age_days <= max_age:
            return boost
    return 0.0


def _normalize_category(category: str) -> str:
    return category.strip().lower()


def category_boost(
    category: str,
    preferred_categories: Iterable[str] = (),
    inferred_categories: Iterable[str] = (),
) -> float:
    """0.15 for an explicitly preferred category, 0.10 for an inferred one."""
    normalized = _normalize_category(category or "")
    if not normalized:
        return 0.0
    if normalized in {_normalize_category(c) for c in preferred_categories}:
        return PREFERRED_CATEGORY_BOOST
    if normalized in {_normalize_category(c) for c in inferred_categories}:
        return INFERRED_CATEGORY_BOOST
    return 0.0


def semantic_similarity(result: FusedResult) -> float:
    """The candidate's similarity from the semantic list, 0 if it was not there."""
    similarity = result.score_from(SearchSource.SEMANTIC.value)
    if similarity is None:
        return 0.0
    return min(1.0, max(0.0, similarity))


def keyword_evidence(result: FusedResult, keywords: Sequence[str], best_keyword_score: float) -> float:
    """
    Keyword-path evidence for a candidate in [0, 1], 0 if the keyword list missed it.

    Uses the weighted keyword overlap; when none of the query keywords occur
    in the text (synonym or substring matches), falls back to the BM25 score
    relative to the best keyword hit.
    """
    raw = result.score_from(SearchSource.KEYWORD.value)
    if raw is None:
        return 0.0
    overlap = weighted_keyword_overlap(result.document.text, keywords)
    if overlap > 0:
        return overlap
    if best_keyword_score <= 0:
        return 0.0
    return min(1.0, max(0.0, raw / best_keyword_score))


class Reranker:
    """
    Combines semantic, keyword, recency and category signals per candidate.

    Args:
        weights: Signal weights; validated to lie in [0, 1] and sum to 1
        sufficiency_threshold: final score at or above which a result is
            flagged context_sufficient
        clock: Returns the current time (timezone-aware UTC by default)
    """

    def __init__(
        self,
        weights: Optional[RerankWeights] = None,
        sufficiency_threshold: float = DEFAULT_SUFFICIENCY_THRESHOLD,
        clock: Optional[Clock] = None,
    ) -> None:
        if not 0.0 <= sufficiency_threshold <= 1.0:
            raise InvalidConfigurationError(
                f"sufficiency_threshold must be within [0, 1], got {sufficiency_threshold}"
            )
        self._weights = weights or RerankWeights()
        self._threshold = sufficiency_threshold
        self._clock = clock or _utcnow

    @property
    def weights(self) -> RerankWeights:
        return self._weights

    @property
    def sufficiency_threshold(self) -> float:
        return self._threshold

    def rerank(
        self,
        candidates: Sequence[FusedResult],
        keywords: Sequence[str] = (),
        inferred_categories: Sequence[str] = (),
        preferred_categories: Sequence[str] = (),
    ) -> List[EnrichedResult]:
        """
        Score candidates and sort them by final score (stable).

        Args:
            candidates: Fused results, in fused order
            keywords: Query keywords, most important first
            inferred_categories: Categories hinted at by the query
            preferred_categories: Categories the caller explicitly prefers
        """
        now = self._clock()
        w = self._weights
        enriched: List[EnrichedResult] = []
        for candidate in candidates:
            document = candidate.document
            semantic = semantic_similarity(candidate)
            keyword = weighted_keyword_overlap(document.text, keywords)
            recency = recency_boost(document.updated_at, now)
            category = category_boost(document.category, preferred_categories, inferred_categories)
            final = (
                w.semantic * semantic
                + w.keyword * keyword
                + w.recency * recency
                + w.category * category
            )
            enriched.append(self._enrich(candidate, final, semantic, keyword, recency, category))

        enriched.sort(key=lambda r: r.final_score, reverse=True)
        return enriched

    def passthrough(
        self,
        candidates: Sequence[FusedResult],
        keywords: Sequence[str] = (),
        semantic_weight: float = 0.6,
    ) -> List[EnrichedResult]:
        """
        Enrich without re-ranking, keeping the fused order.

        The final score blends each path's evidence with the weights the two
        lists carried into fusion, over the paths that actually returned
        results: semantic-only searches pass the similarity through unchanged,
        keyword-only searches pass the keyword evidence through.
        """
        semantic_key = SearchSource.SEMANTIC.value
        keyword_key = SearchSource.KEYWORD.value
        sources = {c.source for candidate in candidates for c in candidate.contributing_ranks}
        path_weights = {}
        if semantic_key in sources:
            path_weights[semantic_key] = clamp_weight(semantic_weight)
        if keyword_key in sources:
            path_weights[keyword_key] = clamp_weight(1.0 - semantic_weight)
        total_weight = sum(path_weights.values())
        best_keyword = max((candidate.score_from(keyword_key) or 0.0 for candidate in candidates), default=0.0)

        enriched = []
        for candidate in candidates:
            semantic = semantic_similarity(candidate)
            keyword = keyword_evidence(candidate, keywords, best_keyword)
            final = 0.0
            if total_weight:
                final = (
                    path_weights.get(semantic_key, 0.0) * semantic
                    + path_weights.get(keyword_key, 0.0) * keyword
                ) / total_weight
            enriched.append(self._enrich(candidate, final, semantic, keyword, 0.0, 0.0))
        return enriched

    def _enrich(
        self,
        candidate: FusedResult,
        final: float,
        semantic: float,
        keyword: float,
        recency: float,
        category: float,
    ) -> EnrichedResult:
        return EnrichedResult(
            id=candidate.id,
            document=candidate.document,
            rrf_score=candidate.rrf_score,
            contributing_ranks=list(candidate.contributing_ranks),
            final_score=final,
            semantic_score=semantic,
            keyword_score=keyword,
            recency_boost=recency,
            category_boost=category,
            sufficiency_threshold=self._threshold,
        )
