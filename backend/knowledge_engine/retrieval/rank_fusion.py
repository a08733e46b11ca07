"""
Reciprocal Rank Fusion of independently ranked result lists.

    RRF(d) = sum over lists L containing d of  w_L / (k + rank_L(d))

RRF only looks at ranks, so semantic similarities and BM25 scores can be
merged without calibrating their scales against each other. A document that
several lists rank well accumulates contributions from each of them.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Sequence

from .errors import InvalidConfigurationError
from .types import Contribution, FusedResult, RankedDocument


DEFAULT_RRF_K = 60
MIN_LIST_WEIGHT = 0.1
MAX_LIST_WEIGHT = 1.0


def clamp_weight(weight: float) -> float:
    """Clamp a caller-supplied list weight into [0.1, 1.0]."""
    return min(MAX_LIST_WEIGHT, max(MIN_LIST_WEIGHT, weight))


@dataclass
class RankedList:
    """One source's ranking, best first, with the weight it carries in fusion."""
    source: str
    items: List[RankedDocument] = field(default_factory=list)
    weight: float = 1.0


class ReciprocalRankFusion:
    """
    Weighted RRF over any number of ranked lists.

    Example:
        >>> rrf = ReciprocalRankFusion(k=60)
        >>> fused = rrf.fuse([semantic_list, keyword_list])
        >>> fused[0].contributing_ranks
        [Contribution(source='semantic', rank=1, original_score=0.91), ...]
    """

    def __init__(self, k: int = DEFAULT_RRF_K) -> None:
        if k <= 0:
            raise InvalidConfigurationError(f"RRF k must be positive, got {k}")
        self._k = k

    @property
    def k(self) -> int:
        return self._k

    def fuse(self, ranked_lists: Sequence[RankedList]) -> List[FusedResult]:
        """
        Merge ranked lists into a single ranking.

        Args:
            ranked_lists: Lists to fuse; every weight must be strictly positive

        Returns:
            Fused results sorted by descending RRF score. Equal scores keep
            the order in which ids were first seen across the lists.

        Raises:
            InvalidConfigurationError: If a list weight is not strictly positive
        """
        for ranked in ranked_lists:
            if not (ranked.weight > 0 and math.isfinite(ranked.weight)):
                raise InvalidConfigurationError(
                    f"Weight for list '{ranked.source}' must be strictly positive, "
                    f"got {ranked.weight}"
                )

        fused: Dict[str, FusedResult] = {}
        for ranked in ranked_lists:
            seen_in_list = set()
            for item in ranked.items:
                # A list ranks each id once; later duplicates are ignored.
                if item.id in seen_in_list:
                    continue
                seen_in_list.add(item.id)

                contribution = ranked.weight / (self._k + item.rank)
                result = fused.get(item.id)
                if result is None:
                    result = FusedResult(id=item.id, document=item.document, rrf_score=0.0)
                    fused[item.id] = result
                result.rrf_score += contribution
                result.contributing_ranks.append(
                    Contribution(source=ranked.source, rank=item.rank, original_score=item.score)
                )

        return sorted(fused.values(), key=lambda r: r.rrf_score, reverse=True)


def normalize_scores(results: Sequence[FusedResult]) -> List[FusedResult]:
    """
    Min-max rescale RRF scores into [0, 1].

    When every score is equal (including a single result) all of them map to
    1.0. Returns new objects; the input is left untouched.
    """
    if not results:
        return []
    scores = [r.rrf_score for r in results]
    low, high = min(scores), max(scores)
    if high == low:
        return [replace(r, rrf_score=1.0, contributing_ranks=list(r.contributing_ranks)) for r in results]
    span = high - low
    return [
        replace(r, rrf_score=(r.rrf_score - low) / span, contributing_ranks=list(r.contributing_ranks))
        for r in results
    ]
