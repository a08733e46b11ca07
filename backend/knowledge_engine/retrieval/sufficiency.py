"""
Sufficiency scoring: is the retrieved evidence strong enough to answer
without escalating or asking a clarifying question?
"""

from typing import Optional, Sequence, Union

from .types import EnrichedResult, SearchResponse


HIGH_CONFIDENCE_SCORE = 0.7
HIGH_CONFIDENCE_CONTRIBUTION = 0.4
LOW_CONFIDENCE_CONTRIBUTION = 0.2
DIVERSITY_TARGET = 3
DIVERSITY_WEIGHT = 0.3
TOP_N = 3
TOP_N_WEIGHT = 0.3

MIN_SUFFICIENCY_SCORE = 0.4
MIN_TOP_SCORE = 0.5


def calculate_sufficiency(results: Sequence[EnrichedResult]) -> float:
    """
    Overall confidence in [0, 1] for a final, sorted result list.

    Sums a top-result confidence term (0.4 if the best final score is at
    least 0.7, else 0.2), a source-type diversity term and the mean of the
    top three final scores (both weighted 0.3). An empty list scores 0.
    """
    if not results:
        return 0.0

    top_score = results[0].final_score
    confidence = HIGH_CONFIDENCE_CONTRIBUTION if top_score >= HIGH_CONFIDENCE_SCORE else LOW_CONFIDENCE_CONTRIBUTION

    source_types = {r.document.source_type for r in results}
    diversity = min(len(source_types) / DIVERSITY_TARGET, 1.0)

    top = results[:TOP_N]
    top_avg = sum(r.final_score for r in top) / len(top)

    return min(confidence + diversity * DIVERSITY_WEIGHT + top_avg * TOP_N_WEIGHT, 1.0)


def is_context_sufficient(
    response: Union[SearchResponse, Sequence[EnrichedResult]],
    sufficiency_score: Optional[float] = None,
) -> bool:
    """
    Decide "answer directly" vs "escalate".

    Accepts a SearchResponse (its recorded sufficiency score is used) or a
    bare result list (the score is computed unless given).
    """
    if isinstance(response, SearchResponse):
        results = response.results
        if sufficiency_score is None:
            sufficiency_score = response.metrics.context_sufficiency_score
    else:
        results = response

    if not results:
        return False
    if sufficiency_score is None:
        sufficiency_score = calculate_sufficiency(results)
    if sufficiency_score < MIN_SUFFICIENCY_SCORE:
        return False
    return results[0].final_score >= MIN_TOP_SCORE
