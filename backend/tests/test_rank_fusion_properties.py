import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
Property-based tests for Reciprocal Rank Fusion.

Covers cross-method agreement, single-list degeneracy, weight validation,
and min-max normalization idempotence.
"""

from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from knowledge_engine.retrieval.errors import InvalidConfigurationError
from knowledge_engine.retrieval.rank_fusion import (
    RankedList,
    ReciprocalRankFusion,
    clamp_weight,
    normalize_scores,
)
from knowledge_engine.retrieval.types import FusedResult, RankedDocument

from fakes import make_document


# =============================================================================
# Helpers and strategies
# =============================================================================

def ranked(ids: List[str], scores: List[float] = None) -> List[RankedDocument]:
    scores = scores or [1.0 / (i + 1) for i in range(len(ids))]
    return [
        RankedDocument(id=doc_id, score=score, rank=rank, document=make_document(doc_id, doc_id, ""))
        for rank, (doc_id, score) in enumerate(zip(ids, scores), start=1)
    ]


unique_ids = st.lists(
    st.text(alphabet="abcdefghij", min_size=1, max_size=4),
    min_size=1,
    max_size=15,
    unique=True,
)
valid_weight = st.floats(min_value=0.1, max_value=1.0, allow_nan=False, allow_infinity=False)
rrf_scores = st.lists(
    st.floats(min_value=0.0, max_value=10.0, allow_nan=False, allow_infinity=False),
    min_size=1,
    max_size=20,
)


# =============================================================================
# Unit tests
# =============================================================================

class TestReciprocalRankFusion:

    def test_formula(self):
        rrf = ReciprocalRankFusion(k=60)
        fused = rrf.fuse([
            RankedList("semantic", ranked(["a", "b"]), 0.6),
            RankedList("keyword", ranked(["b", "c"]), 0.4),
        ])
        scores = {r.id: r.rrf_score for r in fused}
        assert scores["a"] == pytest.approx(0.6 / 61)
        assert scores["b"] == pytest.approx(0.6 / 62 + 0.4 / 61)
        assert scores["c"] == pytest.approx(0.4 / 62)
        assert [r.id for r in fused] == ["b", "a", "c"]

    def test_contributions_recorded(self):
        fused = ReciprocalRankFusion().fuse([
            RankedList("semantic", ranked(["a"], [0.9]), 1.0),
            RankedList("keyword", ranked(["a"], [3.2]), 1.0),
        ])
        contributions = {(c.source, c.rank, c.original_score) for c in fused[0].contributing_ranks}
        assert contributions == {("semantic", 1, 0.9), ("keyword", 1, 3.2)}
        assert fused[0].score_from("keyword") == 3.2
        assert fused[0].score_from("other") is None

    def test_non_positive_k_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            ReciprocalRankFusion(k=0)
        with pytest.raises(InvalidConfigurationError):
            ReciprocalRankFusion(k=-5)

    @pytest.mark.parametrize("weight", [0.0, -0.5, float("nan")])
    def test_non_positive_weight_rejected(self, weight):
        with pytest.raises(InvalidConfigurationError):
            ReciprocalRankFusion().fuse([RankedList("semantic", ranked(["a"]), weight)])

    def test_empty_input(self):
        assert ReciprocalRankFusion().fuse([]) == []
        assert ReciprocalRankFusion().fuse([RankedList("keyword", [], 1.0)]) == []

    def test_ties_broken_by_first_appearance(self):
        fused = ReciprocalRankFusion().fuse([
            RankedList("semantic", ranked(["a", "x"]), 1.0),
            RankedList("keyword", ranked(["b", "y"]), 1.0),
        ])
        assert [r.id for r in fused] == ["a", "b", "x", "y"]

    def test_duplicate_ids_within_a_list_count_once(self):
        fused = ReciprocalRankFusion().fuse([RankedList("keyword", ranked(["a", "a"]), 1.0)])
        assert len(fused) == 1
        assert fused[0].rrf_score == pytest.approx(1.0 / 61)


class TestClampWeight:

    @pytest.mark.parametrize("raw,clamped", [(0.0, 0.1), (0.05, 0.1), (0.6, 0.6), (1.0, 1.0), (1.7, 1.0)])
    def test_clamp(self, raw, clamped):
        assert clamp_weight(raw) == clamped


class TestNormalizeScores:

    def test_min_max(self):
        results = [
            FusedResult(id=i, document=make_document(i, i, ""), rrf_score=s)
            for i, s in (("a", 0.03), ("b", 0.02), ("c", 0.01))
        ]
        assert [r.rrf_score for r in normalize_scores(results)] == pytest.approx([1.0, 0.5, 0.0])

    def test_single_and_equal_scores_map_to_one(self):
        one = [FusedResult(id="a", document=make_document("a", "a", ""), rrf_score=0.016)]
        assert normalize_scores(one)[0].rrf_score == 1.0
        equal = [FusedResult(id=i, document=make_document(i, i, ""), rrf_score=0.5) for i in "abc"]
        assert [r.rrf_score for r in normalize_scores(equal)] == [1.0, 1.0, 1.0]

    def test_input_untouched(self):
        results = [
            FusedResult(id="a", document=make_document("a", "a", ""), rrf_score=2.0),
            FusedResult(id="b", document=make_document("b", "b", ""), rrf_score=1.0),
        ]
        normalize_scores(results)
        assert [r.rrf_score for r in results] == [2.0, 1.0]

    def test_empty(self):
        assert normalize_scores([]) == []


# =============================================================================
# Properties
# =============================================================================

@settings(max_examples=100)
@given(ids=unique_ids, weight=valid_weight)
def test_agreement_beats_single_list(ids, weight):
    """A document ranked first by two lists outranks one ranked first by only one."""
    semantic = ["shared"] + [f"s-{i}" for i in ids]
    keyword = ["shared"] + [f"k-{i}" for i in ids]
    fused = ReciprocalRankFusion().fuse([
        RankedList("semantic", ranked(semantic), weight),
        RankedList("keyword", ranked(keyword), weight),
    ])
    scores = {r.id: r.rrf_score for r in fused}
    assert fused[0].id == "shared"
    assert scores["shared"] > scores[f"s-{ids[0]}"]


@settings(max_examples=100)
@given(ids=unique_ids, weight=valid_weight)
def test_single_list_order_preserved(ids, weight):
    fused = ReciprocalRankFusion().fuse([
        RankedList("semantic", ranked(ids), weight),
        RankedList("keyword", [], 0.5),
    ])
    assert [r.id for r in fused] == ids
    assert fused[0].rrf_score == pytest.approx(weight / 61)


@settings(max_examples=100)
@given(scores=rrf_scores)
def test_normalize_is_idempotent(scores):
    results = [
        FusedResult(id=str(i), document=make_document(str(i), "", ""), rrf_score=s)
        for i, s in enumerate(scores)
    ]
    once = normalize_scores(results)
    twice = normalize_scores(once)
    assert [r.rrf_score for r in twice] == pytest.approx([r.rrf_score for r in once])
    assert all(0.0 <= r.rrf_score <= 1.0 for r in once)
