import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
End-to-end tests for the hybrid retriever.

Runs the full enhancer -> (semantic || keyword) -> fusion -> rerank ->
sufficiency pipeline over an in-memory Spanish FAQ corpus, with fakes
standing in for the embedding and similarity providers.
"""

from typing import Generator

import pytest

from knowledge_engine.retrieval.errors import InvalidConfigurationError
from knowledge_engine.retrieval.hybrid_retriever import HybridRetriever
from knowledge_engine.retrieval.index_manager import IndexCacheManager
from knowledge_engine.retrieval.types import SearchOptions, SimilarityHit
from knowledge_engine.services.embedding_cache import EmbeddingCache

from fakes import (
    FakeEmbeddingGenerator,
    FakeSimilarityProvider,
    spanish_faq_corpus,
    unavailable,
)


PRICE_QUESTION = "¿Cuánto cuesta la consulta?"


def precios_hit(similarity: float = 0.92) -> SimilarityHit:
    document = next(d for d in spanish_faq_corpus() if d.id == "precios")
    return SimilarityHit(id=document.key, similarity=similarity, document=document)


@pytest.fixture
def similarity_provider() -> FakeSimilarityProvider:
    return FakeSimilarityProvider({"tenant-a": [precios_hit()]})


@pytest.fixture
def embedding_generator() -> FakeEmbeddingGenerator:
    return FakeEmbeddingGenerator()


@pytest.fixture
def retriever(
    index_manager: IndexCacheManager,
    similarity_provider: FakeSimilarityProvider,
    embedding_generator: FakeEmbeddingGenerator,
) -> Generator[HybridRetriever, None, None]:
    instance = HybridRetriever(
        index_manager,
        similarity_provider=similarity_provider,
        embedding_generator=embedding_generator,
        embedding_cache=EmbeddingCache(capacity=16),
    )
    yield instance
    instance.shutdown()


@pytest.fixture
def keyword_only(index_manager: IndexCacheManager) -> Generator[HybridRetriever, None, None]:
    instance = HybridRetriever(index_manager)
    yield instance
    instance.shutdown()


class TestHybridSearch:

    def test_price_question_finds_pricing_faq(self, retriever):
        response = retriever.search("tenant-a", PRICE_QUESTION)

        top = response.results[0]
        assert top.document.id == "precios"
        assert top.semantic_score == pytest.approx(0.92)
        assert top.keyword_score == pytest.approx((1.0 + 0.9) / 2)
        assert top.final_score == pytest.approx(0.5 * 0.92 + 0.25 * 0.95)
        assert top.context_sufficient
        assert {c.source for c in top.contributing_ranks} == {"semantic", "keyword"}

        assert response.enhanced_query.intent == "service_inquiry"
        assert response.metrics.semantic_results == 1
        assert response.metrics.keyword_results >= 1
        assert response.metrics.semantic_degraded is False
        assert response.metrics.total_results == len(response.results)
        assert retriever.is_context_sufficient(response) is True

    def test_semantic_path_embeds_rewritten_query(self, retriever, embedding_generator, similarity_provider):
        response = retriever.search("tenant-a", PRICE_QUESTION)
        assert embedding_generator.calls == [response.enhanced_query.rewritten]
        [call] = similarity_provider.calls
        assert call["limit"] == 10
        assert call["min_similarity"] == pytest.approx(0.4)

    def test_repeated_query_uses_cached_embedding(self, retriever, embedding_generator):
        retriever.search("tenant-a", PRICE_QUESTION)
        retriever.search("tenant-a", PRICE_QUESTION)
        assert len(embedding_generator.calls) == 1

    def test_limit_respected(self, retriever):
        response = retriever.search("tenant-a", PRICE_QUESTION, SearchOptions(limit=1))
        assert len(response.results) == 1

    def test_results_sorted_by_final_score(self, retriever):
        response = retriever.search("tenant-a", PRICE_QUESTION)
        scores = [r.final_score for r in response.results]
        assert scores == sorted(scores, reverse=True)

    def test_empty_query_returns_nothing(self, retriever, embedding_generator):
        response = retriever.search("tenant-a", "¿?")
        assert response.results == []
        assert embedding_generator.calls == []
        assert retriever.is_context_sufficient(response) is False

    def test_short_price_question(self, retriever):
        response = retriever.search("tenant-a", "¿cuánto cuesta?")
        top = response.results[0]
        assert top.document.id == "precios"
        assert top.keyword_score == 1.0
        assert top.final_score >= 0.5

    def test_other_tenant_sees_nothing(self, retriever, corpus_provider):
        retriever.search("tenant-a", PRICE_QUESTION)
        response = retriever.search("tenant-b", PRICE_QUESTION)
        assert response.results == []
        assert response.metrics.keyword_results == 0
        assert corpus_provider.calls == ["tenant-a", "tenant-b"]


class TestKeywordOnly:

    def test_keyword_only_results_escalate(self, keyword_only):
        response = keyword_only.search("tenant-a", PRICE_QUESTION)
        assert response.results[0].document.id == "precios"
        assert response.results[0].semantic_score == 0.0
        assert response.metrics.semantic_results == 0
        assert response.metrics.semantic_degraded is False
        assert keyword_only.is_context_sufficient(response) is False

    def test_substring_fallback(self, keyword_only):
        response = keyword_only.search("tenant-a", "cancel")
        assert [r.document.id for r in response.results] == ["cancelacion"]
        assert response.metrics.keyword_fallback_used is True

    def test_substring_fallback_disabled(self, index_manager):
        instance = HybridRetriever(index_manager, enable_substring_fallback=False)
        try:
            response = instance.search("tenant-a", "cancel")
            assert response.results == []
            assert response.metrics.keyword_fallback_used is False
        finally:
            instance.shutdown()


class TestDegradation:

    def test_semantic_timeout_degrades_to_keyword(self, retriever, similarity_provider):
        similarity_provider.delay = 0.5
        response = retriever.search("tenant-a", PRICE_QUESTION, SearchOptions(timeout_seconds=0.05))
        assert response.metrics.semantic_degraded is True
        assert response.metrics.semantic_results == 0
        assert response.results[0].document.id == "precios"

    def test_provider_error_degrades_to_keyword(self, retriever, similarity_provider):
        similarity_provider.error = unavailable()
        response = retriever.search("tenant-a", PRICE_QUESTION)
        assert response.metrics.semantic_degraded is True
        assert [r.document.id for r in response.results][0] == "precios"

    def test_embedding_error_degrades_to_keyword(self, retriever, embedding_generator):
        embedding_generator.error = unavailable("embedding quota exceeded")
        response = retriever.search("tenant-a", PRICE_QUESTION)
        assert response.metrics.semantic_degraded is True
        assert response.results

    def test_corpus_failure_returns_empty(self, corpus_provider, index_manager):
        corpus_provider.failing.add("tenant-a")
        instance = HybridRetriever(index_manager)
        try:
            response = instance.search("tenant-a", PRICE_QUESTION)
            assert response.results == []
            assert instance.is_context_sufficient(response) is False
        finally:
            instance.shutdown()

    def test_hybrid_disabled_falls_back_when_semantic_degrades(self, retriever, similarity_provider):
        similarity_provider.error = unavailable()
        options = SearchOptions(enable_hybrid_search=False)
        response = retriever.search("tenant-a", PRICE_QUESTION, options)
        assert response.metrics.semantic_degraded is True
        assert response.metrics.keyword_results >= 1


class TestOptions:

    def test_hybrid_disabled_uses_semantic_only(self, retriever, corpus_provider):
        response = retriever.search("tenant-a", PRICE_QUESTION, SearchOptions(enable_hybrid_search=False))
        assert response.metrics.keyword_results == 0
        assert [r.document.id for r in response.results] == ["precios"]
        assert corpus_provider.calls == []

    def test_reranking_disabled_blends_semantic_and_keyword_evidence(self, retriever):
        response = retriever.search("tenant-a", PRICE_QUESTION, SearchOptions(enable_reranking=False))
        top = response.results[0]
        assert top.document.id == "precios"
        assert top.keyword_score == pytest.approx(0.95)
        assert top.final_score == pytest.approx(0.6 * 0.92 + 0.4 * 0.95)

    def test_reranking_disabled_semantic_only_passes_similarity_through(self, retriever):
        options = SearchOptions(enable_reranking=False, enable_hybrid_search=False)
        response = retriever.search("tenant-a", PRICE_QUESTION, options)
        assert [r.final_score for r in response.results] == [pytest.approx(0.92)]

    def test_reranking_disabled_keyword_only_keeps_keyword_evidence(self, keyword_only):
        response = keyword_only.search("tenant-a", PRICE_QUESTION, SearchOptions(enable_reranking=False))
        top = response.results[0]
        assert top.document.id == "precios"
        assert top.semantic_score == 0.0
        assert top.final_score == pytest.approx(0.95)

    def test_similarity_threshold_filters_semantic_hits(self, retriever, similarity_provider):
        similarity_provider.hits["tenant-a"] = [precios_hit(0.75)]
        response = retriever.search("tenant-a", PRICE_QUESTION, SearchOptions(similarity_threshold=1.0))
        assert response.metrics.semantic_results == 0

    @pytest.mark.parametrize(
        "options",
        [
            SearchOptions(limit=0),
            SearchOptions(similarity_threshold=1.5),
            SearchOptions(semantic_weight=-0.1),
            SearchOptions(timeout_seconds=0),
        ],
    )
    def test_invalid_options_rejected(self, retriever, options):
        with pytest.raises(InvalidConfigurationError):
            retriever.search("tenant-a", PRICE_QUESTION, options)

    def test_missing_tenant_rejected(self, retriever):
        with pytest.raises(InvalidConfigurationError):
            retriever.search("", PRICE_QUESTION)

    def test_default_options_used(self, index_manager):
        instance = HybridRetriever(index_manager, default_options=SearchOptions(limit=1))
        try:
            response = instance.search("tenant-a", "horario cita")
            assert len(response.results) == 1
        finally:
            instance.shutdown()

    def test_invalid_semantic_timeout(self, index_manager):
        with pytest.raises(InvalidConfigurationError):
            HybridRetriever(index_manager, semantic_timeout_seconds=0)


class TestIndexOperations:

    def test_refresh_index_returns_stats(self, retriever, corpus_provider):
        stats = retriever.refresh_index("tenant-a")
        assert stats.document_count == 3
        assert corpus_provider.calls == ["tenant-a"]

    def test_refresh_index_failure_without_cache(self, retriever, corpus_provider):
        corpus_provider.failing.add("tenant-a")
        assert retriever.refresh_index("tenant-a") is None

    def test_stats_and_clear(self, retriever):
        assert retriever.get_index_stats("tenant-a") is None
        retriever.search("tenant-a", PRICE_QUESTION)
        assert retriever.get_index_stats("tenant-a").document_count == 3
        assert retriever.clear_index("tenant-a") is True
        assert retriever.get_index_stats("tenant-a") is None

    def test_shutdown_stops_index_manager(self, index_manager):
        instance = HybridRetriever(index_manager)
        instance.start()
        assert index_manager.is_running
        instance.shutdown()
        assert not index_manager.is_running


def test_semantic_enabled_requires_both_providers(index_manager):
    only_provider = HybridRetriever(index_manager, similarity_provider=FakeSimilarityProvider())
    assert only_provider.semantic_enabled is False
    only_provider.shutdown()

