"""
Hybrid Retriever: the engine's public entry point.

One search call runs:

    raw query -> QueryEnhancer
              -> semantic path (thread pool, embedding cache + similarity provider)
              || keyword path (tenant BM25 index, substring fallback)
              -> Reciprocal Rank Fusion -> Re-ranker -> Sufficiency Scorer

The semantic path is optional and best-effort: if it times out or its
provider fails, the request degrades to keyword-only fusion instead of
failing. Corpus failures degrade to an empty result set.
"""

import contextvars
import logging
import math
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import List, Optional, Tuple

from prometheus_client import Counter, Histogram

from ..logging_utils import tenant_context
from .errors import InvalidConfigurationError
from .index_manager import IndexCacheManager
from .protocols import EmbeddingGenerator, SimilarityProvider
from .query_enhancer import QueryEnhancer
from .rank_fusion import DEFAULT_RRF_K, RankedList, ReciprocalRankFusion, clamp_weight, normalize_scores
from .reranker import Reranker
from .sufficiency import calculate_sufficiency, is_context_sufficient
from .types import (
    EnhancedQuery,
    IndexStats,
    RankedDocument,
    SearchMetrics,
    SearchOptions,
    SearchResponse,
    SearchSource,
)


logger = logging.getLogger(__name__)

# Candidates fetched per path relative to the requested limit.
CANDIDATE_MULTIPLIER = 2
# The semantic path uses a looser threshold; re-ranking filters the rest.
SEMANTIC_THRESHOLD_FACTOR = 0.8
DEFAULT_SEMANTIC_TIMEOUT_SECONDS = 5.0

SEARCH_LATENCY = Histogram(
    "knowledge_search_duration_seconds",
    "Hybrid knowledge search latency",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
)

SEMANTIC_DEGRADED = Counter(
    "knowledge_semantic_degraded_total",
    "Searches that fell back to keyword-only fusion",
    ["reason"],
)

KEYWORD_FALLBACK = Counter(
    "knowledge_keyword_fallback_total",
    "Searches where BM25 found nothing and substring matching was used",
)


def validate_options(options: SearchOptions) -> None:
    """Reject out-of-range options before any work is done."""
    if options.limit <= 0:
        raise InvalidConfigurationError(f"limit must be positive, got {options.limit}")
    if not 0.0 <= options.similarity_threshold <= 1.0:
        raise InvalidConfigurationError(
            f"similarity_threshold must be within [0, 1], got {options.similarity_threshold}"
        )
    if not 0.0 <= options.semantic_weight <= 1.0:
        raise InvalidConfigurationError(
            f"semantic_weight must be within [0, 1], got {options.semantic_weight}"
        )
    if options.timeout_seconds is not None and not (
        options.timeout_seconds > 0 and math.isfinite(options.timeout_seconds)
    ):
        raise InvalidConfigurationError(
            f"timeout_seconds must be positive, got {options.timeout_seconds}"
        )


class HybridRetriever:
    """
    Multi-tenant hybrid retrieval over BM25 and an optional semantic provider.

    Example:
        >>> retriever = HybridRetriever(IndexCacheManager(corpus_provider))
        >>> response = retriever.search("tenant-1", "¿Cuánto cuesta?")
        >>> retriever.is_context_sufficient(response)
        True
    """

    def __init__(
        self,
        index_manager: IndexCacheManager,
        query_enhancer: Optional[QueryEnhancer] = None,
        similarity_provider: Optional[SimilarityProvider] = None,
        embedding_generator: Optional[EmbeddingGenerator] = None,
        embedding_cache=None,
        fusion: Optional[ReciprocalRankFusion] = None,
        reranker: Optional[Reranker] = None,
        semantic_timeout_seconds: float = DEFAULT_SEMANTIC_TIMEOUT_SECONDS,
        enable_substring_fallback: bool = True,
        default_options: Optional[SearchOptions] = None,
        max_workers: int = 4,
    ) -> None:
        if semantic_timeout_seconds <= 0:
            raise InvalidConfigurationError(
                f"semantic_timeout_seconds must be positive, got {semantic_timeout_seconds}"
            )
        self._index_manager = index_manager
        self._query_enhancer = query_enhancer or QueryEnhancer()
        self._similarity_provider = similarity_provider
        self._embedding_generator = embedding_generator
        self._embedding_cache = embedding_cache
        self._fusion = fusion or ReciprocalRankFusion(k=DEFAULT_RRF_K)
        self._reranker = reranker or Reranker()
        self._semantic_timeout = semantic_timeout_seconds
        self._enable_substring_fallback = enable_substring_fallback
        self._default_options = default_options or SearchOptions()
        validate_options(self._default_options)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="semantic-search")

    @property
    def index_manager(self) -> IndexCacheManager:
        return self._index_manager

    @property
    def default_options(self) -> SearchOptions:
        return self._default_options

    @property
    def semantic_enabled(self) -> bool:
        return self._similarity_provider is not None and self._embedding_generator is not None

    def start(self) -> None:
        self._index_manager.start()

    def search(
        self,
        tenant_id: str,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> SearchResponse:
        """
        Retrieve, fuse and re-rank knowledge for one tenant.

        Args:
            tenant_id: Tenant whose knowledge base is searched
            query: Raw customer question
            options: Per-call options; defaults to the retriever's defaults

        Returns:
            SearchResponse with at most ``options.limit`` results. Never raises
            for provider or corpus failures; those yield fewer (or no) results.

        Raises:
            InvalidConfigurationError: For an empty tenant id or invalid options
        """
        if not tenant_id:
            raise InvalidConfigurationError("tenant_id is required")
        options = options or self._default_options
        validate_options(options)

        started = time.perf_counter()
        with tenant_context(tenant_id), SEARCH_LATENCY.time():
            enhanced = self._query_enhancer.enhance(
                query,
                vertical=options.vertical,
                business_name=options.business_name,
            )
            metrics = SearchMetrics()
            if not enhanced.expanded and not enhanced.keywords:
                metrics.processing_time_ms = (time.perf_counter() - started) * 1000
                return SearchResponse(results=[], enhanced_query=enhanced, metrics=metrics)

            candidate_limit = options.limit * CANDIDATE_MULTIPLIER
            semantic_future = self._submit_semantic(tenant_id, enhanced, options, candidate_limit)
            semantic_deadline = time.monotonic() + (options.timeout_seconds or self._semantic_timeout)

            keyword_items: List[RankedDocument] = []
            keyword_ran = False
            if options.enable_hybrid_search or semantic_future is None:
                keyword_items, metrics.keyword_fallback_used = self._keyword_search(
                    tenant_id, enhanced, candidate_limit
                )
                keyword_ran = True

            semantic_items: List[RankedDocument] = []
            if semantic_future is not None:
                semantic_items, metrics.semantic_degraded = self._await_semantic(
                    semantic_future, semantic_deadline, tenant_id
                )

            if metrics.semantic_degraded and not keyword_ran:
                keyword_items, metrics.keyword_fallback_used = self._keyword_search(
                    tenant_id, enhanced, candidate_limit
                )

            ranked_lists = []
            if semantic_items:
                ranked_lists.append(
                    RankedList(SearchSource.SEMANTIC.value, semantic_items, clamp_weight(options.semantic_weight))
                )
            if keyword_items:
                ranked_lists.append(
                    RankedList(SearchSource.KEYWORD.value, keyword_items, clamp_weight(1.0 - options.semantic_weight))
                )
            fused = normalize_scores(self._fusion.fuse(ranked_lists))

            if options.enable_reranking:
                enriched = self._reranker.rerank(
                    fused,
                    keywords=enhanced.keywords,
                    inferred_categories=enhanced.categories,
                    preferred_categories=options.preferred_categories,
                )
            else:
                enriched = self._reranker.passthrough(
                    fused,
                    keywords=enhanced.keywords,
                    semantic_weight=options.semantic_weight,
                )
            results = enriched[: options.limit]

            metrics.total_results = len(results)
            metrics.semantic_results = len(semantic_items)
            metrics.keyword_results = len(keyword_items)
            metrics.context_sufficiency_score = calculate_sufficiency(results)
            metrics.processing_time_ms = (time.perf_counter() - started) * 1000

            logger.info(
                "Knowledge search completed",
                extra={
                    "intent": enhanced.intent,
                    "total_results": metrics.total_results,
                    "semantic_results": metrics.semantic_results,
                    "keyword_results": metrics.keyword_results,
                    "semantic_degraded": metrics.semantic_degraded,
                    "sufficiency": round(metrics.context_sufficiency_score, 3),
                    "duration_ms": round(metrics.processing_time_ms, 2),
                },
            )
            return SearchResponse(results=results, enhanced_query=enhanced, metrics=metrics)

    @staticmethod
    def is_context_sufficient(response: SearchResponse) -> bool:
        return is_context_sufficient(response)

    def refresh_index(self, tenant_id: str) -> Optional[IndexStats]:
        """Rebuild the tenant's index; None when it failed and none was cached."""
        index = self._index_manager.force_reload(tenant_id)
        if index is None:
            return None
        return self._index_manager.get_stats(tenant_id)

    def clear_index(self, tenant_id: str) -> bool:
        return self._index_manager.clear(tenant_id)

    def get_index_stats(self, tenant_id: str) -> Optional[IndexStats]:
        return self._index_manager.get_stats(tenant_id)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._index_manager.shutdown()
        if self._embedding_cache is not None:
            self._embedding_cache.shutdown()
        logger.info("Hybrid retriever shut down")

    # --- Semantic path ---------------------------------------------------
    def _submit_semantic(
        self,
        tenant_id: str,
        enhanced: EnhancedQuery,
        options: SearchOptions,
        candidate_limit: int,
    ) -> Optional[Future]:
        if not self.semantic_enabled or not enhanced.rewritten:
            return None
        ctx = contextvars.copy_context()
        return self._executor.submit(
            ctx.run,
            self._semantic_search,
            tenant_id,
            enhanced.rewritten,
            candidate_limit,
            options.similarity_threshold * SEMANTIC_THRESHOLD_FACTOR,
        )

    def _semantic_search(
        self,
        tenant_id: str,
        text: str,
        limit: int,
        min_similarity: float,
    ) -> List[RankedDocument]:
        generator = self._embedding_generator
        if self._embedding_cache is not None:
            vector, from_cache = self._embedding_cache.get_or_generate(text, generator.model, generator.generate)
        else:
            vector, from_cache = generator.generate(text), False
        logger.debug("Query embedding ready", extra={"from_cache": from_cache})

        hits = self._similarity_provider.query_similar(tenant_id, vector, limit, min_similarity)
        hits = sorted(hits, key=lambda h: h.similarity, reverse=True)[:limit]
        return [
            RankedDocument(id=hit.id, score=hit.similarity, rank=rank, document=hit.document)
            for rank, hit in enumerate(hits, start=1)
        ]

    def _await_semantic(
        self,
        future: Future,
        deadline: float,
        tenant_id: str,
    ) -> Tuple[List[RankedDocument], bool]:
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic())), False
        except FutureTimeoutError:
            future.cancel()
            SEMANTIC_DEGRADED.labels(reason="timeout").inc()
            logger.warning("Semantic search timed out, using keyword results only", extra={"tenant_id": tenant_id})
        except Exception as exc:
            SEMANTIC_DEGRADED.labels(reason="error").inc()
            logger.warning(
                "Semantic search failed, using keyword results only",
                extra={"tenant_id": tenant_id, "error": str(exc)},
            )
        return [], True

    # --- Keyword path ----------------------------------------------------
    def _keyword_search(
        self,
        tenant_id: str,
        enhanced: EnhancedQuery,
        limit: int,
    ) -> Tuple[List[RankedDocument], bool]:
        index = self._index_manager.get_or_create(tenant_id)
        if index is None:
            return [], False

        results = index.search(enhanced.expanded, limit=limit)
        fallback_used = False
        if not results and self._enable_substring_fallback and enhanced.keywords:
            results = index.substring_search(enhanced.keywords, limit=limit)
            fallback_used = bool(results)
            if fallback_used:
                KEYWORD_FALLBACK.inc()

        return [
            RankedDocument(id=r.id, score=r.score, rank=rank, document=r.document)
            for rank, r in enumerate(results, start=1)
        ], fallback_used
