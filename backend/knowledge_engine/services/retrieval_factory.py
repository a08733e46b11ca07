from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..core.config import Settings, get_settings
from ..core.supabase_client import get_supabase_client
from ..retrieval.hybrid_retriever import HybridRetriever
from ..retrieval.index_manager import IndexCacheManager
from ..retrieval.query_enhancer import QueryEnhancer
from ..retrieval.rank_fusion import ReciprocalRankFusion
from ..retrieval.reranker import Reranker
from ..retrieval.types import SearchOptions
from .cache_service import create_shared_cache
from .corpus_service import SupabaseCorpusProvider
from .embedding_cache import EmbeddingCache
from .embedding_service import OpenAIEmbeddingGenerator
from .vector_store import ChromaSimilarityProvider, create_chroma_client


logger = logging.getLogger("knowledge_engine.services.retrieval_factory")


def default_search_options(settings: Settings) -> SearchOptions:
    return SearchOptions(
        limit=settings.default_limit,
        similarity_threshold=settings.default_similarity_threshold,
        semantic_weight=settings.default_semantic_weight,
        timeout_seconds=settings.semantic_timeout_seconds,
    )


def create_hybrid_retriever(
    settings: Optional[Settings] = None,
    corpus_provider=None,
    similarity_provider=None,
    embedding_generator=None,
) -> HybridRetriever:
    """
    Wire the engine from settings.

    Collaborators that are not passed in are built from the configured
    backends: Supabase for the corpus, Chroma + OpenAI for the semantic path
    (skipped without an OpenAI key), Redis for the shared embedding cache.
    """
    settings = settings or get_settings()

    if corpus_provider is None:
        corpus_provider = SupabaseCorpusProvider(get_supabase_client())

    if embedding_generator is None and settings.openai_api_key:
        embedding_generator = OpenAIEmbeddingGenerator(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            max_chars=settings.embedding_max_chars,
            api_key=settings.openai_api_key,
        )
    if similarity_provider is None and embedding_generator is not None:
        similarity_provider = ChromaSimilarityProvider(
            create_chroma_client(settings),
            collection_name=settings.chroma_collection,
        )
    if embedding_generator is None:
        logger.warning("No embedding generator configured, semantic search disabled")

    embedding_cache = EmbeddingCache(
        capacity=settings.embedding_cache_capacity,
        shared_cache=create_shared_cache(settings.redis_url, settings.embedding_cache_ttl_seconds),
        shared_ttl_seconds=settings.embedding_cache_ttl_seconds,
    )
    index_manager = IndexCacheManager(
        corpus_provider,
        ttl_seconds=settings.index_ttl_seconds,
        sweep_interval_seconds=settings.index_sweep_interval_seconds,
        k1=settings.bm25_k1,
        b=settings.bm25_b,
    )
    return HybridRetriever(
        index_manager,
        query_enhancer=QueryEnhancer(
            vertical=settings.default_vertical,
            business_name=settings.business_name,
        ),
        similarity_provider=similarity_provider,
        embedding_generator=embedding_generator,
        embedding_cache=embedding_cache,
        fusion=ReciprocalRankFusion(k=settings.rrf_k),
        reranker=Reranker(sufficiency_threshold=settings.context_sufficiency_threshold),
        semantic_timeout_seconds=settings.semantic_timeout_seconds,
        enable_substring_fallback=settings.enable_substring_fallback,
        default_options=default_search_options(settings),
    )


@lru_cache(maxsize=1)
def get_hybrid_retriever() -> HybridRetriever:
    retriever = create_hybrid_retriever()
    retriever.start()
    return retriever
