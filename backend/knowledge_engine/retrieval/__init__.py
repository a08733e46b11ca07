"""
Retrieval module for hybrid knowledge search.

Contains:
- Unified tokenizer for BM25 indexing, querying and query enhancement
- Per-tenant BM25 index and the Index Cache Manager that owns its lifetime
- Query Enhancer (intent, keywords, categories, synonym expansion)
- RRF (Reciprocal Rank Fusion), re-ranking and sufficiency scoring
- Hybrid retriever tying the semantic and keyword paths together
"""

from .tokenizer import (
    normalize_text,
    strip_diacritics,
    tokenize,
)
from .errors import (
    CacheBackendError,
    CorpusLoadError,
    InvalidConfigurationError,
    ProviderUnavailableError,
    RetrievalError,
)
from .types import (
    Document,
    EnhancedQuery,
    EnrichedResult,
    FusedResult,
    IndexStats,
    RankedDocument,
    SearchMetrics,
    SearchOptions,
    SearchResponse,
    SimilarityHit,
    SourceType,
)
from .protocols import (
    DocumentCorpusProvider,
    EmbeddingGenerator,
    SharedCache,
    SimilarityProvider,
)
from .bm25_service import (
    BM25SearchResult,
    TenantIndex,
)
from .query_enhancer import (
    QueryEnhancer,
    SUPPORTED_VERTICALS,
)
from .rank_fusion import (
    RankedList,
    ReciprocalRankFusion,
    clamp_weight,
    normalize_scores,
)
from .reranker import (
    Reranker,
    RerankWeights,
)
from .sufficiency import (
    calculate_sufficiency,
    is_context_sufficient,
)
from .index_manager import IndexCacheManager
from .hybrid_retriever import HybridRetriever

__all__ = [
    "normalize_text",
    "strip_diacritics",
    "tokenize",
    "CacheBackendError",
    "CorpusLoadError",
    "InvalidConfigurationError",
    "ProviderUnavailableError",
    "RetrievalError",
    "Document",
    "EnhancedQuery",
    "EnrichedResult",
    "FusedResult",
    "IndexStats",
    "RankedDocument",
    "SearchMetrics",
    "SearchOptions",
    "SearchResponse",
    "SimilarityHit",
    "SourceType",
    "DocumentCorpusProvider",
    "EmbeddingGenerator",
    "SharedCache",
    "SimilarityProvider",
    "BM25SearchResult",
    "TenantIndex",
    "QueryEnhancer",
    "SUPPORTED_VERTICALS",
    "RankedList",
    "ReciprocalRankFusion",
    "clamp_weight",
    "normalize_scores",
    "Reranker",
    "RerankWeights",
    "calculate_sufficiency",
    "is_context_sufficient",
    "IndexCacheManager",
    "HybridRetriever",
]
