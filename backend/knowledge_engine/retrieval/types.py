"""
Core data types shared across the retrieval pipeline.

Documents flow through the pipeline as immutable snapshots; every stage
produces new result objects instead of mutating the previous stage's output.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SourceType(str, Enum):
    """Kind of knowledge-base record a document was built from."""
    ARTICLE = "article"
    FAQ = "faq"
    POLICY = "policy"
    SERVICE = "service"


class SearchSource(str, Enum):
    """Retrieval path that produced a ranked list."""
    SEMANTIC = "semantic"
    KEYWORD = "keyword"


@dataclass(frozen=True)
class Document:
    """A retrievable unit of tenant knowledge."""
    id: str
    source_type: SourceType
    source_id: str
    title: str
    content: str
    category: str = ""
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        """Engine-wide identity; ids are only unique per source type."""
        return f"{self.source_type.value}:{self.id}"

    @property
    def text(self) -> str:
        return f"{self.title} {self.content}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class RankedDocument:
    """A document at a 1-based position within one source list."""
    id: str
    score: float
    rank: int
    document: Document


@dataclass(frozen=True)
class Contribution:
    source: str
    rank: int
    original_score: float


@dataclass
class FusedResult:
    id: str
    document: Document
    rrf_score: float
    contributing_ranks: List[Contribution] = field(default_factory=list)

    def score_from(self, source: str) -> Optional[float]:
        """Original score this result had in the given source list, if any."""
        for contribution in self.contributing_ranks:
            if contribution.source == source:
                return contribution.original_score
        return None


@dataclass
class EnrichedResult:
    """
    Fused result with the re-ranking signals that produced its final score.

    ``context_sufficient`` is derived from ``final_score`` and the threshold
    the re-ranker was configured with; it cannot be set independently.
    """
    id: str
    document: Document
    rrf_score: float
    contributing_ranks: List[Contribution]
    final_score: float
    semantic_score: float
    keyword_score: float
    recency_boost: float
    category_boost: float
    sufficiency_threshold: float = field(default=0.6, repr=False)

    @property
    def context_sufficient(self) -> bool:
        return self.final_score >= self.sufficiency_threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document": self.document.to_dict(),
            "rrf_score": self.rrf_score,
            "contributing_ranks": [
                {
                    "source": c.source,
                    "rank": c.rank,
                    "original_score": c.original_score,
                }
                for c in self.contributing_ranks
            ],
            "final_score": self.final_score,
            "semantic_score": self.semantic_score,
            "keyword_score": self.keyword_score,
            "recency_boost": self.recency_boost,
            "category_boost": self.category_boost,
            "context_sufficient": self.context_sufficient,
        }


@dataclass
class EnhancedQuery:
    original: str
    expanded: str
    rewritten: str
    keywords: List[str]
    categories: List[str]
    intent: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original": self.original,
            "expanded": self.expanded,
            "rewritten": self.rewritten,
            "keywords": list(self.keywords),
            "categories": list(self.categories),
            "intent": self.intent,
            "confidence": self.confidence,
        }


@dataclass
class SimilarityHit:
    """One hit returned by a semantic similarity provider."""
    id: str
    similarity: float
    document: Document


@dataclass
class SearchOptions:
    limit: int = 5
    similarity_threshold: float = 0.5
    enable_hybrid_search: bool = True
    enable_reranking: bool = True
    preferred_categories: List[str] = field(default_factory=list)
    semantic_weight: float = 0.6
    vertical: Optional[str] = None
    business_name: Optional[str] = None
    timeout_seconds: Optional[float] = None


@dataclass
class SearchMetrics:
    total_results: int = 0
    semantic_results: int = 0
    keyword_results: int = 0
    processing_time_ms: float = 0.0
    context_sufficiency_score: float = 0.0
    semantic_degraded: bool = False
    keyword_fallback_used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_results": self.total_results,
            "semantic_results": self.semantic_results,
            "keyword_results": self.keyword_results,
            "processing_time_ms": self.processing_time_ms,
            "context_sufficiency_score": self.context_sufficiency_score,
            "semantic_degraded": self.semantic_degraded,
            "keyword_fallback_used": self.keyword_fallback_used,
        }


@dataclass
class SearchResponse:
    results: List[EnrichedResult]
    enhanced_query: EnhancedQuery
    metrics: SearchMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "enhanced_query": self.enhanced_query.to_dict(),
            "metrics": self.metrics.to_dict(),
        }


@dataclass
class IndexStats:
    tenant_id: str
    document_count: int
    term_count: int
    avg_doc_length: float
    created_at: float
    last_used_at: float
    build_duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "document_count": self.document_count,
            "term_count": self.term_count,
            "avg_doc_length": self.avg_doc_length,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "build_duration_ms": self.build_duration_ms,
        }
