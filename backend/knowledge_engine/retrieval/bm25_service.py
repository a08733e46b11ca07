"""
BM25 keyword index over one tenant's document corpus.

Scoring is delegated to rank_bm25's Okapi implementation, with the IDF
replaced by the non-negative variant

    idf(t) = ln((N - df(t) + 0.5) / (df(t) + 0.5) + 1)

so that terms present in most documents still contribute a small positive
weight instead of being floored by an epsilon.

CRITICAL: this index MUST use tokenize() from tokenizer.py for both
documents and queries.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from rank_bm25 import BM25Okapi

from .errors import InvalidConfigurationError
from .tokenizer import normalize_text, tokenize
from .types import Document


logger = logging.getLogger(__name__)

DEFAULT_K1 = 1.2
DEFAULT_B = 0.75

# Minimum weighted overlap for a substring-fallback hit to be kept.
SUBSTRING_MIN_SCORE = 0.1
KEYWORD_WEIGHT_DECAY = 0.1


@dataclass
class BM25SearchResult:
    """Result from a keyword query against a tenant index."""
    id: str
    score: float
    document: Document
    metadata: Dict[str, Any] = field(default_factory=dict)


class _NonNegativeIdfBM25(BM25Okapi):
    """BM25Okapi with a smoothed IDF that never goes negative."""

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        self.document_frequency = dict(nd)
        for word, freq in nd.items():
            self.idf[word] = math.log(
                (self.corpus_size - freq + 0.5) / (freq + 0.5) + 1
            )


def weighted_keyword_overlap(text: str, keywords: Sequence[str]) -> float:
    """
    Fraction of keywords present in text, with earlier keywords weighted higher.

    The i-th keyword (0-indexed) weighs max(0, 1 - 0.1 * i); the weighted hit
    count is divided by the number of keywords. Matching is substring-based
    on diacritic-free, lower-cased text.
    """
    if not keywords:
        return 0.0
    haystack = normalize_text(text)
    total = 0.0
    for i, keyword in enumerate(keywords):
        needle = normalize_text(keyword)
        if needle and needle in haystack:
            total += max(0.0, 1.0 - i * KEYWORD_WEIGHT_DECAY)
    return total / len(keywords)


class TenantIndex:
    """
    In-memory BM25 index for a single tenant.

    Documents are added with add_documents() (which marks the index dirty)
    and statistics are computed by build_index(). The Index Cache Manager
    builds a fresh TenantIndex completely before publishing it, so readers
    never see a half-built index.

    Example:
        >>> index = TenantIndex("tenant-1")
        >>> index.add_documents([Document(
        ...     id="1", source_type=SourceType.FAQ, source_id="1",
        ...     title="Horario", content="Abrimos el sábado")])
        >>> index.build_index()
        >>> index.search("sabado")[0].id
        'faq:1'
    """

    def __init__(
        self,
        tenant_id: str,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
    ) -> None:
        if k1 <= 0:
            raise InvalidConfigurationError(f"k1 must be positive, got {k1}")
        if not 0.0 <= b <= 1.0:
            raise InvalidConfigurationError(f"b must be between 0.0 and 1.0, got {b}")
        self._tenant_id = tenant_id
        self._k1 = k1
        self._b = b
        self._documents: Dict[str, Document] = {}
        self._tokens: Dict[str, List[str]] = {}
        self._bm25: Optional[_NonNegativeIdfBM25] = None
        self._doc_keys: List[str] = []
        self._dirty = False
        self._build_lock = threading.Lock()

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def k1(self) -> float:
        return self._k1

    @property
    def b(self) -> float:
        return self._b

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def is_built(self) -> bool:
        return not self._dirty and bool(self._doc_keys)

    @property
    def document_count(self) -> int:
        return len(self._documents)

    @property
    def avg_doc_length(self) -> float:
        if self._bm25 is None:
            return 0.0
        return float(self._bm25.avgdl)

    @property
    def term_count(self) -> int:
        """Number of distinct terms in the corpus vocabulary."""
        if self._bm25 is None:
            return 0
        return len(self._bm25.document_frequency)

    def add_documents(self, documents: Iterable[Document]) -> int:
        """
        Tokenize and stage documents for indexing.

        Re-adding a document with the same key replaces the previous version.

        Returns:
            Number of documents staged
        """
        added = 0
        for document in documents:
            self._documents[document.key] = document
            self._tokens[document.key] = tokenize(document.text)
            added += 1
        if added:
            self._dirty = True
        return added

    def build_index(self) -> None:
        """
        Recompute document frequencies and average length from scratch.

        Cheap to call redundantly: does nothing when no documents were added
        since the last build.
        """
        with self._build_lock:
            if not self._dirty:
                return
            keys = list(self._documents.keys())
            corpus = [self._tokens[key] for key in keys]
            self._bm25 = _NonNegativeIdfBM25(corpus, k1=self._k1, b=self._b) if corpus else None
            self._doc_keys = keys
            self._dirty = False
        logger.debug(
            "Built BM25 index",
            extra={
                "tenant_id": self._tenant_id,
                "document_count": len(keys),
                "term_count": self.term_count,
            },
        )

    def document_frequency(self, term: str) -> int:
        if self._bm25 is None:
            return 0
        return self._bm25.document_frequency.get(term, 0)

    def idf(self, term: str) -> float:
        if self._bm25 is None:
            return 0.0
        return float(self._bm25.idf.get(term, 0.0))

    def term_frequencies(self, document_key: str) -> Dict[str, int]:
        """Term frequency map of one indexed document (empty if unknown)."""
        if self._bm25 is None or document_key not in self._documents:
            return {}
        position = self._doc_keys.index(document_key)
        return dict(self._bm25.doc_freqs[position])

    def get_documents(self) -> List[Document]:
        return [self._documents[key] for key in self._doc_keys]

    def search(self, query: str, limit: int = 10) -> List[BM25SearchResult]:
        """
        Score every indexed document against the query.

        Args:
            query: Raw query text; tokenized with the shared tokenizer
            limit: Maximum number of results

        Returns:
            Documents with a positive score, best first; equal scores keep
            insertion order. Empty when the index has no documents.
        """
        if self._dirty:
            self.build_index()
        if self._bm25 is None or limit <= 0:
            return []
        # A corpus made only of stop words has no length to normalize by.
        if self._bm25.avgdl == 0:
            return []

        query_terms = list(dict.fromkeys(tokenize(query)))
        if not query_terms:
            return []

        scores = self._bm25.get_scores(query_terms)
        scored: List[Tuple[int, float]] = [
            (position, float(score))
            for position, score in enumerate(scores)
            if score > 0
        ]
        scored.sort(key=lambda item: item[1], reverse=True)

        return [
            self._make_result(self._doc_keys[position], score)
            for position, score in scored[:limit]
        ]

    def substring_search(
        self,
        keywords: Sequence[str],
        limit: int = 10,
    ) -> List[BM25SearchResult]:
        """
        Fallback keyword match for queries where BM25 finds nothing.

        Scores each document by weighted keyword overlap (see
        weighted_keyword_overlap) and keeps documents above a small floor.
        """
        if self._dirty:
            self.build_index()
        if not keywords or limit <= 0:
            return []

        scored: List[Tuple[str, float]] = []
        for key in self._doc_keys:
            score = weighted_keyword_overlap(self._documents[key].text, keywords)
            if score > SUBSTRING_MIN_SCORE:
                scored.append((key, score))
        scored.sort(key=lambda item: item[1], reverse=True)

        return [self._make_result(key, score) for key, score in scored[:limit]]

    def _make_result(self, key: str, score: float) -> BM25SearchResult:
        document = self._documents[key]
        return BM25SearchResult(
            id=key,
            score=score,
            document=document,
            metadata={
                "source_type": document.source_type.value,
                "source_id": document.source_id,
                "title": document.title,
                "category": document.category,
            },
        )
