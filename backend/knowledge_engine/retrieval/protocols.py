"""
Protocol definitions for the retrieval engine's external collaborators.

The engine only depends on these interfaces; concrete adapters (Supabase,
Chroma, OpenAI, Redis) live in knowledge_engine.services and tests wire in
hand-written fakes.
"""

from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from .types import Document, SimilarityHit


@runtime_checkable
class DocumentCorpusProvider(Protocol):
    """Bulk source of a tenant's knowledge-base documents."""

    def load_documents(self, tenant_id: str) -> List[Document]:
        """Load every active document for a tenant.

        Args:
            tenant_id: Tenant whose corpus is requested

        Returns:
            Snapshot of the tenant's documents

        Raises:
            CorpusLoadError: If the backing store cannot be read
        """
        ...


@runtime_checkable
class SimilarityProvider(Protocol):
    """Nearest-neighbour search over pre-computed document embeddings."""

    def query_similar(
        self,
        tenant_id: str,
        query_vector: Sequence[float],
        limit: int,
        min_similarity: float,
    ) -> List[SimilarityHit]:
        """Return up to ``limit`` documents of the tenant, most similar first.

        Raises:
            ProviderUnavailableError: If the vector store cannot be queried
        """
        ...


@runtime_checkable
class EmbeddingGenerator(Protocol):
    """Turns text into a fixed-length vector."""

    @property
    def model(self) -> str:
        ...

    def generate(self, text: str) -> List[float]:
        ...


@runtime_checkable
class SharedCache(Protocol):
    """Optional key-value tier with TTL support, shared across processes."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ...

    def delete(self, key: str) -> bool:
        ...

    def keys(self, pattern: str = "*") -> List[str]:
        ...
