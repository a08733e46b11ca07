from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import chromadb
from chromadb.config import Settings as ChromaSettings

from ..core.config import Settings
from ..retrieval.errors import ProviderUnavailableError
from ..retrieval.types import Document, SimilarityHit, SourceType


logger = logging.getLogger("knowledge_engine.services.vector_store")


def create_chroma_client(settings: Settings):
    """HTTP client when a server is configured, else persistent or in-memory."""
    if settings.chroma_server_host:
        return chromadb.HttpClient(
            host=settings.chroma_server_host,
            port=settings.chroma_server_port or 8000,
            ssl=settings.chroma_server_ssl,
            headers={"Authorization": f"Bearer {settings.chroma_server_api_key}"}
            if settings.chroma_server_api_key
            else None,
        )
    if settings.chroma_persist_directory:
        persist_dir = Path(settings.chroma_persist_directory)
        persist_dir.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(
            path=str(persist_dir),
            settings=ChromaSettings(anonymized_telemetry=False),
        )
    return chromadb.Client(settings=ChromaSettings(anonymized_telemetry=False))


def _document_metadata(tenant_id: str, document: Document) -> Dict[str, Any]:
    return {
        "tenant_id": tenant_id,
        "document_id": document.id,
        "source_type": document.source_type.value,
        "source_id": document.source_id,
        "title": document.title,
        "category": document.category or "",
        "updated_at": document.updated_at.isoformat() if document.updated_at else "",
    }


def _document_from_metadata(metadata: Dict[str, Any], content: Optional[str]) -> Document:
    updated_at = metadata.get("updated_at") or None
    return Document(
        id=str(metadata.get("document_id", "")),
        source_type=SourceType(metadata.get("source_type", SourceType.ARTICLE.value)),
        source_id=str(metadata.get("source_id", "")),
        title=str(metadata.get("title", "")),
        content=content or "",
        category=str(metadata.get("category", "")),
        updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
    )


class ChromaSimilarityProvider:
    """
    Similarity provider over a Chroma collection shared by all tenants.

    Every vector carries a ``tenant_id`` metadata field and every query is
    filtered on it, so one tenant's documents are never returned to another.
    The collection uses cosine space; similarity = 1 - distance, clamped to [0, 1].
    """

    def __init__(self, client, collection_name: str = "knowledge_base"):
        self._client = client
        self.collection_name = collection_name
        self.collection = client.get_or_create_collection(
            collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    @staticmethod
    def _vector_id(tenant_id: str, document: Document) -> str:
        return f"{tenant_id}:{document.key}"

    def upsert(
        self,
        tenant_id: str,
        documents: Sequence[Document],
        embeddings: Sequence[Sequence[float]],
    ) -> int:
        if len(documents) != len(embeddings):
            raise ValueError("documents and embeddings must have the same length")
        if not documents:
            return 0
        try:
            self.collection.upsert(
                ids=[self._vector_id(tenant_id, d) for d in documents],
                embeddings=[list(e) for e in embeddings],
                documents=[d.content for d in documents],
                metadatas=[_document_metadata(tenant_id, d) for d in documents],
            )
        except Exception as exc:
            raise ProviderUnavailableError(f"Chroma upsert failed: {exc}") from exc
        logger.info(
            "Upserted document vectors",
            extra={"tenant_id": tenant_id, "count": len(documents), "collection": self.collection_name},
        )
        return len(documents)

    def delete_tenant(self, tenant_id: str) -> None:
        try:
            self.collection.delete(where={"tenant_id": {"$eq": tenant_id}})
        except Exception as exc:
            raise ProviderUnavailableError(f"Chroma delete failed: {exc}") from exc

    def document_keys(self, tenant_id: str) -> Set[str]:
        """Engine document keys ("{source_type}:{id}") with a stored vector for the tenant."""
        try:
            results = self.collection.get(
                where={"tenant_id": {"$eq": tenant_id}},
                include=["metadatas"],
            )
        except Exception as exc:
            raise ProviderUnavailableError(f"Chroma get failed: {exc}") from exc

        keys: Set[str] = set()
        for metadata in results.get("metadatas") or []:
            if not metadata or metadata.get("tenant_id") != tenant_id:
                continue
            keys.add(f"{metadata.get('source_type')}:{metadata.get('document_id')}")
        return keys

    def delete_documents(self, tenant_id: str, keys: Iterable[str]) -> int:
        ids = [f"{tenant_id}:{key}" for key in keys]
        if not ids:
            return 0
        try:
            self.collection.delete(ids=ids)
        except Exception as exc:
            raise ProviderUnavailableError(f"Chroma delete failed: {exc}") from exc
        return len(ids)

    def query_similar(
        self,
        tenant_id: str,
        query_vector: Sequence[float],
        limit: int,
        min_similarity: float,
    ) -> List[SimilarityHit]:
        if limit <= 0:
            return []
        try:
            results = self.collection.query(
                query_embeddings=[list(query_vector)],
                where={"tenant_id": {"$eq": tenant_id}},
                n_results=limit,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise ProviderUnavailableError(f"Chroma query failed: {exc}") from exc

        if not results.get("ids") or not results["ids"][0]:
            return []

        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = results["distances"][0]

        hits: List[SimilarityHit] = []
        for idx in range(len(results["ids"][0])):
            metadata = metadatas[idx] if idx < len(metadatas) and metadatas[idx] else {}
            # Never return another tenant's vectors.
            if metadata.get("tenant_id") != tenant_id:
                continue
            similarity = min(1.0, max(0.0, 1.0 - float(distances[idx])))
            if similarity < min_similarity:
                continue
            document = _document_from_metadata(metadata, documents[idx] if idx < len(documents) else "")
            hits.append(SimilarityHit(id=document.key, similarity=similarity, document=document))
        return hits
