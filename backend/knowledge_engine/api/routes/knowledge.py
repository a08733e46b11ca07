from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ...logging_utils import bind_tenant_context
from ...retrieval.errors import InvalidConfigurationError
from ...retrieval.hybrid_retriever import HybridRetriever
from ...retrieval.types import SearchOptions
from ...services.retrieval_factory import get_hybrid_retriever


router = APIRouter(prefix="/api/knowledge", tags=["knowledge"])


class SearchRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    query: str = Field(min_length=1, max_length=2000)
    limit: Optional[int] = Field(default=None, gt=0, le=50)
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    enable_hybrid_search: bool = True
    enable_reranking: bool = True
    preferred_categories: List[str] = Field(default_factory=list)
    semantic_weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    vertical: Optional[str] = None
    business_name: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0, le=60.0)


def get_hybrid_retriever_dep() -> HybridRetriever:
    return get_hybrid_retriever()


def _options_for(payload: SearchRequest, defaults: SearchOptions) -> SearchOptions:
    overrides: Dict[str, Any] = {
        "enable_hybrid_search": payload.enable_hybrid_search,
        "enable_reranking": payload.enable_reranking,
        "preferred_categories": list(payload.preferred_categories),
        "vertical": payload.vertical,
        "business_name": payload.business_name,
    }
    for name in ("limit", "similarity_threshold", "semantic_weight", "timeout_seconds"):
        value = getattr(payload, name)
        if value is not None:
            overrides[name] = value
    return replace(defaults, **overrides)


@router.post("/search")
def search_knowledge(
    payload: SearchRequest,
    retriever: HybridRetriever = Depends(get_hybrid_retriever_dep),
) -> Dict[str, Any]:
    bind_tenant_context(payload.tenant_id)
    try:
        options = _options_for(payload, retriever.default_options)
        response = retriever.search(payload.tenant_id, payload.query, options)
    except InvalidConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    body = response.to_dict()
    body["context_sufficient"] = retriever.is_context_sufficient(response)
    return body


@router.post("/index/{tenant_id}/refresh")
def refresh_index(
    tenant_id: str,
    retriever: HybridRetriever = Depends(get_hybrid_retriever_dep),
) -> Dict[str, Any]:
    bind_tenant_context(tenant_id)
    stats = retriever.refresh_index(tenant_id)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Knowledge base for tenant {tenant_id} could not be loaded",
        )
    return stats.to_dict()


@router.delete("/index/{tenant_id}")
def clear_index(
    tenant_id: str,
    retriever: HybridRetriever = Depends(get_hybrid_retriever_dep),
) -> Dict[str, bool]:
    bind_tenant_context(tenant_id)
    return {"cleared": retriever.clear_index(tenant_id)}


@router.get("/index/{tenant_id}/stats")
def get_index_stats(
    tenant_id: str,
    retriever: HybridRetriever = Depends(get_hybrid_retriever_dep),
) -> Dict[str, Any]:
    stats = retriever.get_index_stats(tenant_id)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No index cached for tenant {tenant_id}",
        )
    return stats.to_dict()
