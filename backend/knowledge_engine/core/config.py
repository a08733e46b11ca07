from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PACKAGE_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    app_name: str = "Knowledge Retrieval Engine"
    environment: str = "development"
    log_config_path: Path = PACKAGE_ROOT / "logging.yaml"
    log_level: str = "INFO"
    log_dir: Path = Path("backend/logs")
    enable_file_logging: bool = True
    enable_json_logs: bool = True

    # Corpus (Supabase)
    supabase_url: Optional[str] = Field(default=None, validation_alias="SUPABASE_URL")
    supabase_service_role_key: Optional[str] = Field(
        default=None, validation_alias="SUPABASE_SERVICE_ROLE_KEY"
    )

    # Embeddings
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(default=1536, gt=0)
    embedding_max_chars: int = Field(default=8000, gt=0)  # ~2000 tokens

    # Chroma
    chroma_server_host: Optional[str] = None
    chroma_server_port: Optional[int] = None
    chroma_server_ssl: bool = False
    chroma_server_api_key: Optional[str] = None
    chroma_persist_directory: Optional[Path] = None
    chroma_collection: str = "knowledge_base"

    # Shared cache tier; unset means local-only embedding cache
    redis_url: Optional[str] = None
    embedding_cache_capacity: int = Field(default=10_000, gt=0)
    embedding_cache_ttl_seconds: int = Field(default=3600, gt=0)

    # Keyword index
    bm25_k1: float = Field(default=1.2, gt=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    index_ttl_seconds: float = Field(default=30 * 60, gt=0)
    index_sweep_interval_seconds: float = Field(default=5 * 60, gt=0)
    enable_substring_fallback: bool = True

    # Fusion and ranking
    rrf_k: int = Field(default=60, gt=0)
    semantic_timeout_seconds: float = Field(default=5.0, gt=0)
    default_limit: int = Field(default=5, gt=0)
    default_similarity_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    default_semantic_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    context_sufficiency_threshold: float = Field(default=0.6, ge=0.0, le=1.0)

    # Query enhancement
    default_vertical: str = "general"
    business_name: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_vertical(self) -> "Settings":
        from ..retrieval.query_enhancer import SUPPORTED_VERTICALS

        if self.default_vertical not in SUPPORTED_VERTICALS:
            raise ValueError(
                f"default_vertical must be one of {sorted(SUPPORTED_VERTICALS)}, "
                f"got {self.default_vertical!r}"
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
