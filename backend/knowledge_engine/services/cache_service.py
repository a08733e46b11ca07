from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from ..retrieval.errors import CacheBackendError


logger = logging.getLogger("knowledge_engine.services.cache")

DEFAULT_TTL_SECONDS = 3600


class RedisSharedCache:
    """Redis-backed shared cache tier storing JSON values, with simple hit/miss metrics."""

    DEFAULT_LAYERS = ["embedding"]

    def __init__(
        self,
        redis_client: Redis,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        metric_layers: Optional[list[str]] = None,
    ):
        self.redis = redis_client
        self.default_ttl = default_ttl
        layers = metric_layers or self.DEFAULT_LAYERS
        self.metrics: Dict[str, Dict[str, int]] = {layer: {"hit": 0, "miss": 0} for layer in layers}

    @classmethod
    def from_url(cls, redis_url: str, default_ttl: int = DEFAULT_TTL_SECONDS) -> "RedisSharedCache":
        return cls(Redis.from_url(redis_url, decode_responses=True), default_ttl=default_ttl)

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except RedisError as exc:
            raise CacheBackendError(f"Redis ping failed: {exc}") from exc

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"Redis GET failed for {key}: {exc}") from exc
        layer = self._layer(key)
        if raw is None:
            self._record_miss(layer)
            return None
        self._record_hit(layer)
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise CacheBackendError(f"Corrupt cache value under {key}") from exc

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            self.redis.setex(key, ttl or self.default_ttl, json.dumps(value, ensure_ascii=False))
        except RedisError as exc:
            raise CacheBackendError(f"Redis SETEX failed for {key}: {exc}") from exc
        return True

    def delete(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(key))
        except RedisError as exc:
            raise CacheBackendError(f"Redis DEL failed for {key}: {exc}") from exc

    def keys(self, pattern: str = "*") -> List[str]:
        try:
            return list(self.redis.scan_iter(match=pattern))
        except RedisError as exc:
            raise CacheBackendError(f"Redis SCAN failed for {pattern}: {exc}") from exc

    # --- Metrics helpers -------------------------------------------------
    @staticmethod
    def _layer(key: str) -> str:
        return key.split(":", 1)[0]

    def _record_hit(self, layer: Optional[str]) -> None:
        if layer and layer in self.metrics:
            self.metrics[layer]["hit"] += 1

    def _record_miss(self, layer: Optional[str]) -> None:
        if layer and layer in self.metrics:
            self.metrics[layer]["miss"] += 1


class NullSharedCache:
    """Shared tier used when no Redis is configured: every read misses."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return False

    def delete(self, key: str) -> bool:
        return False

    def keys(self, pattern: str = "*") -> List[str]:
        return []


def create_shared_cache(redis_url: Optional[str], default_ttl: int = DEFAULT_TTL_SECONDS):
    """
    Build the shared cache tier.

    Falls back to NullSharedCache when no URL is configured or the server
    cannot be reached; this never raises.
    """
    if not redis_url:
        logger.info("No redis_url configured, embedding cache is local-only")
        return NullSharedCache()
    try:
        cache = RedisSharedCache.from_url(redis_url, default_ttl=default_ttl)
        cache.ping()
    except (CacheBackendError, RedisError, ValueError) as exc:
        logger.warning(
            "Shared cache unavailable, using local-only embedding cache",
            extra={"error": str(exc)},
        )
        return NullSharedCache()
    logger.info("Shared embedding cache connected")
    return cache
