"""
Two-tier embedding cache.

Vectors are content-addressed by sha256(model + ":" + normalized text):
- local tier: bounded in-process LRU (OrderedDict + lock)
- shared tier: optional SharedCache (Redis) with a TTL, best-effort only

Shared-tier writes run on a background executor and are never awaited by
the caller; shared-tier failures are logged and treated as misses.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..retrieval.protocols import SharedCache
from .cache_service import DEFAULT_TTL_SECONDS, NullSharedCache


logger = logging.getLogger("knowledge_engine.services.embedding_cache")

DEFAULT_CAPACITY = 10_000
SHARED_KEY_PREFIX = "embedding:"

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_cache_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.strip().lower())


def get_cache_key(text: str, model: str) -> str:
    """
    Content address of an embedding.

    Casing and surrounding/repeated whitespace do not change the key; the
    model does.

        >>> get_cache_key("Hola  Mundo ", "m1") == get_cache_key("hola mundo", "m1")
        True
    """
    payload = f"{model}:{normalize_cache_text(text)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    vector: List[float]
    model: str
    created_at: float
    hit_count: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {"vector": self.vector, "model": self.model, "created_at": self.created_at}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CacheEntry":
        return cls(
            vector=[float(v) for v in payload["vector"]],
            model=str(payload["model"]),
            created_at=float(payload.get("created_at", time.time())),
        )


class EmbeddingCache:
    """Local LRU in front of an optional shared TTL cache."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        shared_cache: Optional[SharedCache] = None,
        shared_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.shared_ttl_seconds = shared_ttl_seconds
        self._shared: SharedCache = shared_cache if shared_cache is not None else NullSharedCache()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: Dict[str, threading.Lock] = {}
        self._inflight_guard = threading.Lock()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="embedding-cache")
        self._stats = {"hits": 0, "misses": 0, "shared_hits": 0, "evictions": 0, "shared_errors": 0}

    @property
    def shared_enabled(self) -> bool:
        return not isinstance(self._shared, NullSharedCache)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, text: str, model: str) -> Optional[List[float]]:
        """Local LRU first, then the shared tier (backfilling the LRU on a hit)."""
        key = get_cache_key(text, model)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                entry.hit_count += 1
                self._stats["hits"] += 1
                return entry.vector

        entry = self._read_shared(key)
        if entry is not None and entry.model == model:
            entry.hit_count = 1
            with self._lock:
                self._stats["hits"] += 1
                self._stats["shared_hits"] += 1
            self._store_local(key, entry)
            return entry.vector

        with self._lock:
            self._stats["misses"] += 1
        return None

    def set(self, text: str, model: str, vector: List[float]) -> None:
        key = get_cache_key(text, model)
        entry = CacheEntry(vector=list(vector), model=model, created_at=time.time())
        self._store_local(key, entry)
        if self.shared_enabled:
            try:
                self._executor.submit(self._write_shared, key, entry)
            except RuntimeError as exc:
                # executor already shut down
                self._record_shared_error("write", key, exc)

    def get_or_generate(
        self,
        text: str,
        model: str,
        generate_fn: Callable[[str], List[float]],
    ) -> Tuple[List[float], bool]:
        """
        Return (vector, from_cache).

        Concurrent callers asking for the same key wait for a single
        generate_fn call instead of each generating their own vector.
        Exceptions from generate_fn propagate and nothing is cached.
        """
        vector = self.get(text, model)
        if vector is not None:
            return vector, True

        key = get_cache_key(text, model)
        with self._inflight_guard:
            key_lock = self._inflight.setdefault(key, threading.Lock())
        try:
            with key_lock:
                with self._lock:
                    entry = self._entries.get(key)
                    if entry is not None:
                        self._entries.move_to_end(key)
                        entry.hit_count += 1
                        return entry.vector, True
                vector = list(generate_fn(text))
                self.set(text, model, vector)
                return vector, False
        finally:
            with self._inflight_guard:
                if self._inflight.get(key) is key_lock:
                    del self._inflight[key]

    def clear(self) -> None:
        """Empty the local tier; shared entries expire by TTL."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._entries),
                "capacity": self.capacity,
                "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
                "shared_enabled": self.shared_enabled,
            }

    def shutdown(self, wait: bool = True) -> None:
        """Drain pending shared-tier writes."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def _store_local(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug("Evicted embedding cache entry", extra={"cache_key": evicted_key})

    def _read_shared(self, key: str) -> Optional[CacheEntry]:
        if not self.shared_enabled:
            return None
        try:
            payload = self._shared.get(SHARED_KEY_PREFIX + key)
            if payload is None:
                return None
            return CacheEntry.from_payload(payload)
        except Exception as exc:
            self._record_shared_error("read", key, exc)
            return None

    def _write_shared(self, key: str, entry: CacheEntry) -> None:
        try:
            self._shared.set(SHARED_KEY_PREFIX + key, entry.to_payload(), ttl=self.shared_ttl_seconds)
        except Exception as exc:
            self._record_shared_error("write", key, exc)

    def _record_shared_error(self, operation: str, key: str, exc: Exception) -> None:
        with self._lock:
            self._stats["shared_errors"] += 1
        logger.warning(
            "Shared embedding cache %s failed, continuing local-only",
            operation,
            extra={"cache_key": key, "error": str(exc)},
        )
