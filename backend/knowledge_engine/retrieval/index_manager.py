"""
Index Cache Manager: owns the lifetime of per-tenant BM25 indices.

Indices are built lazily on the first query for a tenant, evicted after an
idle TTL by a background sweep, and can be rebuilt on demand. A rebuild
always fills a brand-new TenantIndex and then swaps the map entry by
reference, so concurrent searches see either the old snapshot or the new
one, never a partially populated index.

Locking:
- ``_map_lock`` guards the tenant -> index map, the build locks and the
  generation counters. It is only held for dict operations, never during a
  build.
- one build lock per tenant serialises builds for that tenant without
  blocking reads or other tenants' builds. Build locks are reference counted
  and dropped once no build holds them and the tenant has no cached index.

A build records the tenant's generation before loading the corpus and only
publishes if it is unchanged afterwards. ``clear``, ``clear_all`` and
``shutdown`` bump generations, so a build that was in flight when state was
dropped cannot bring that state back.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .bm25_service import DEFAULT_B, DEFAULT_K1, TenantIndex
from .errors import CorpusLoadError, InvalidConfigurationError
from .protocols import DocumentCorpusProvider
from .types import IndexStats


DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass
class _CachedIndex:
    index: TenantIndex
    created_at: float
    last_used_at: float
    build_duration_ms: float


@dataclass
class _BuildLock:
    lock: threading.Lock
    holders: int = 0


class IndexCacheManager:
    """
    Per-tenant TenantIndex cache with TTL eviction and forced reloads.

    Example:
        >>> manager = IndexCacheManager(corpus_provider)
        >>> manager.start()
        >>> index = manager.get_or_create("tenant-1")
        >>> manager.shutdown()
    """

    def __init__(
        self,
        corpus_provider: DocumentCorpusProvider,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise InvalidConfigurationError(f"ttl_seconds must be positive, got {ttl_seconds}")
        if sweep_interval_seconds <= 0:
            raise InvalidConfigurationError(
                f"sweep_interval_seconds must be positive, got {sweep_interval_seconds}"
            )
        # Fail fast on bad BM25 parameters instead of on the first query.
        TenantIndex("__validation__", k1=k1, b=b)

        self._corpus_provider = corpus_provider
        self._ttl = ttl_seconds
        self._sweep_interval = sweep_interval_seconds
        self._k1 = k1
        self._b = b
        self._clock = clock
        self._logger = logger or logging.getLogger("knowledge_engine.retrieval.index_manager")

        self._indices: Dict[str, _CachedIndex] = {}
        self._build_locks: Dict[str, _BuildLock] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._map_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def is_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def tenants(self) -> List[str]:
        with self._map_lock:
            return list(self._indices.keys())

    def get_or_create(self, tenant_id: str) -> Optional[TenantIndex]:
        """
        Return the tenant's index, building it from the corpus on a miss.

        Returns:
            The cached or freshly built index, or None when the corpus could
            not be loaded and nothing was cached for this tenant
        """
        cached = self._touch(tenant_id)
        if cached is not None:
            return cached

        with self._building(tenant_id):
            # Another thread may have finished the build while we waited.
            cached = self._touch(tenant_id)
            if cached is not None:
                return cached
            return self._rebuild(tenant_id)

    def force_reload(self, tenant_id: str) -> Optional[TenantIndex]:
        """
        Rebuild the tenant's index regardless of cache state.

        On corpus failure the previously cached index (if any) stays in place
        and is returned.
        """
        with self._building(tenant_id):
            return self._rebuild(tenant_id)

    def clear(self, tenant_id: str) -> bool:
        with self._map_lock:
            removed = self._indices.pop(tenant_id, None)
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            self._prune_build_lock(tenant_id)
        if removed is not None:
            self._logger.info("Cleared tenant index", extra={"tenant_id": tenant_id})
        return removed is not None

    def clear_all(self) -> int:
        with self._map_lock:
            count = len(self._indices)
            self._indices.clear()
            self._epoch += 1
            for tenant_id in list(self._build_locks):
                self._prune_build_lock(tenant_id)
        return count

    def evict_expired(self) -> List[str]:
        """Drop indices idle for longer than the TTL; returns evicted tenant ids."""
        now = self._clock()
        with self._map_lock:
            expired = [
                tenant_id
                for tenant_id, cached in self._indices.items()
                if now - cached.last_used_at > self._ttl
            ]
            for tenant_id in expired:
                del self._indices[tenant_id]
                self._prune_build_lock(tenant_id)
        if expired:
            self._logger.info(
                "Evicted idle tenant indices",
                extra={"evicted": len(expired), "tenants": expired},
            )
        return expired

    def get_stats(self, tenant_id: str) -> Optional[IndexStats]:
        """Statistics for a cached index; does not count as a use."""
        with self._map_lock:
            cached = self._indices.get(tenant_id)
        if cached is None:
            return None
        index = cached.index
        return IndexStats(
            tenant_id=tenant_id,
            document_count=index.document_count,
            term_count=index.term_count,
            avg_doc_length=index.avg_doc_length,
            created_at=cached.created_at,
            last_used_at=cached.last_used_at,
            build_duration_ms=cached.build_duration_ms,
        )

    def start(self) -> None:
        """Start the background TTL sweep (idempotent)."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="index-cache-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        self._logger.info(
            "Index cache sweep started",
            extra={"ttl_seconds": self._ttl, "sweep_interval_seconds": self._sweep_interval},
        )

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the sweep and drop every cached index; safe without start()."""
        self._stop_event.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout)
        dropped = self.clear_all()
        self._logger.info("Index cache manager shut down", extra={"dropped": dropped})

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.evict_expired()
            except Exception:
                self._logger.exception("Index cache sweep failed")

    def _touch(self, tenant_id: str) -> Optional[TenantIndex]:
        with self._map_lock:
            cached = self._indices.get(tenant_id)
            if cached is None:
                return None
            cached.last_used_at = self._clock()
            return cached.index

    @contextmanager
    def _building(self, tenant_id: str) -> Iterator[None]:
        with self._map_lock:
            entry = self._build_locks.get(tenant_id)
            if entry is None:
                entry = self._build_locks[tenant_id] = _BuildLock(threading.Lock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._map_lock:
                entry.holders -= 1
                self._prune_build_lock(tenant_id)

    def _prune_build_lock(self, tenant_id: str) -> None:
        # caller holds _map_lock
        entry = self._build_locks.get(tenant_id)
        if entry is not None and entry.holders == 0 and tenant_id not in self._indices:
            del self._build_locks[tenant_id]
            self._generations.pop(tenant_id, None)

    def _generation(self, tenant_id: str) -> Tuple[int, int]:
        # caller holds _map_lock
        return self._epoch, self._generations.get(tenant_id, 0)

    def _rebuild(self, tenant_id: str) -> Optional[TenantIndex]:
        """
        Build a fresh index and publish it; caller holds the tenant's build lock.

        The index is returned to the caller but not published when the tenant
        was cleared (or the manager shut down) while the corpus was loading.
        """
        with self._map_lock:
            generation = self._generation(tenant_id)
        started = time.perf_counter()
        try:
            documents = self._corpus_provider.load_documents(tenant_id)
        except Exception as exc:
            error = exc if isinstance(exc, CorpusLoadError) else CorpusLoadError(tenant_id, str(exc))
            with self._map_lock:
                previous = self._indices.get(tenant_id)
            self._logger.error(
                "Corpus load failed, keeping previous index" if previous else "Corpus load failed, no index available",
                extra={"tenant_id": tenant_id, "error": str(error)},
            )
            return previous.index if previous is not None else None

        index = TenantIndex(tenant_id, k1=self._k1, b=self._b)
        index.add_documents(documents)
        index.build_index()
        build_ms = (time.perf_counter() - started) * 1000

        now = self._clock()
        with self._map_lock:
            published = self._generation(tenant_id) == generation
            if published:
                self._indices[tenant_id] = _CachedIndex(
                    index=index,
                    created_at=now,
                    last_used_at=now,
                    build_duration_ms=build_ms,
                )

        if not published:
            self._logger.info(
                "Discarded tenant index cleared during build",
                extra={"tenant_id": tenant_id, "document_count": index.document_count},
            )
            return index

        self._logger.info(
            "Built tenant index",
            extra={
                "tenant_id": tenant_id,
                "document_count": index.document_count,
                "term_count": index.term_count,
                "build_ms": round(build_ms, 2),
            },
        )
        return index
