"""Vector-similarity cache of whole pipeline results.

A lookup matches the nearest stored query embedding under the same key; the
payload is served only when cosine similarity clears the threshold and the
entry has not expired. Storage problems never fail a run: they are logged and
reported as a miss.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import numpy as np

from thematica import config
from thematica.models import Embedding
from thematica.storage.vector_store import CacheVectorStore

logger = logging.getLogger(__name__)


def _as_list(embedding: Embedding | np.ndarray | list[float]) -> list[float]:
    if isinstance(embedding, Embedding):
        return [float(v) for v in embedding.vector]
    return [float(v) for v in np.asarray(embedding, dtype=float)]


class SemanticCache:
    def __init__(
        self,
        store: CacheVectorStore,
        threshold: float | None = None,
        ttl: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.threshold = config.SEMANTIC_CACHE_THRESHOLD if threshold is None else threshold
        self.ttl = config.SEMANTIC_CACHE_TTL if ttl is None else ttl
        self.max_entries = config.SEMANTIC_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._clock = clock
        self._write_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.writes = 0

    def get(self, key: str, embedding: Embedding | np.ndarray | list[float]) -> dict | None:
        """Return the cached payload for the closest unexpired match, or None."""
        now = self._clock()
        try:
            candidates = self._store.search(key, _as_list(embedding), limit=5, now=now)
        except Exception:
            self.errors += 1
            self.misses += 1
            logger.warning("Semantic cache lookup failed for key %s; treating as miss", key, exc_info=True)
            return None

        for hit in candidates:
            if hit.expires_at <= now:
                continue
            if hit.similarity >= self.threshold:
                self.hits += 1
                logger.info("Semantic cache hit for %s (similarity %.4f)", key, hit.similarity)
                return hit.payload
            # Candidates arrive most-similar first
            break
        self.misses += 1
        return None

    def set(self, key: str, embedding: Embedding | np.ndarray | list[float], payload: dict) -> bool:
        """Store ``payload`` with the configured TTL. Returns False if the write failed."""
        now = self._clock()
        try:
            with self._write_lock:
                self._store.add(key, _as_list(embedding), payload, created_at=now, expires_at=now + self.ttl)
                self.writes += 1
                self._evict(now)
        except Exception:
            self.errors += 1
            logger.warning("Semantic cache write failed for key %s", key, exc_info=True)
            return False
        return True

    def _evict(self, now: float) -> None:
        overflow = self._store.count() - self.max_entries
        if overflow <= 0:
            return
        overflow -= self._store.delete_expired(now)
        if overflow > 0:
            self._store.delete_ids(self._store.oldest_ids(overflow))
            logger.debug("Semantic cache evicted %d oldest entries", overflow)

    def purge_expired(self) -> int:
        try:
            with self._write_lock:
                removed = self._store.delete_expired(self._clock())
        except Exception:
            self.errors += 1
            logger.warning("Semantic cache purge failed", exc_info=True)
            return 0
        if removed:
            logger.info("Purged %d expired semantic cache entries", removed)
        return removed

    def clear(self) -> None:
        with self._write_lock:
            self._store.clear()

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        try:
            size = self._store.count()
        except Exception:
            logger.warning("Semantic cache size unavailable", exc_info=True)
            size = None
        return {
            "size": size,
            "max_entries": self.max_entries,
            "threshold": self.threshold,
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "writes": self.writes,
            "errors": self.errors,
        }
