"""Bounded LRU cache of embeddings keyed by hash(model, text), with expiry."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from thematica import config
from thematica.models import Embedding

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    embedding: Embedding
    expires_at: float


def cache_key(text: str, model: str) -> str:
    return hashlib.md5(f"{model}|{text}".encode()).hexdigest()


class EmbeddingCache:
    """LRU-evicted embedding cache. Entries are never served past expiry."""

    def __init__(
        self,
        max_size: int | None = None,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = config.EMBEDDING_CACHE_SIZE if max_size is None else max_size
        self.ttl = config.EMBEDDING_CACHE_TTL if ttl is None else ttl
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, text: str, model: str) -> Embedding | None:
        key = cache_key(text, model)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            # Model id is part of the key; this guards against hash reuse across models
            if entry.embedding.model != model:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.embedding

    def put(self, text: str, embedding: Embedding) -> None:
        key = cache_key(text, embedding.model)
        with self._lock:
            self._entries[key] = _Entry(embedding, self._clock() + self.ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / total, 4) if total else 0.0,
                "evictions": self.evictions,
            }
