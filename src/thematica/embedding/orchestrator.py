"""Embedding orchestrator: cache-first, batched, concurrent embedding generation."""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import numpy as np

from thematica import config
from thematica.embedding.cache import EmbeddingCache
from thematica.errors import InputError, InvalidEmbeddingError, ProviderError
from thematica.models import Embedding
from thematica.providers.provider import EmbeddingProvider
from thematica.run import RunContext

logger = logging.getLogger(__name__)


def create_embedding_with_norm(
    values: Sequence[float] | np.ndarray,
    model: str,
    expected_dims: int | None = None,
) -> Embedding:
    """Validate a raw vector and freeze it into an Embedding.

    This is the only construction path for Embedding. The array is marked
    read-only in place rather than copied, so callers share one instance.

    Raises:
        InvalidEmbeddingError: Empty vector, wrong dimensionality, or a norm
            that is non-finite or not strictly positive.
    """
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        raise InvalidEmbeddingError(f"expected a non-empty 1-D vector, got shape {vector.shape}", provider=model)
    if expected_dims is not None and vector.size != expected_dims:
        raise InvalidEmbeddingError(
            f"dimension mismatch: expected {expected_dims}, got {vector.size}", provider=model
        )
    norm = float(np.linalg.norm(vector))
    if not math.isfinite(norm) or norm <= 0.0:
        raise InvalidEmbeddingError(f"invalid embedding norm {norm}", provider=model)
    vector.setflags(write=False)
    return Embedding(vector=vector, norm=norm, model=model, dimensions=int(vector.size))


def magnitude(vector: Sequence[float] | np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))


def cosine_similarity(a: Embedding | np.ndarray, b: Embedding | np.ndarray) -> float:
    va = a.vector if isinstance(a, Embedding) else np.asarray(a, dtype=np.float64)
    vb = b.vector if isinstance(b, Embedding) else np.asarray(b, dtype=np.float64)
    na = a.norm if isinstance(a, Embedding) else float(np.linalg.norm(va))
    nb = b.norm if isinstance(b, Embedding) else float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def centroid(embeddings: Sequence[Embedding]) -> np.ndarray:
    if not embeddings:
        raise InputError("cannot compute the centroid of zero embeddings")
    return np.mean(np.stack([e.vector for e in embeddings]), axis=0)


class EmbeddingOrchestrator:
    """Uniform generate / batch API over an embedding provider and the embedding cache.

    Fan-out is adaptive: providers without an external rate limit get a wide
    worker pool, rate-limited remote providers a narrow one. Provider
    exceptions propagate; the caller decides whether to retry.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        batch_size: int | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache if cache is not None else EmbeddingCache()
        self._batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        if max_workers is None:
            rate_limited = getattr(provider, "rate_limited", True)
            max_workers = (
                config.REMOTE_EMBEDDING_CONCURRENCY if rate_limited else config.LOCAL_EMBEDDING_CONCURRENCY
            )
        self._max_workers = max_workers
        self._provider_info: dict | None = None
        self.invalid_count = 0

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    def get_provider_info(self) -> dict:
        """Provider metadata, computed once and reused."""
        if self._provider_info is None:
            rate_limited = getattr(self._provider, "rate_limited", True)
            self._provider_info = {
                "provider": getattr(self._provider, "name", type(self._provider).__name__),
                "model": self._provider.model,
                "dimensions": self._provider.dimensions,
                "rate_limited": rate_limited,
                "max_concurrency": self._max_workers,
                "cost": "metered per token" if rate_limited else "self-hosted, no per-call cost",
            }
        return self._provider_info

    def create_embedding_with_norm(self, values: Sequence[float] | np.ndarray) -> Embedding:
        info = self.get_provider_info()
        return create_embedding_with_norm(values, info["model"], expected_dims=info["dimensions"])

    magnitude = staticmethod(magnitude)
    cosine_similarity = staticmethod(cosine_similarity)
    centroid = staticmethod(centroid)

    def generate(self, text: str) -> Embedding:
        """Embed one text, consulting the cache first.

        Raises:
            InputError: ``text`` is empty.
            InvalidEmbeddingError: The provider returned an unusable vector.
        """
        if not text or not text.strip():
            raise InputError("cannot embed empty text")
        model = self.get_provider_info()["model"]
        cached = self._cache.get(text, model)
        if cached is not None:
            return cached
        vectors = self._provider.embed([text])
        if len(vectors) != 1:
            raise ProviderError(f"provider returned {len(vectors)} vectors for 1 text", retryable=False)
        embedding = self.create_embedding_with_norm(vectors[0])
        self._cache.put(text, embedding)
        return embedding

    def generate_batch(self, texts: Sequence[str], run: RunContext | None = None) -> list[Embedding | None]:
        """Embed many texts concurrently.

        Returns one slot per input text. Slots whose vector failed validation
        are None: the invalid vector is logged and dropped, never zero-filled.
        Completed batches are cached as they finish, so a retry after a
        partial failure only re-embeds the texts that are still missing.
        """
        for i, t in enumerate(texts):
            if not t or not t.strip():
                raise InputError(f"text at position {i} is empty")
        model = self.get_provider_info()["model"]

        resolved: dict[str, Embedding | None] = {}
        missing: list[str] = []
        for t in dict.fromkeys(texts):
            cached = self._cache.get(t, model)
            if cached is not None:
                resolved[t] = cached
            else:
                missing.append(t)

        batches = [missing[i : i + self._batch_size] for i in range(0, len(missing), self._batch_size)]
        logger.info(
            "Embedding %d text(s): %d cached, %d to embed in %d batch(es), %d worker(s)",
            len(texts), len(resolved), len(missing), len(batches), min(self._max_workers, len(batches) or 1),
        )
        t0 = time.perf_counter()

        def _embed_batch(batch: list[str]) -> list[Embedding | None]:
            if run is not None:
                run.checkpoint("embedding")
            vectors = self._provider.embed(batch)
            if len(vectors) != len(batch):
                raise ProviderError(
                    f"provider returned {len(vectors)} vectors for {len(batch)} texts", retryable=False
                )
            out: list[Embedding | None] = []
            for text, vec in zip(batch, vectors):
                try:
                    emb = self.create_embedding_with_norm(vec)
                except InvalidEmbeddingError as e:
                    logger.warning("Dropping invalid embedding for text %r: %s", text[:60], e)
                    self.invalid_count += 1
                    out.append(None)
                    continue
                self._cache.put(text, emb)
                out.append(emb)
            return out

        if batches:
            done = 0
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(batches))) as pool:
                futures = [(batch, pool.submit(_embed_batch, batch)) for batch in batches]
                for batch, future in futures:
                    # A failed batch re-raises here; the pool still drains on exit
                    for text, emb in zip(batch, future.result()):
                        resolved[text] = emb
                    done += 1
                    if run is not None:
                        run.progress(
                            "embedding", 100.0 * done / len(batches),
                            f"Embedded batch {done}/{len(batches)}",
                            embedded=done * self._batch_size, total=len(missing),
                        )

        logger.info("Embedding complete: %.2fs", time.perf_counter() - t0)
        return [resolved[t] for t in texts]

    def cache_stats(self) -> dict:
        return {**self._cache.stats(), "invalid_dropped": self.invalid_count}

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Embedding cache cleared")
