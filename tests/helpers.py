"""Shared test helpers: fake providers, synthetic embeddings and a controllable clock."""

from __future__ import annotations

import hashlib
import re

import numpy as np

from thematica.config import PurposeBounds, purpose_bounds
from thematica.embedding.orchestrator import create_embedding_with_norm
from thematica.models import Excerpt, SourceText
from thematica.pipelines.base import PipelineInput

FAKE_MODEL = "fake-embed"
DIMS = 64
NOISE = 0.15

_TOPIC_RE = re.compile(r"topic-(\d+)")


def grouped_vectors(
    n_groups: int, per_group: int, dims: int = DIMS, noise: float = NOISE, seed: int = 0,
) -> tuple[np.ndarray, np.ndarray]:
    """Unit basis vector per group plus small Gaussian noise (total norm ~``noise``).

    Returns (X, groups) with rows ordered group by group.
    """
    rng = np.random.default_rng(seed)
    X, groups = [], []
    for g in range(n_groups):
        for _ in range(per_group):
            v = np.zeros(dims)
            v[g % dims] = 1.0
            v += rng.normal(0.0, noise / np.sqrt(dims), dims)
            X.append(v)
            groups.append(g)
    return np.asarray(X), np.asarray(groups)


def topic_vector(topic: int, salt: str = "", dims: int = DIMS, noise: float = NOISE) -> np.ndarray:
    seed = int(hashlib.md5(f"{topic}|{salt}".encode()).hexdigest()[:8], 16)
    rng = np.random.default_rng(seed)
    v = np.zeros(dims)
    v[topic % dims] = 1.0
    return v + rng.normal(0.0, noise / np.sqrt(dims), dims)


def make_excerpt(excerpt_id: str, text: str, source_id: str, vector: np.ndarray) -> Excerpt:
    return Excerpt(
        id=excerpt_id,
        text=text,
        source_id=source_id,
        embedding=create_embedding_with_norm(vector, FAKE_MODEL),
    )


def make_input(
    excerpts: list[Excerpt], purpose: str, bounds: PurposeBounds | None = None,
    sources: list[SourceText] | None = None,
) -> PipelineInput:
    if sources is None:
        ids = list(dict.fromkeys(e.source_id for e in excerpts))
        sources = [SourceText(id=sid, title=f"Source {sid}") for sid in ids]
    return PipelineInput(excerpts=excerpts, sources=sources, bounds=bounds or purpose_bounds(purpose))


class FakeEmbeddingProvider:
    """Deterministic md5-based vectors. Texts in ``invalid`` come back as NaN."""

    name = "fake"
    model = FAKE_MODEL

    def __init__(self, dimensions: int = 16, rate_limited: bool = False, invalid: set[str] | None = None) -> None:
        self.dimensions = dimensions
        self.rate_limited = rate_limited
        self.invalid = invalid or set()
        self.calls: list[list[str]] = []
        self.failures: list[Exception] = []

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        out = []
        for t in texts:
            if t in self.invalid:
                out.append([float("nan")] * self.dimensions)
                continue
            h = hashlib.md5(t.encode()).digest()
            out.append([float(h[i % len(h)]) / 255.0 + 0.01 for i in range(self.dimensions)])
        return out

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


class TopicEmbeddingProvider(FakeEmbeddingProvider):
    """Texts mentioning ``topic-N`` embed near basis vector N, so topics cluster."""

    def __init__(self, dimensions: int = DIMS, **kwargs) -> None:
        super().__init__(dimensions=dimensions, **kwargs)

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        out = []
        for t in texts:
            if t in self.invalid:
                out.append([float("nan")] * self.dimensions)
                continue
            m = _TOPIC_RE.search(t)
            topic = int(m.group(1)) if m else int(hashlib.md5(t.encode()).hexdigest()[:4], 16)
            out.append(topic_vector(topic, salt=t, dims=self.dimensions).tolist())
        return out


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def request_dict(purpose: str = "survey", n_topics: int = 10, per_topic: int = 5, n_sources: int = 4) -> dict:
    """Plain-JSON extraction request whose texts embed by topic under TopicEmbeddingProvider."""
    excerpts = [
        {
            "id": f"e{t}-{j}",
            "text": f"topic-{t} remark {j} about aspect {t}",
            "source_id": f"s{(t + j) % n_sources + 1}",
        }
        for t in range(n_topics)
        for j in range(per_topic)
    ]
    sources = [{"id": f"s{i + 1}", "title": f"Source {i + 1}"} for i in range(n_sources)]
    return {"purpose": purpose, "sources": sources, "excerpts": excerpts}
