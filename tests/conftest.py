"""Shared fixtures: fake providers, orchestrators, run contexts, caches and an engine."""

import pytest

from thematica.embedding.cache import EmbeddingCache
from thematica.embedding.orchestrator import EmbeddingOrchestrator
from thematica.engine import ThematicEngine
from thematica.models import Purpose
from thematica.pipelines.router import PurposeRouter
from thematica.resilience.bulkhead import Bulkhead
from thematica.resilience.retry import RetryPolicy
from thematica.run import RunContext
from thematica.storage.semantic_cache import SemanticCache
from thematica.storage.vector_store import CacheVectorStore
from tests.helpers import DIMS, FakeClock, FakeEmbeddingProvider, TopicEmbeddingProvider


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def topic_provider():
    return TopicEmbeddingProvider()


@pytest.fixture
def orchestrator(fake_provider):
    return EmbeddingOrchestrator(fake_provider, cache=EmbeddingCache(max_size=100, ttl=3600), batch_size=4)


@pytest.fixture
def topic_orchestrator(topic_provider):
    return EmbeddingOrchestrator(topic_provider, cache=EmbeddingCache(max_size=1000, ttl=3600), batch_size=8)


@pytest.fixture
def make_run():
    """Factory for RunContexts with a generous default budget."""
    def _make(purpose=Purpose.CONCOURSE, **kwargs):
        kwargs.setdefault("ai_call_budget", 50)
        kwargs.setdefault("deadline_seconds", 600)
        return RunContext(purpose, **kwargs)
    return _make


@pytest.fixture
def cache_store(tmp_path):
    store = CacheVectorStore(tmp_path / "lancedb", dims=DIMS)
    store.init_table()
    return store


@pytest.fixture
def semantic_cache(cache_store):
    return SemanticCache(cache_store, threshold=0.98, ttl=3600, max_entries=100)


@pytest.fixture
def engine(topic_orchestrator, semantic_cache):
    """Engine over topic embeddings with a real LanceDB semantic cache and no assistant."""
    return ThematicEngine(
        topic_orchestrator,
        PurposeRouter(),
        bulkhead=Bulkhead(),
        semantic_cache=semantic_cache,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
    )
