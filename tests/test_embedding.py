"""Tests for the embedding cache, orchestrator and providers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from thematica.embedding.cache import EmbeddingCache, cache_key
from thematica.embedding.orchestrator import (
    EmbeddingOrchestrator,
    centroid,
    cosine_similarity,
    create_embedding_with_norm,
    magnitude,
)
from thematica.errors import InputError, InvalidEmbeddingError, ProviderError, RunCancelled
from thematica.models import Purpose
from thematica.providers.provider import GeminiProvider, _wrap_api_error, create_embedding_provider
from tests.helpers import FAKE_MODEL, FakeClock, FakeEmbeddingProvider


def _emb(values, model=FAKE_MODEL):
    return create_embedding_with_norm(values, model)


# ── create_embedding_with_norm ──


class TestCreateEmbedding:
    def test_norm_and_dimensions(self) -> None:
        e = _emb([3.0, 4.0])
        assert e.norm == pytest.approx(5.0)
        assert e.dimensions == 2
        assert e.model == FAKE_MODEL

    def test_vector_is_read_only(self) -> None:
        e = _emb([1.0, 2.0, 3.0])
        with pytest.raises(ValueError):
            e.vector[0] = 9.0

    @pytest.mark.parametrize("values", [
        [0.0, 0.0, 0.0],
        [float("nan"), 1.0, 1.0],
        [float("inf"), 1.0, 1.0],
        [],
    ])
    def test_rejects_invalid_vectors(self, values) -> None:
        with pytest.raises(InvalidEmbeddingError):
            _emb(values)

    def test_rejects_wrong_dimensions(self) -> None:
        with pytest.raises(InvalidEmbeddingError, match="dimension mismatch"):
            create_embedding_with_norm([1.0, 2.0], FAKE_MODEL, expected_dims=3)

    def test_invalid_embedding_is_terminal_provider_error(self) -> None:
        with pytest.raises(ProviderError) as exc:
            _emb([0.0, 0.0])
        assert exc.value.retryable is False

    def test_unit(self) -> None:
        e = _emb([0.0, 2.0])
        np.testing.assert_allclose(e.unit(), [0.0, 1.0])


class TestVectorMath:
    def test_magnitude(self) -> None:
        assert magnitude([3.0, 4.0]) == pytest.approx(5.0)

    def test_cosine_similarity_embeddings_and_arrays(self) -> None:
        a, b = _emb([1.0, 0.0]), _emb([1.0, 1.0])
        assert cosine_similarity(a, b) == pytest.approx(1 / np.sqrt(2))
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 5.0])) == pytest.approx(0.0)

    def test_cosine_similarity_zero_vector(self) -> None:
        assert cosine_similarity(np.zeros(3), np.ones(3)) == 0.0

    def test_centroid(self) -> None:
        c = centroid([_emb([1.0, 0.0]), _emb([0.0, 1.0])])
        np.testing.assert_allclose(c, [0.5, 0.5])

    def test_centroid_of_nothing(self) -> None:
        with pytest.raises(InputError):
            centroid([])


# ── EmbeddingCache ──


class TestEmbeddingCache:
    def test_put_and_get(self) -> None:
        cache = EmbeddingCache(max_size=10, ttl=60)
        e = _emb([1.0, 2.0])
        cache.put("hello", e)
        assert cache.get("hello", FAKE_MODEL) is e
        assert cache.stats()["hits"] == 1

    def test_key_includes_model(self) -> None:
        assert cache_key("hello", "a") != cache_key("hello", "b")
        cache = EmbeddingCache(max_size=10, ttl=60)
        cache.put("hello", _emb([1.0, 2.0], model="model-a"))
        assert cache.get("hello", "model-b") is None

    def test_expired_entries_are_never_served(self) -> None:
        clock = FakeClock()
        cache = EmbeddingCache(max_size=10, ttl=60, clock=clock)
        cache.put("hello", _emb([1.0, 2.0]))
        clock.advance(59)
        assert cache.get("hello", FAKE_MODEL) is not None
        clock.advance(2)
        assert cache.get("hello", FAKE_MODEL) is None
        assert len(cache) == 0

    def test_lru_eviction(self) -> None:
        cache = EmbeddingCache(max_size=2, ttl=60)
        cache.put("a", _emb([1.0, 0.0]))
        cache.put("b", _emb([0.0, 1.0]))
        cache.get("a", FAKE_MODEL)  # a is now most recent
        cache.put("c", _emb([1.0, 1.0]))
        assert cache.get("b", FAKE_MODEL) is None
        assert cache.get("a", FAKE_MODEL) is not None
        assert cache.stats()["evictions"] == 1

    def test_stats_hit_rate(self) -> None:
        cache = EmbeddingCache(max_size=10, ttl=60)
        cache.put("a", _emb([1.0, 0.0]))
        cache.get("a", FAKE_MODEL)
        cache.get("missing", FAKE_MODEL)
        stats = cache.stats()
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1

    def test_clear(self) -> None:
        cache = EmbeddingCache(max_size=10, ttl=60)
        cache.put("a", _emb([1.0, 0.0]))
        cache.clear()
        assert len(cache) == 0


# ── EmbeddingOrchestrator ──


class TestOrchestrator:
    def test_provider_info_is_cached(self, orchestrator, fake_provider) -> None:
        info = orchestrator.get_provider_info()
        assert info["provider"] == "fake"
        assert info["model"] == FAKE_MODEL
        assert info["dimensions"] == 16
        assert orchestrator.get_provider_info() is info

    def test_adaptive_concurrency(self) -> None:
        local = EmbeddingOrchestrator(FakeEmbeddingProvider(rate_limited=False))
        remote = EmbeddingOrchestrator(FakeEmbeddingProvider(rate_limited=True))
        assert local.get_provider_info()["max_concurrency"] == 50
        assert remote.get_provider_info()["max_concurrency"] == 10

    def test_generate_uses_cache(self, orchestrator, fake_provider) -> None:
        first = orchestrator.generate("some text")
        second = orchestrator.generate("some text")
        assert first is second
        assert len(fake_provider.calls) == 1
        assert first.norm > 0

    def test_generate_rejects_empty_text(self, orchestrator) -> None:
        with pytest.raises(InputError):
            orchestrator.generate("   ")

    def test_generate_invalid_vector_raises(self) -> None:
        orch = EmbeddingOrchestrator(FakeEmbeddingProvider(invalid={"bad"}))
        with pytest.raises(InvalidEmbeddingError):
            orch.generate("bad")

    def test_generate_batch_preserves_order(self, orchestrator) -> None:
        texts = [f"text {i}" for i in range(10)]
        out = orchestrator.generate_batch(texts)
        assert len(out) == 10
        for text, emb in zip(texts, out):
            assert emb is orchestrator.generate(text)

    def test_generate_batch_dedups_and_batches(self, orchestrator, fake_provider) -> None:
        texts = ["a", "b", "a", "c", "d", "e", "b"]
        out = orchestrator.generate_batch(texts)
        assert out[0] is out[2]
        assert sorted(fake_provider.embedded_texts) == ["a", "b", "c", "d", "e"]
        # batch_size=4 -> two provider calls for five unique texts
        assert len(fake_provider.calls) == 2

    def test_generate_batch_skips_cached(self, orchestrator, fake_provider) -> None:
        orchestrator.generate_batch(["a", "b"])
        fake_provider.calls.clear()
        orchestrator.generate_batch(["a", "b", "c"])
        assert fake_provider.embedded_texts == ["c"]

    def test_clear_cache(self, orchestrator, fake_provider) -> None:
        orchestrator.generate("a")
        orchestrator.clear_cache()
        orchestrator.generate("a")
        assert len(fake_provider.calls) == 2
        assert orchestrator.cache_stats()["size"] == 1

    def test_invalid_vectors_become_none(self) -> None:
        provider = FakeEmbeddingProvider(invalid={"bad"})
        orch = EmbeddingOrchestrator(provider)
        out = orch.generate_batch(["good", "bad", "also good"])
        assert out[0] is not None and out[2] is not None
        assert out[1] is None
        assert orch.cache_stats()["invalid_dropped"] == 1

    def test_batch_rejects_empty_text(self, orchestrator) -> None:
        with pytest.raises(InputError):
            orchestrator.generate_batch(["ok", ""])

    def test_provider_error_propagates(self, orchestrator, fake_provider) -> None:
        fake_provider.failures.append(ProviderError("boom", retryable=True))
        with pytest.raises(ProviderError):
            orchestrator.generate_batch(["x"])

    def test_dimension_mismatch_is_terminal(self) -> None:
        provider = FakeEmbeddingProvider(dimensions=16)
        orch = EmbeddingOrchestrator(provider)
        provider.embed = MagicMock(return_value=[[1.0, 2.0]])
        with pytest.raises(InvalidEmbeddingError):
            orch.generate("x")

    def test_cancelled_run_stops_batches(self, orchestrator, make_run) -> None:
        run = make_run(Purpose.SURVEY)
        run.token.cancel()
        with pytest.raises(RunCancelled):
            orchestrator.generate_batch(["a", "b"], run=run)

    def test_batch_emits_progress(self, orchestrator, make_run) -> None:
        events = []
        run = make_run(Purpose.SURVEY, on_progress=events.append)
        orchestrator.generate_batch([f"t{i}" for i in range(8)], run=run)
        assert events
        assert events[-1]["stage"] == "embedding"
        assert events[-1]["percent"] == 100.0


# ── Providers ──


class TestProviders:
    def test_wrap_api_error_classification(self) -> None:
        assert _wrap_api_error(SimpleNamespace(code=503)).retryable is True
        assert _wrap_api_error(SimpleNamespace(code=429)).retryable is True
        err = _wrap_api_error(SimpleNamespace(code=400))
        assert err.retryable is False
        assert err.status_code == 400

    def test_gemini_embed(self) -> None:
        with patch("thematica.providers.provider.genai.Client") as client_cls:
            client = client_cls.return_value
            client.models.embed_content.return_value = SimpleNamespace(
                embeddings=[SimpleNamespace(values=[0.1, 0.2]), SimpleNamespace(values=[0.3, 0.4])]
            )
            provider = GeminiProvider(api_key="test", embedding_dims=2)
            assert provider.embed(["a", "b"]) == [[0.1, 0.2], [0.3, 0.4]]
            assert provider.rate_limited is True

    def test_gemini_generate(self) -> None:
        with patch("thematica.providers.provider.genai.Client") as client_cls:
            client_cls.return_value.models.generate_content.return_value = SimpleNamespace(text='{"ok": true}')
            provider = GeminiProvider(api_key="test")
            assert provider.generate("prompt", system="sys") == '{"ok": true}'

    def test_unknown_provider_kind(self) -> None:
        with pytest.raises(ValueError):
            create_embedding_provider("nope")
