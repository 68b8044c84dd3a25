"""Tests for the clustering primitives: k-means++, adaptive k, bisecting, diversity merging."""

from __future__ import annotations

import numpy as np
import pytest

from thematica.clustering.bisecting import bisect_clusters
from thematica.clustering.diversity import diversity_metrics, merge_near_duplicates, similarity_graph
from thematica.clustering.hierarchical import agglomerate
from thematica.clustering.kmeans import candidate_ks, kmeans, kmeans_plus_plus_init, select_k
from thematica.clustering.metrics import (
    cohesion,
    davies_bouldin,
    internal_coherence,
    max_pairwise_similarity,
    normalize_rows,
    relabel,
    silhouette_score,
)
from thematica.errors import InputError
from tests.helpers import grouped_vectors


def _same_partition(labels: np.ndarray, groups: np.ndarray) -> bool:
    """True if labels and groups induce the same partition (up to renaming)."""
    pairs = set(zip(labels.tolist(), groups.tolist()))
    return len(pairs) == len(set(labels.tolist())) == len(set(groups.tolist()))


# ── Metrics ──


class TestMetrics:
    def test_internal_coherence(self) -> None:
        X, _ = grouped_vectors(1, 6)
        assert internal_coherence(X) > 0.9
        assert internal_coherence(X[:1]) == 0.0

    def test_internal_coherence_low_for_mixed_items(self) -> None:
        X, _ = grouped_vectors(6, 1)
        assert internal_coherence(X) < 0.3

    def test_silhouette_separated_groups(self) -> None:
        X, groups = grouped_vectors(4, 5)
        assert silhouette_score(X, groups) > 0.7

    def test_silhouette_degenerate(self) -> None:
        X, _ = grouped_vectors(2, 3)
        assert silhouette_score(X, np.zeros(6, dtype=int)) == 0.0

    def test_davies_bouldin(self) -> None:
        X, groups = grouped_vectors(4, 5)
        assert davies_bouldin(X, np.zeros(20, dtype=int)) == 0.0
        good = davies_bouldin(X, groups)
        bad = davies_bouldin(X, np.arange(20) % 4)
        assert good < bad

    def test_cohesion_and_max_pairwise(self) -> None:
        X, _ = grouped_vectors(3, 4)
        assert cohesion(X, [0, 1, 2, 3]) > 0.95
        centroids = np.stack([X[0:4].mean(axis=0), X[4:8].mean(axis=0), X[8:12].mean(axis=0)])
        assert max_pairwise_similarity(centroids) < 0.2
        assert max_pairwise_similarity(centroids[:1]) == 0.0

    def test_relabel(self) -> None:
        np.testing.assert_array_equal(relabel(np.array([7, 7, 3, 9, 3])), [0, 0, 1, 2, 1])

    def test_normalize_rows_keeps_zero_rows(self) -> None:
        out = normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]]))
        np.testing.assert_allclose(out, [[0.6, 0.8], [0.0, 0.0]])


# ── k-means ──


class TestKMeans:
    def test_plus_plus_init_picks_distinct_groups(self) -> None:
        X, _ = grouped_vectors(5, 4, noise=0.01)
        seeds = kmeans_plus_plus_init(X, 5, np.random.default_rng(42))
        assert seeds.shape == (5, X.shape[1])
        # Each seed sits on a different basis direction
        assert len({int(np.argmax(s)) for s in seeds}) == 5

    def test_plus_plus_init_k_at_least_n(self) -> None:
        X, _ = grouped_vectors(2, 2)
        np.testing.assert_array_equal(kmeans_plus_plus_init(X, 10, np.random.default_rng(0)), X)

    def test_recovers_groups(self) -> None:
        X, groups = grouped_vectors(6, 5, noise=0.02)
        result = kmeans(X, 6, seed=42)
        assert _same_partition(result.labels, groups)
        assert result.converged
        assert result.k == 6

    def test_deterministic_for_seed(self) -> None:
        X, _ = grouped_vectors(8, 6, noise=0.6)
        a = kmeans(X, 5, seed=7)
        b = kmeans(X, 5, seed=7)
        np.testing.assert_array_equal(a.labels, b.labels)
        assert a.inertia == b.inertia

    def test_no_empty_clusters(self) -> None:
        X, _ = grouped_vectors(3, 10, noise=0.5)
        result = kmeans(X, 12, seed=1)
        assert len(set(result.labels.tolist())) == 12

    def test_k_at_least_n_gives_singletons(self) -> None:
        X, _ = grouped_vectors(2, 2)
        result = kmeans(X, 4)
        np.testing.assert_array_equal(result.labels, [0, 1, 2, 3])
        assert result.inertia == 0.0

    def test_invalid_arguments(self) -> None:
        with pytest.raises(InputError):
            kmeans(np.zeros((0, 3)), 2)
        X, _ = grouped_vectors(2, 2)
        with pytest.raises(InputError):
            kmeans(X, 0)


class TestSelectK:
    def test_candidate_grid(self) -> None:
        assert candidate_ks(30, 80) == [30, 35, 40, 45, 50, 55, 60, 65, 70, 75, 80]
        assert candidate_ks(5, 20) == [5, 10, 15, 20]
        assert candidate_ks(8, 12) == [8, 12]
        assert candidate_ks(4, 4) == [4]

    def test_selects_true_k_by_elbow(self) -> None:
        X, groups = grouped_vectors(10, 5, noise=0.02)
        sel = select_k(X, 5, 20, seed=42)
        assert sel.k == 10
        assert sel.elbow_k == 10
        assert _same_partition(sel.result.labels, groups)
        assert [c["k"] for c in sel.candidates] == [5, 10, 15, 20]

    def test_k_within_bounds(self) -> None:
        X, _ = grouped_vectors(3, 20, noise=0.8)
        sel = select_k(X, 5, 20, seed=42)
        assert 5 <= sel.k <= 20

    def test_fewer_points_than_k_min(self) -> None:
        X, _ = grouped_vectors(2, 3)
        sel = select_k(X, 8, 12)
        assert sel.k == 6
        assert len(set(sel.result.labels.tolist())) == 6

    def test_deterministic(self) -> None:
        X, _ = grouped_vectors(12, 4, noise=0.5)
        a = select_k(X, 5, 20, seed=3)
        b = select_k(X, 5, 20, seed=3)
        assert a.k == b.k
        np.testing.assert_array_equal(a.result.labels, b.result.labels)


# ── Bisecting ──


class TestBisecting:
    def test_splits_merged_groups(self) -> None:
        X, groups = grouped_vectors(4, 5, noise=0.02)
        coarse = groups // 2  # two clusters, each hiding two groups
        labels, info = bisect_clusters(X, coarse, target=4)
        assert len(set(labels.tolist())) == 4
        assert info["accepted"] == 2
        assert _same_partition(labels, groups)

    def test_rejects_splits_that_worsen_separation(self) -> None:
        X, groups = grouped_vectors(3, 4)
        labels, info = bisect_clusters(X, groups, target=6)
        # Splitting a tight group into halves only raises Davies-Bouldin
        assert len(set(labels.tolist())) == 3
        assert info["accepted"] == 0
        assert info["rejected"] >= 1

    def test_already_at_target(self) -> None:
        X, groups = grouped_vectors(3, 4)
        labels, info = bisect_clusters(X, groups, target=3)
        assert info == {"accepted": 0, "rejected": 0, "davies_bouldin": pytest.approx(davies_bouldin(X, groups))}
        assert _same_partition(labels, groups)


# ── Diversity ──


class TestDiversity:
    def test_merges_split_group(self) -> None:
        X, groups = grouped_vectors(3, 6)
        labels = groups.copy()
        labels[:3] = 9  # group 0 split into two halves
        merged, merges = merge_near_duplicates(X, labels, threshold=0.7)
        assert len(set(merged.tolist())) == 3
        assert len(merges) == 1
        assert _same_partition(merged, groups)

    def test_no_merge_for_distinct_clusters(self) -> None:
        X, groups = grouped_vectors(5, 4)
        merged, merges = merge_near_duplicates(X, groups, threshold=0.7)
        assert merges == []
        assert len(set(merged.tolist())) == 5

    def test_respects_min_clusters(self) -> None:
        X, _ = grouped_vectors(1, 8)
        labels = np.arange(8) % 4
        merged, _ = merge_near_duplicates(X, labels, threshold=0.7, min_clusters=2)
        assert len(set(merged.tolist())) >= 2

    def test_result_below_threshold(self) -> None:
        X, groups = grouped_vectors(4, 6)
        labels = np.concatenate([groups[:12], groups[12:] + 10 * (np.arange(12) % 2)])
        merged, _ = merge_near_duplicates(X, labels, threshold=0.7)
        centroids = np.stack([X[merged == lab].mean(axis=0) for lab in np.unique(merged)])
        assert max_pairwise_similarity(centroids) < 0.7

    def test_similarity_graph(self) -> None:
        c = np.array([[1.0, 0.0], [0.9, 0.1], [0.0, 1.0]])
        G = similarity_graph(c, 0.7)
        assert G.number_of_nodes() == 3
        assert G.has_edge(0, 1)
        assert not G.has_edge(0, 2)

    def test_diversity_metrics(self) -> None:
        X, groups = grouped_vectors(3, 4)
        sources = ["s1", "s2"] * 6
        m = diversity_metrics(X, groups, sources, all_sources=["s1", "s2", "s3", "s4"])
        assert m["source_coverage"] == 0.5
        assert m["redundant_pairs"] == 0
        assert m["max_pairwise_similarity"] < 0.3


# ── Agglomeration ──


class TestAgglomerate:
    def test_merges_to_target(self) -> None:
        X, groups = grouped_vectors(4, 5)
        out, info = agglomerate(X, 4, internal_coherence)
        assert len(out) == 4
        assert info["merges"] == 16
        labels = np.empty(len(X), dtype=int)
        for n, g in enumerate(out):
            labels[g] = n
        assert _same_partition(labels, groups)

    def test_early_stop_on_min_score(self) -> None:
        X, _ = grouped_vectors(4, 5)
        out, info = agglomerate(X, 1, internal_coherence, min_score=0.7)
        assert info["early_stop"] is True
        assert len(out) == 4
