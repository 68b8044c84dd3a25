"""Vector and cluster-quality metrics shared by the clustering primitives.

All functions take row-major matrices (one vector per row) and an integer
label per row. Labels need not be contiguous.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class Cluster:
    label: int
    indices: np.ndarray
    centroid: np.ndarray

    @property
    def size(self) -> int:
        return int(self.indices.size)


def normalize_rows(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def cosine_matrix(A: np.ndarray, B: np.ndarray | None = None) -> np.ndarray:
    A = normalize_rows(np.atleast_2d(A))
    B = A if B is None else normalize_rows(np.atleast_2d(B))
    return A @ B.T


def squared_distances(X: np.ndarray, C: np.ndarray) -> np.ndarray:
    """(n, k) matrix of squared Euclidean distances, clipped at zero."""
    d = (X * X).sum(axis=1)[:, None] + (C * C).sum(axis=1)[None, :] - 2.0 * X @ C.T
    return np.maximum(d, 0.0)


def centroid_of(X: np.ndarray, indices: np.ndarray | list[int]) -> np.ndarray:
    return X[np.asarray(indices, dtype=int)].mean(axis=0)


def clusters_from_labels(X: np.ndarray, labels: np.ndarray) -> list[Cluster]:
    out = []
    for lab in np.unique(labels):
        idx = np.flatnonzero(labels == lab)
        out.append(Cluster(label=int(lab), indices=idx, centroid=X[idx].mean(axis=0)))
    return out


def relabel(labels: np.ndarray) -> np.ndarray:
    """Map arbitrary labels to 0..m-1 in order of first appearance."""
    mapping: dict[int, int] = {}
    out = np.empty_like(labels)
    for i, lab in enumerate(labels):
        out[i] = mapping.setdefault(int(lab), len(mapping))
    return out


def inertia(X: np.ndarray, labels: np.ndarray) -> float:
    total = 0.0
    for c in clusters_from_labels(X, labels):
        diff = X[c.indices] - c.centroid
        total += float((diff * diff).sum())
    return total


def silhouette_score(X: np.ndarray, labels: np.ndarray) -> float:
    """Mean silhouette coefficient (Euclidean). Singleton members score 0."""
    uniq = np.unique(labels)
    if uniq.size < 2 or uniq.size >= len(X):
        return 0.0
    D = np.sqrt(squared_distances(X, X))
    scores = np.zeros(len(X))
    members = {lab: np.flatnonzero(labels == lab) for lab in uniq}
    for i in range(len(X)):
        own = members[labels[i]]
        if own.size < 2:
            continue
        a = D[i, own].sum() / (own.size - 1)
        b = min(D[i, idx].mean() for lab, idx in members.items() if lab != labels[i])
        denom = max(a, b)
        scores[i] = (b - a) / denom if denom > 0 else 0.0
    return float(scores.mean())


def davies_bouldin(X: np.ndarray, labels: np.ndarray) -> float:
    """Davies-Bouldin index; lower is better, 0 for fewer than two clusters."""
    clusters = clusters_from_labels(X, labels)
    if len(clusters) < 2:
        return 0.0
    C = np.stack([c.centroid for c in clusters])
    S = np.array([np.linalg.norm(X[c.indices] - c.centroid, axis=1).mean() for c in clusters])
    M = np.sqrt(squared_distances(C, C))
    np.fill_diagonal(M, np.inf)
    M = np.maximum(M, 1e-12)
    R = (S[:, None] + S[None, :]) / M
    return float(R.max(axis=1).mean())


def cohesion(X: np.ndarray, indices: np.ndarray | list[int]) -> float:
    """Mean cosine similarity of members to their centroid."""
    members = X[np.asarray(indices, dtype=int)]
    return float(cosine_matrix(members, members.mean(axis=0)[None, :]).mean())


def item_total_correlations(members: np.ndarray) -> np.ndarray:
    """Corrected item-total correlation of each row: cosine to the sum of the other rows."""
    n = len(members)
    if n < 2:
        return np.zeros(n)
    total = members.sum(axis=0)
    rest = total[None, :] - members
    return np.array([float(cosine_matrix(members[i], rest[i])[0, 0]) for i in range(n)])


def internal_coherence(members: np.ndarray) -> float:
    """Internal Coherence Index: mean corrected item-total correlation, 0 below two items."""
    if len(members) < 2:
        return 0.0
    return float(item_total_correlations(members).mean())


def max_pairwise_similarity(centroids: np.ndarray) -> float:
    if len(centroids) < 2:
        return 0.0
    S = cosine_matrix(centroids)
    iu = np.triu_indices(len(centroids), k=1)
    return float(S[iu].max())
