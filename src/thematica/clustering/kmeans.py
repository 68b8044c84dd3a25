"""k-means++ seeding, Lloyd iteration and adaptive selection of k."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from thematica.clustering.metrics import davies_bouldin, silhouette_score, squared_distances
from thematica.errors import InputError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITER = 100
SELECTION_MAX_ITER = 50
CONVERGENCE_TOL = 1e-3
# Minimum normalised chord distance for a point to count as an elbow
ELBOW_MIN_DISTANCE = 0.05


@dataclass
class KMeansResult:
    labels: np.ndarray
    centroids: np.ndarray
    inertia: float
    iterations: int
    converged: bool

    @property
    def k(self) -> int:
        return len(self.centroids)


@dataclass
class KSelection:
    k: int
    elbow_k: int | None = None
    score_k: int | None = None
    reason: str = ""
    candidates: list[dict] = field(default_factory=list)
    result: KMeansResult | None = None


def kmeans_plus_plus_init(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Choose k seeds, each with probability proportional to squared distance
    from the nearest seed already chosen. Returns every point when k >= N."""
    n = len(X)
    if k >= n:
        return X.copy()
    first = int(rng.integers(n))
    centers = [X[first]]
    d2 = squared_distances(X, X[first][None, :])[:, 0]
    for _ in range(1, k):
        total = d2.sum()
        if total <= 0:
            idx = int(rng.integers(n))
        else:
            idx = int(rng.choice(n, p=d2 / total))
        centers.append(X[idx])
        d2 = np.minimum(d2, squared_distances(X, X[idx][None, :])[:, 0])
    return np.stack(centers)


def _reseed_empty(X: np.ndarray, labels: np.ndarray, centroids: np.ndarray, k: int) -> None:
    """Give every empty cluster the point farthest from its current centroid.

    Donor points are only taken from clusters with more than one member, so
    reseeding never empties another cluster. Mutates labels in place.
    """
    counts = np.bincount(labels, minlength=k)
    empty = np.flatnonzero(counts == 0)
    if empty.size == 0:
        return
    dist = ((X - centroids[labels]) ** 2).sum(axis=1)
    order = np.argsort(-dist, kind="stable")
    pos = 0
    for j in empty:
        while pos < len(order) and counts[labels[order[pos]]] <= 1:
            pos += 1
        if pos >= len(order):
            break
        idx = order[pos]
        counts[labels[idx]] -= 1
        labels[idx] = j
        counts[j] = 1
        pos += 1
        logger.debug("Reseeded empty cluster %d with point %d", j, idx)


def kmeans(
    X: np.ndarray,
    k: int,
    seed: int = 42,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = CONVERGENCE_TOL,
) -> KMeansResult:
    """Lloyd's algorithm from k-means++ seeds.

    Deterministic for a fixed seed. Clusters never end up empty.
    """
    n = len(X)
    if n == 0:
        raise InputError("cannot cluster zero vectors")
    if k <= 0:
        raise InputError(f"k must be positive, got {k}")
    if k >= n:
        return KMeansResult(labels=np.arange(n), centroids=X.copy(), inertia=0.0, iterations=0, converged=True)

    rng = np.random.default_rng(seed)
    centroids = kmeans_plus_plus_init(X, k, rng)
    labels = np.zeros(n, dtype=int)
    converged = False
    iterations = 0
    for iterations in range(1, max_iter + 1):
        labels = squared_distances(X, centroids).argmin(axis=1)
        _reseed_empty(X, labels, centroids, k)
        new_centroids = np.stack([X[labels == j].mean(axis=0) for j in range(k)])
        shift = float(np.linalg.norm(new_centroids - centroids, axis=1).max())
        centroids = new_centroids
        if shift < tol:
            converged = True
            break

    inertia = float(((X - centroids[labels]) ** 2).sum())
    logger.debug("kmeans k=%d: %d iteration(s), converged=%s, inertia=%.4f", k, iterations, converged, inertia)
    return KMeansResult(labels=labels, centroids=centroids, inertia=inertia, iterations=iterations, converged=converged)


def candidate_ks(k_min: int, k_max: int) -> list[int]:
    """Roughly ten candidates between k_min and k_max, always including k_max."""
    if k_max <= k_min:
        return [k_min]
    step = max(5, (k_max - k_min) // 10)
    ks = list(range(k_min, k_max + 1, step))
    if ks[-1] != k_max:
        ks.append(k_max)
    return ks


def _elbow(ks: list[int], inertias: list[float]) -> int | None:
    """Candidate farthest from the chord joining the first and last (k, inertia) points."""
    if len(ks) < 3:
        return None
    x = np.asarray(ks, dtype=float)
    y = np.asarray(inertias, dtype=float)
    if y.max() - y.min() <= 0:
        return None
    x = (x - x.min()) / (x.max() - x.min())
    y = (y - y.min()) / (y.max() - y.min())
    # Distance from the line through (x0, y0) and (x1, y1)
    dx, dy = x[-1] - x[0], y[-1] - y[0]
    dist = np.abs(dy * x - dx * y + x[-1] * y[0] - y[-1] * x[0]) / np.hypot(dx, dy)
    best = int(dist.argmax())
    if dist[best] < ELBOW_MIN_DISTANCE:
        return None
    return ks[best]


def select_k(X: np.ndarray, k_min: int, k_max: int, seed: int = 42) -> KSelection:
    """Pick k in [k_min, k_max] by the elbow of the inertia curve.

    Silhouette picks k when there is no elbow. Returns k = N when N < k_min.
    """
    n = len(X)
    if n == 0:
        raise InputError("cannot select k for zero vectors")
    if n < k_min:
        result = kmeans(X, n, seed=seed)
        return KSelection(k=n, reason="fewer points than k_min", result=result)

    ks = candidate_ks(k_min, min(k_max, n))
    results: dict[int, KMeansResult] = {}
    candidates = []
    for k in ks:
        res = kmeans(X, k, seed=seed, max_iter=SELECTION_MAX_ITER)
        results[k] = res
        candidates.append({
            "k": k,
            "inertia": res.inertia,
            "silhouette": silhouette_score(X, res.labels),
            "davies_bouldin": davies_bouldin(X, res.labels),
        })

    elbow_k = _elbow(ks, [c["inertia"] for c in candidates])
    score_k = max(candidates, key=lambda c: (c["silhouette"], -c["k"]))["k"]
    if elbow_k is not None:
        k, reason = elbow_k, "elbow" if elbow_k == score_k else "elbow preferred over silhouette"
    else:
        k, reason = score_k, "silhouette (no elbow)"
    logger.info("Selected k=%d from %s (elbow=%s, silhouette=%s)", k, ks, elbow_k, score_k)
    final = kmeans(X, k, seed=seed)
    return KSelection(k=k, elbow_k=elbow_k, score_k=score_k, reason=reason, candidates=candidates, result=final)
