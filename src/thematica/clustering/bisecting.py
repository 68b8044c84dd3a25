"""Bisecting refinement: split the most spread-out clusters toward a target count."""

from __future__ import annotations

import logging

import numpy as np

from thematica.clustering.kmeans import kmeans
from thematica.clustering.metrics import davies_bouldin, relabel

logger = logging.getLogger(__name__)


def _sse(X: np.ndarray, idx: np.ndarray) -> float:
    diff = X[idx] - X[idx].mean(axis=0)
    return float((diff * diff).sum())


def bisect_clusters(
    X: np.ndarray,
    labels: np.ndarray,
    target: int,
    seed: int = 42,
    tolerance: float = 1.0,
    min_size: int = 2,
    max_bisections: int | None = None,
) -> tuple[np.ndarray, dict]:
    """Repeatedly 2-means split the cluster with the largest within-cluster SSE.

    A split is kept only when the Davies-Bouldin index does not worsen beyond
    ``tolerance`` (1.0 means it must not increase). Rejected clusters are not
    tried again. Stops at ``target`` clusters or when nothing is splittable.

    Returns:
        (labels, info) with labels renumbered 0..m-1 and counters in info.
    """
    labels = relabel(labels.copy())
    max_bisections = target * 2 if max_bisections is None else max_bisections
    unsplittable: set[int] = set()
    accepted = rejected = 0
    next_label = int(labels.max()) + 1 if labels.size else 0
    db_current = davies_bouldin(X, labels)

    while len(np.unique(labels)) < target and accepted + rejected < max_bisections:
        best_label, best_sse = None, 0.0
        for lab in np.unique(labels):
            if lab in unsplittable:
                continue
            idx = np.flatnonzero(labels == lab)
            if idx.size < 2 * min_size:
                continue
            sse = _sse(X, idx)
            if sse > best_sse:
                best_label, best_sse = int(lab), sse
        if best_label is None:
            logger.debug("No splittable cluster left")
            break

        idx = np.flatnonzero(labels == best_label)
        split = kmeans(X[idx], 2, seed=seed + accepted + rejected)
        sizes = np.bincount(split.labels, minlength=2)
        if sizes.min() < min_size:
            unsplittable.add(best_label)
            rejected += 1
            continue

        candidate = labels.copy()
        candidate[idx[split.labels == 1]] = next_label
        db_new = davies_bouldin(X, candidate)
        if db_current == 0.0 or db_new <= db_current * tolerance:
            logger.debug("Split cluster %d (sse=%.4f): DB %.4f -> %.4f", best_label, best_sse, db_current, db_new)
            labels = candidate
            db_current = db_new
            next_label += 1
            accepted += 1
        else:
            unsplittable.add(best_label)
            rejected += 1

    logger.info(
        "Bisecting: %d accepted, %d rejected, %d cluster(s) (target %d)",
        accepted, rejected, len(np.unique(labels)), target,
    )
    return relabel(labels), {"accepted": accepted, "rejected": rejected, "davies_bouldin": db_current}
