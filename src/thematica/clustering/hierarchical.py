"""Greedy agglomerative clustering with a pluggable merge score."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np

from thematica.clustering.metrics import cosine_matrix

logger = logging.getLogger(__name__)

# Only each group's nearest neighbours (by centroid) are scored as merge candidates
DEFAULT_NEIGHBOURS = 5


def agglomerate(
    X: np.ndarray,
    target: int,
    score_fn: Callable[[np.ndarray], float],
    min_score: float = float("-inf"),
    groups: list[list[int]] | None = None,
    neighbours: int = DEFAULT_NEIGHBOURS,
) -> tuple[list[list[int]], dict]:
    """Merge groups pairwise, best ``score_fn`` first, down to ``target`` groups.

    ``score_fn`` receives the member rows of the would-be merged group. Merging
    stops early when the best available merge scores below ``min_score``.

    Returns:
        (groups, info): groups are lists of row indices; info carries
        ``merges`` and ``early_stop``.
    """
    groups = [list(g) for g in groups] if groups is not None else [[i] for i in range(len(X))]
    merges = 0
    early_stop = False
    while len(groups) > max(target, 1):
        centroids = np.stack([X[g].mean(axis=0) for g in groups])
        S = cosine_matrix(centroids)
        np.fill_diagonal(S, -np.inf)
        k = min(neighbours, len(groups) - 1)
        nearest = np.argsort(-S, axis=1)[:, :k]
        pairs = {(min(i, int(j)), max(i, int(j))) for i in range(len(groups)) for j in nearest[i]}

        best_pair, best_score = None, float("-inf")
        for i, j in sorted(pairs):
            score = score_fn(X[groups[i] + groups[j]])
            if score > best_score:
                best_pair, best_score = (i, j), score
        if best_pair is None or best_score < min_score:
            early_stop = True
            logger.debug("Agglomeration stopped at %d group(s): best score %.4f < %.4f",
                         len(groups), best_score, min_score)
            break
        i, j = best_pair
        groups[i] = groups[i] + groups[j]
        del groups[j]
        merges += 1
    return groups, {"merges": merges, "early_stop": early_stop}
