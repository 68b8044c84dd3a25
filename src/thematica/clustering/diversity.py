"""Near-duplicate cluster merging and diversity diagnostics."""

from __future__ import annotations

import logging
from typing import Sequence

import networkx as nx
import numpy as np

from thematica.clustering.metrics import (
    clusters_from_labels,
    cohesion,
    cosine_matrix,
    davies_bouldin,
    relabel,
)

logger = logging.getLogger(__name__)

DIVERSITY_THRESHOLD = 0.7


def similarity_graph(centroids: np.ndarray, threshold: float) -> nx.Graph:
    """Graph over cluster positions with an edge wherever centroid cosine >= threshold."""
    S = cosine_matrix(centroids)
    G = nx.Graph()
    G.add_nodes_from(range(len(centroids)))
    rows, cols = np.nonzero(np.triu(S >= threshold, k=1))
    for i, j in zip(rows.tolist(), cols.tolist()):
        G.add_edge(i, j, weight=float(S[i, j]))
    return G


def merge_near_duplicates(
    X: np.ndarray,
    labels: np.ndarray,
    threshold: float = DIVERSITY_THRESHOLD,
    min_clusters: int = 1,
) -> tuple[np.ndarray, list[dict]]:
    """Merge cliques of clusters whose centroids are at least ``threshold`` similar.

    Cliques are merged largest first and never overlap within one pass; the
    member with the highest cohesion is the representative. Passes repeat
    until no pair is above the threshold or ``min_clusters`` would be crossed.

    Returns:
        (labels, merges) where each merge records the representative label and
        the labels folded into it.
    """
    labels = relabel(labels.copy())
    merges: list[dict] = []
    while True:
        clusters = clusters_from_labels(X, labels)
        if len(clusters) <= min_clusters:
            break
        G = similarity_graph(np.stack([c.centroid for c in clusters]), threshold)
        if G.number_of_edges() == 0:
            break
        cliques = sorted(
            (c for c in nx.find_cliques(G) if len(c) > 1),
            key=lambda c: (-len(c), min(c)),
        )
        used: set[int] = set()
        remaining = len(clusters)
        merged_this_pass = 0
        for clique in cliques:
            if used.intersection(clique):
                continue
            if remaining - (len(clique) - 1) < min_clusters:
                continue
            members = [clusters[i] for i in sorted(clique)]
            rep = max(members, key=lambda c: (cohesion(X, c.indices), c.size))
            for c in members:
                if c is not rep:
                    labels[c.indices] = rep.label
            used.update(clique)
            remaining -= len(clique) - 1
            merged_this_pass += 1
            merges.append({
                "representative": rep.label,
                "merged": [c.label for c in members if c is not rep],
            })
        if merged_this_pass == 0:
            break
        labels = relabel(labels)
    if merges:
        logger.info("Diversity merge: %d merge(s) at threshold %.2f", len(merges), threshold)
    return labels, merges


def diversity_metrics(
    X: np.ndarray,
    labels: np.ndarray,
    source_ids: Sequence[str],
    threshold: float = DIVERSITY_THRESHOLD,
    all_sources: Sequence[str] | None = None,
) -> dict:
    """Average / max pairwise centroid similarity, redundant pairs, DB index and source coverage."""
    clusters = clusters_from_labels(X, labels)
    all_sources = set(source_ids if all_sources is None else all_sources)
    covered = {source_ids[i] for c in clusters for i in c.indices}
    metrics = {
        "avg_pairwise_similarity": 0.0,
        "max_pairwise_similarity": 0.0,
        "redundant_pairs": 0,
        "davies_bouldin": davies_bouldin(X, labels),
        "source_coverage": len(covered) / len(all_sources) if all_sources else 0.0,
    }
    if len(clusters) >= 2:
        S = cosine_matrix(np.stack([c.centroid for c in clusters]))
        iu = np.triu_indices(len(clusters), k=1)
        pair = S[iu]
        metrics["avg_pairwise_similarity"] = float(pair.mean())
        metrics["max_pairwise_similarity"] = float(pair.max())
        metrics["redundant_pairs"] = int((pair >= threshold).sum())
    return metrics
