"""Multi-source literature synthesis (meta-ethnography style).

Each source is reduced to local themes, every ordered pair of sources is
translated into the other, reciprocal translations are joined into
meta-themes, and two further passes look for a line of argument shared by all
sources and for refutations between them. The result carries a typed
synthesis graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import permutations

import networkx as nx
import numpy as np
from networkx.readwrite import json_graph

from thematica.clustering.hierarchical import agglomerate
from thematica.clustering.metrics import cosine_matrix
from thematica.models import Purpose, Theme
from thematica.pipelines.base import Pipeline, PipelineInput, build_theme
from thematica.pipelines.labeling import ThemeLabeler, tokenize
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)

DIRECT_THRESHOLD = 0.85
ANALOGOUS_THRESHOLD = 0.65
PARTIAL_THRESHOLD = 0.40
DEDUP_THRESHOLD = 0.85
LOCAL_THEME_THRESHOLD = 0.65
RECIPROCITY_THRESHOLD = 0.5
MIN_STUDIES_FOR_CONSENSUS = 2
COVERAGE_TARGET = 0.8
CONTRADICTION_SEVERITY = 0.7

POSITIVE_WORDS = frozenset(
    "improve improved improves improvement increase increased increases benefit benefits beneficial "
    "effective positive support supports supported enhance enhanced enhances success successful better "
    "gain gains helpful strong strengthen protective advantage advantages".split()
)
NEGATIVE_WORDS = frozenset(
    "worsen worsened worsens decline declined declines decrease decreased decreases harm harms harmful "
    "ineffective negative undermine undermines undermined fail failed fails failure worse loss losses "
    "weak weaken weakens risk risks barrier barriers disadvantage detrimental".split()
)
NEGATORS = frozenset("not no never neither nor without lack lacks lacking".split())
CONTRADICTION_INDICATORS = {
    "direct": ("however", "contrary", "opposite", "disagree", "refute", "conflict", "contradict"),
    "methodological": ("sample size", "methodology", "measurement", "design", "bias", "instrument"),
    "contextual": ("setting", "population", "context", "culture", "country", "region"),
    "temporal": ("earlier", "recent", "longitudinal", "over time", "decade", "follow-up"),
}


def polarity(texts: list[str]) -> float:
    """Lexicon sentiment in [-1, 1]; a negator flips the next sentiment word."""
    pos = neg = 0
    for text in texts:
        flip = False
        for word in text.lower().replace(",", " ").replace(".", " ").split():
            if word in NEGATORS:
                flip = True
                continue
            if word in POSITIVE_WORDS:
                neg, pos = (neg + 1, pos) if flip else (neg, pos + 1)
            elif word in NEGATIVE_WORDS:
                pos, neg = (pos + 1, neg) if flip else (pos, neg + 1)
            flip = False
    total = pos + neg
    return (pos - neg) / total if total else 0.0


def contradiction_type(texts: list[str]) -> str:
    joined = " ".join(texts).lower()
    for kind in ("methodological", "contextual", "temporal"):
        if any(ind in joined for ind in CONTRADICTION_INDICATORS[kind]):
            return kind
    return "direct"


def translation_type(similarity: float) -> str | None:
    if similarity >= DIRECT_THRESHOLD:
        return "direct"
    if similarity >= ANALOGOUS_THRESHOLD:
        return "analogous"
    if similarity >= PARTIAL_THRESHOLD:
        return "partial"
    return None


@dataclass
class LocalTheme:
    id: str
    source_id: str
    indices: list[int]
    centroid: np.ndarray
    texts: list[str] = field(default_factory=list)


class _UnionFind:
    def __init__(self, n: int) -> None:
        self.parent = list(range(n))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, i: int, j: int) -> None:
        ri, rj = self.find(i), self.find(j)
        if ri != rj:
            self.parent[max(ri, rj)] = min(ri, rj)


def _mean_pairwise(members: np.ndarray) -> float:
    S = cosine_matrix(members)
    return float(S[np.triu_indices(len(members), k=1)].mean())


class SynthesisPipeline(Pipeline):
    purpose = Purpose.SYNTHESIS
    min_excerpts = 4
    min_sources = 2

    def __init__(
        self,
        assistant: AssistantClient | None = None,
        labeler: ThemeLabeler | None = None,
        dedup_threshold: float = DEDUP_THRESHOLD,
        coverage_target: float = COVERAGE_TARGET,
    ) -> None:
        super().__init__(assistant, labeler)
        self.dedup_threshold = dedup_threshold
        self.coverage_target = coverage_target

    # ── Stages ──

    def _local_themes(self, pinput: PipelineInput) -> list[LocalTheme]:
        X = pinput.matrix
        out = []
        for sid in pinput.source_order():
            idx = [i for i, e in enumerate(pinput.excerpts) if e.source_id == sid]
            groups, _ = agglomerate(X[idx], 1, _mean_pairwise, min_score=LOCAL_THEME_THRESHOLD)
            for n, g in enumerate(groups, 1):
                members = [idx[i] for i in g]
                out.append(LocalTheme(
                    id=f"{sid}:t{n}",
                    source_id=sid,
                    indices=members,
                    centroid=X[members].mean(axis=0),
                    texts=[pinput.excerpts[i].text for i in members],
                ))
        return out

    def _translate(self, local: list[LocalTheme], order: list[str]) -> tuple[list[dict], list[dict], np.ndarray]:
        """Best match of every local theme in every other source, plus per-pair reciprocity."""
        S = cosine_matrix(np.stack([t.centroid for t in local]))
        by_source = {sid: [i for i, t in enumerate(local) if t.source_id == sid] for sid in order}
        best: dict[tuple[int, str], int] = {}
        translations = []
        for a, b in permutations(order, 2):
            if not by_source[a] or not by_source[b]:
                continue
            for i in by_source[a]:
                j = max(by_source[b], key=lambda j: S[i, j])
                best[(i, b)] = j
                kind = translation_type(float(S[i, j]))
                if kind is not None:
                    translations.append({"from": local[i].id, "to": local[j].id, "type": kind,
                                         "similarity": float(S[i, j]), "_i": i, "_j": j})
        reciprocity = []
        for k, a in enumerate(order):
            for b in order[k + 1:]:
                matched = [i for i in by_source[a] if (i, b) in best
                           and S[i, best[(i, b)]] >= ANALOGOUS_THRESHOLD]
                mutual = [i for i in matched if best.get((best[(i, b)], a)) == i]
                rate = len(mutual) / len(matched) if matched else 0.0
                reciprocity.append({"sources": [a, b], "matched": len(matched), "mutual": len(mutual),
                                    "rate": rate, "reciprocal": rate >= RECIPROCITY_THRESHOLD})
        for t in translations:
            i, j = t["_i"], t["_j"]
            t["mutual"] = best.get((j, local[i].source_id)) == i
        return translations, reciprocity, S

    def _refutations(self, local: list[LocalTheme], S: np.ndarray) -> list[dict]:
        found = []
        pol = [polarity(t.texts) for t in local]
        for i in range(len(local)):
            for j in range(i + 1, len(local)):
                if local[i].source_id == local[j].source_id or S[i, j] < PARTIAL_THRESHOLD:
                    continue
                texts = local[i].texts + local[j].texts
                opposed = pol[i] * pol[j] < 0
                indicated = any(ind in " ".join(texts).lower() for ind in CONTRADICTION_INDICATORS["direct"])
                if not opposed and not indicated:
                    continue
                gap = abs(pol[i] - pol[j]) / 2 if opposed else 0.5
                severity = float(S[i, j]) * (0.5 + 0.5 * gap) + (0.15 if indicated else 0.0)
                severity = min(1.0, severity)
                found.append({
                    "between": [local[i].id, local[j].id],
                    "type": contradiction_type(texts),
                    "severity": severity,
                    "severe": severity >= CONTRADICTION_SEVERITY,
                    "polarity": [pol[i], pol[j]],
                    "_i": i, "_j": j,
                })
        return found

    def _execute(self, pinput: PipelineInput, run: RunContext) -> tuple[list[Theme], dict]:
        bounds = pinput.bounds
        X = pinput.matrix
        order = pinput.source_order()

        run.checkpoint("local_themes")
        local = self._local_themes(pinput)
        run.progress("synthesis", 20.0, f"{len(local)} local theme(s)", local_themes=len(local))

        run.checkpoint("translation")
        translations, reciprocity, S = self._translate(local, order)
        uf = _UnionFind(len(local))
        for t in translations:
            if t["mutual"] and t["type"] in ("direct", "analogous"):
                uf.union(t["_i"], t["_j"])
        run.progress("synthesis", 45.0, f"{len(translations)} translation(s)")

        # Meta-themes, then dedup of near-identical meta-themes
        components: dict[int, list[int]] = {}
        for i in range(len(local)):
            components.setdefault(uf.find(i), []).append(i)
        metas = list(components.values())
        meta_centroids = np.stack([X[[x for i in m for x in local[i].indices]].mean(axis=0) for m in metas])
        G_dup = nx.Graph()
        G_dup.add_nodes_from(range(len(metas)))
        M = cosine_matrix(meta_centroids)
        rows, cols = np.nonzero(np.triu(M >= self.dedup_threshold, k=1))
        G_dup.add_edges_from(zip(rows.tolist(), cols.tolist()))
        deduped = [sorted(x for c in comp for x in metas[c]) for comp in nx.connected_components(G_dup)]
        deduped.sort(key=lambda m: min(m))
        dedup_count = len(metas) - len(deduped)

        run.checkpoint("refutation")
        refutations = self._refutations(local, S)
        run.progress("synthesis", 65.0, f"{len(refutations)} refutation(s)")

        # Themes: one per meta-theme
        local_centroids = np.stack([t.centroid for t in local])
        themes: list[Theme] = []
        local_to_meta: dict[int, str] = {}
        for n, members in enumerate(deduped, 1):
            meta_id = f"meta-{n}"
            idx = [x for i in members for x in local[i].indices]
            for i in members:
                local_to_meta[i] = meta_id
            theme = build_theme(meta_id, idx, pinput, kind="meta_theme")
            # Lenient presence: any local theme of the source within the partial threshold
            sims = cosine_matrix(theme.centroid[None, :], local_centroids)[0]
            present = {local[i].source_id for i in np.flatnonzero(sims >= PARTIAL_THRESHOLD)}
            theme.metrics.update({
                "local_themes": [local[i].id for i in members],
                "supporting_sources": len(theme.source_ids),
                "present_in_sources": sorted(present),
                "line_of_argument": len(present) == len(order),
                "source_coverage": len(theme.source_ids) / len(order),
            })
            theme.quality = 0.5 * theme.quality + 0.5 * theme.metrics["source_coverage"]
            themes.append(theme)
        by_meta = {t.id: t for t in themes}
        for r in refutations:
            for k in ("_i", "_j"):
                meta = by_meta[local_to_meta[r[k]]]
                meta.metrics.setdefault("contradictions", 0)
                meta.metrics["contradictions"] += 1

        themes = self.enforce_max(themes, bounds.max_constructs, run)
        self.check_min(themes, bounds.min_constructs, run)
        kept_sources = {s for t in themes for s in t.source_ids}
        coverage = len(kept_sources) / len(order)
        if coverage < self.coverage_target:
            run.warn(f"meta-themes cover {coverage:.0%} of sources, below the {self.coverage_target:.0%} target")

        run.checkpoint("labeling")
        self.label_themes(pinput, themes, run)
        line_of_argument = [t for t in themes if t.metrics["line_of_argument"]]
        consensus = (
            sum(1 for t in themes if t.metrics["supporting_sources"] >= MIN_STUDIES_FOR_CONSENSUS) / len(themes)
            if themes else 0.0
        )
        if line_of_argument:
            central = "Across all sources, the literature converges on " + "; ".join(
                t.label for t in sorted(line_of_argument, key=lambda t: -t.quality)[:3]
            ) + "."
        else:
            central = "No single line of argument is shared by every source."

        graph = self._graph(local, themes, local_to_meta, translations, refutations)
        run.progress("synthesis", 100.0, f"{len(themes)} meta-theme(s)")

        metrics = {
            "meta_theme_count": len(themes),
            "local_theme_count": len(local),
            "source_coverage": coverage,
            "coverage_target_met": coverage >= self.coverage_target,
            "translations": [{k: v for k, v in t.items() if not k.startswith("_")} for t in translations],
            "translation_counts": {
                kind: sum(1 for t in translations if t["type"] == kind) for kind in ("direct", "analogous", "partial")
            },
            "reciprocity": reciprocity,
            "refutations": [{k: v for k, v in r.items() if not k.startswith("_")} for r in refutations],
            "deduplicated": dedup_count,
            "line_of_argument": [t.id for t in line_of_argument],
            "central_argument": central,
            "consensus": consensus,
            "argument_strength": 0.6 * consensus + 0.4 * coverage,
            "graph": graph,
        }
        logger.info("Synthesis: %d meta-theme(s), coverage %.0f%%, %d refutation(s)",
                    len(themes), coverage * 100, len(refutations))
        return themes, metrics

    def _graph(
        self,
        local: list[LocalTheme],
        themes: list[Theme],
        local_to_meta: dict[int, str],
        translations: list[dict],
        refutations: list[dict],
    ) -> dict:
        kept = {t.id for t in themes}
        G = nx.DiGraph()
        for t in themes:
            G.add_node(t.id, kind="meta_theme", label=t.label)
        for i, lt in enumerate(local):
            G.add_node(lt.id, kind="theme", source_id=lt.source_id, size=len(lt.indices),
                       keywords=sorted(set(tokenize(" ".join(lt.texts))))[:5])
            meta = local_to_meta.get(i)
            if meta in kept:
                G.add_edge(lt.id, meta, type="member_of")
        for t in translations:
            G.add_edge(t["from"], t["to"], type="translates_to", translation=t["type"],
                       similarity=round(t["similarity"], 4))
        for r in refutations:
            a, b = r["between"]
            G.add_edge(a, b, type="refutes", severity=round(r["severity"], 4), contradiction=r["type"])
        return json_graph.node_link_data(G)
