"""Grounded-theory hypothesis generation.

Open coding classifies each excerpt into a paradigm code type, axial coding
groups and sub-clusters the codes into categories, and selective coding picks
the core category by PageRank over the category-relationship graph before a
theoretical framework statement is drafted.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Protocol

import networkx as nx
import numpy as np

from thematica.clustering.kmeans import kmeans, select_k
from thematica.clustering.metrics import cosine_matrix
from thematica.errors import BudgetExceeded, ProviderError
from thematica.models import Excerpt, Purpose, Theme
from thematica.pipelines.base import Pipeline, PipelineInput, build_theme
from thematica.pipelines.labeling import ThemeLabeler
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)

CAUSAL_CONDITION = "causal_condition"
CONTEXT = "context"
ACTION_STRATEGY = "action_strategy"
CONSEQUENCE = "consequence"
CODE_TYPES = (CAUSAL_CONDITION, CONTEXT, ACTION_STRATEGY, CONSEQUENCE)

PARADIGM_INDICATORS = {
    CAUSAL_CONDITION: ("because", "due to", "caused by", "resulted from", "leads to", "driven by"),
    CONTEXT: ("in the context of", "within", "setting", "environment", "situation", "however",
              "although", "despite", "influenced by", "affected by"),
    ACTION_STRATEGY: ("by ", "through", "using", "approach", "strategy", "method", "we tried", "they used"),
    CONSEQUENCE: ("resulting in", "leading to", "outcome", "effect", "consequence", "impact", "as a result"),
}

# Paradigm model edges: (from type, to type) -> relationship type
PARADIGM_LINKS = {
    (CAUSAL_CONDITION, ACTION_STRATEGY): "causal",
    (CAUSAL_CONDITION, CONSEQUENCE): "causal",
    (CONTEXT, ACTION_STRATEGY): "conditional",
    (CONTEXT, CONSEQUENCE): "conditional",
    (ACTION_STRATEGY, CONSEQUENCE): "sequential",
}

CLASSIFY_BATCH_SIZE = 10
CONFIDENCE_THRESHOLD = 0.6
SUBCATEGORY_K = (2, 4)
MIN_EDGE_WEIGHT = 0.1
CENTRALITY_WEIGHT = 0.6
COVERAGE_WEIGHT = 0.4


class CodeClassifier(Protocol):
    def classify(self, run: RunContext, excerpts: list[Excerpt]) -> list[tuple[str, float]]:
        """Return (code type, confidence) per excerpt."""
        ...


class HeuristicCodeClassifier:
    """Counts paradigm indicator phrases; ties and misses default to context."""

    def classify(self, run: RunContext, excerpts: list[Excerpt]) -> list[tuple[str, float]]:
        out = []
        for e in excerpts:
            text = f" {e.text.lower()} "
            hits = {t: sum(text.count(ind) for ind in PARADIGM_INDICATORS[t]) for t in CODE_TYPES}
            total = sum(hits.values())
            if total == 0:
                out.append((CONTEXT, 0.25))
                continue
            best = max(CODE_TYPES, key=lambda t: hits[t])
            out.append((best, hits[best] / total))
        return out


class AssistantCodeClassifier:
    """Batched assistant classification; low-confidence or failed items use the heuristic."""

    SYSTEM = (
        "You are a grounded-theory coder. Classify excerpts using the paradigm model. "
        "Respond with JSON only."
    )

    def __init__(
        self,
        assistant: AssistantClient,
        fallback: CodeClassifier | None = None,
        batch_size: int = CLASSIFY_BATCH_SIZE,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
    ) -> None:
        self._assistant = assistant
        self._fallback = fallback or HeuristicCodeClassifier()
        self.batch_size = batch_size
        self.confidence_threshold = confidence_threshold

    def _prompt(self, batch: list[Excerpt]) -> str:
        lines = [
            f"Classify each excerpt as one of: {', '.join(CODE_TYPES)}.",
            'Return {"codes": [{"id": "<id>", "type": "<code type>", "confidence": <0-1>}]}.',
            "",
        ]
        lines.extend(f"[{e.id}] {e.text[:500]}" for e in batch)
        return "\n".join(lines)

    def classify(self, run: RunContext, excerpts: list[Excerpt]) -> list[tuple[str, float]]:
        result = self._fallback.classify(run, excerpts)
        position = {e.id: i for i, e in enumerate(excerpts)}
        accepted = 0
        for start in range(0, len(excerpts), self.batch_size):
            batch = excerpts[start : start + self.batch_size]
            run.checkpoint("open_coding")
            if not run.ai_available():
                run.mark_truncated("ai_call_budget" if run.budget.remaining == 0 else "deadline")
                break
            try:
                data = self._assistant.generate_json(run, self._prompt(batch), self.SYSTEM, label="classify-codes")
            except BudgetExceeded:
                break
            except ProviderError as e:
                logger.warning("Code classification batch at %d failed, using heuristic: %s", start, e)
                continue
            for item in data.get("codes", []) if isinstance(data, dict) else []:
                if not isinstance(item, dict):
                    continue
                i = position.get(str(item.get("id", "")))
                code_type = item.get("type")
                try:
                    confidence = float(item.get("confidence", 0.0))
                except (TypeError, ValueError):
                    continue
                if i is None or code_type not in CODE_TYPES or confidence < self.confidence_threshold:
                    continue
                result[i] = (code_type, confidence)
                accepted += 1
            run.progress("open_coding", 100.0 * min(start + self.batch_size, len(excerpts)) / len(excerpts),
                         "Classifying codes", classified=accepted)
        logger.info("Assistant classified %d/%d excerpt(s); rest by heuristic", accepted, len(excerpts))
        return result


class GroundedTheoryPipeline(Pipeline):
    purpose = Purpose.GROUNDED
    min_excerpts = 8

    def __init__(
        self,
        assistant: AssistantClient | None = None,
        labeler: ThemeLabeler | None = None,
        classifier: CodeClassifier | None = None,
    ) -> None:
        super().__init__(assistant, labeler)
        if classifier is None:
            classifier = AssistantCodeClassifier(assistant) if assistant is not None else HeuristicCodeClassifier()
        self._classifier = classifier

    # ── Axial coding ──

    def _categories(self, X: np.ndarray, codes: list[tuple[str, float]], seed: int) -> list[tuple[str, list[int]]]:
        cats: list[tuple[str, list[int]]] = []
        for code_type in CODE_TYPES:
            idx = [i for i, (t, _) in enumerate(codes) if t == code_type]
            if not idx:
                continue
            if len(idx) < 2 * SUBCATEGORY_K[0]:
                cats.append((code_type, idx))
                continue
            sel = select_k(X[idx], SUBCATEGORY_K[0], min(SUBCATEGORY_K[1], len(idx) // 2), seed=seed)
            for lab in sorted(set(sel.result.labels.tolist())):
                cats.append((code_type, [idx[j] for j in np.flatnonzero(sel.result.labels == lab)]))
        return cats

    def _fit_bounds(self, X: np.ndarray, cats: list[tuple[str, list[int]]], codes: list[tuple[str, float]],
                    lo: int, hi: int, seed: int) -> list[tuple[str, list[int]]]:
        """Merge the most similar categories above ``hi``; split the largest below ``lo``.

        Merges stay within one code type while any same-type pair remains. A
        cross-type merge takes the majority code type of its members.
        """
        cats = list(cats)
        while len(cats) > hi:
            C = cosine_matrix(np.stack([X[c].mean(axis=0) for _, c in cats]))
            pairs = [(i, j) for i in range(len(cats)) for j in range(i + 1, len(cats))]
            same_type = [(i, j) for i, j in pairs if cats[i][0] == cats[j][0]]
            i, j = max(same_type or pairs, key=lambda p: C[p])
            members = cats[i][1] + cats[j][1]
            code_type = cats[i][0]
            if cats[j][0] != code_type:
                counts = Counter(codes[m][0] for m in members)
                code_type = max((cats[i][0], cats[j][0]), key=lambda t: counts[t])
                logger.debug("Cross-type merge of %s and %s into %s", cats[i][0], cats[j][0], code_type)
            cats[i] = (code_type, members)
            del cats[j]
        tried: set[int] = set()
        while len(cats) < lo:
            order = sorted((k for k in range(len(cats)) if k not in tried and len(cats[k][1]) >= 4),
                           key=lambda k: -len(cats[k][1]))
            if not order:
                break
            k = order[0]
            code_type, members = cats[k]
            res = kmeans(X[members], 2, seed=seed)
            left = [members[m] for m in np.flatnonzero(res.labels == 0)]
            right = [members[m] for m in np.flatnonzero(res.labels == 1)]
            if len(left) < 2 or len(right) < 2:
                tried.add(k)
                continue
            cats[k] = (code_type, left)
            cats.append((code_type, right))
            tried.clear()
        return cats

    # ── Selective coding ──

    def _relationship_graph(self, themes: list[Theme]) -> nx.DiGraph:
        G = nx.DiGraph()
        for t in themes:
            G.add_node(t.id, code_type=t.metrics["code_type"])
        C = cosine_matrix(np.stack([t.centroid for t in themes]))
        for i, a in enumerate(themes):
            for j, b in enumerate(themes):
                if i == j:
                    continue
                ta, tb = a.metrics["code_type"], b.metrics["code_type"]
                rel = PARADIGM_LINKS.get((ta, tb))
                if rel is None and ta == tb and i < j:
                    rel = "bidirectional"
                if rel is None:
                    continue
                sa, sb = set(a.source_ids), set(b.source_ids)
                overlap = len(sa & sb) / len(sa | sb) if sa | sb else 0.0
                weight = 0.5 * max(0.0, float(C[i, j])) + 0.5 * overlap
                if weight < MIN_EDGE_WEIGHT:
                    continue
                G.add_edge(a.id, b.id, relationship=rel, weight=weight)
                if rel == "bidirectional":
                    G.add_edge(b.id, a.id, relationship=rel, weight=weight)
        return G

    def _framework(self, run: RunContext, core: Theme, relationships: list[dict], by_id: dict[str, Theme]) -> str:
        summary = [
            f"{by_id[r['from']].label} -[{r['relationship']}]-> {by_id[r['to']].label}" for r in relationships
        ]
        if self._assistant is not None and run.ai_available():
            prompt = "\n".join([
                f"Core category: {core.label}",
                "Strongest relationships:",
                *[f"- {s}" for s in summary],
                "",
                "Draft a one-paragraph theoretical framework statement as a testable hypothesis.",
                'Return {"statement": "..."}.',
            ])
            try:
                data = self._assistant.generate_json(run, prompt, label="framework")
                statement = str(data.get("statement", "")).strip() if isinstance(data, dict) else ""
                if statement:
                    return statement
            except (BudgetExceeded, ProviderError) as e:
                logger.warning("Framework drafting fell back to template: %s", e)

        def _pick(code_type: str, incoming: bool) -> str | None:
            for r in relationships:
                other = by_id[r["from"] if incoming else r["to"]]
                end = r["to"] if incoming else r["from"]
                if end == core.id and other.metrics["code_type"] == code_type:
                    return other.label
            return None

        parts = [f"'{core.label}' is the central phenomenon"]
        cause = _pick(CAUSAL_CONDITION, incoming=True)
        context = _pick(CONTEXT, incoming=True)
        effect = _pick(CONSEQUENCE, incoming=False)
        if cause:
            parts.append(f"arising from '{cause}'")
        if context:
            parts.append(f"shaped by '{context}'")
        if effect:
            parts.append(f"and leading to '{effect}'")
        return "Hypothesis: " + ", ".join(parts) + "."

    def _execute(self, pinput: PipelineInput, run: RunContext) -> tuple[list[Theme], dict]:
        bounds = pinput.bounds
        X = pinput.matrix

        run.checkpoint("open_coding")
        codes = self._classifier.classify(run, pinput.excerpts)
        type_counts = {t: sum(1 for c, _ in codes if c == t) for t in CODE_TYPES}
        run.progress("open_coding", 100.0, "Codes classified", **type_counts)

        run.checkpoint("axial_coding")
        cats = self._categories(X, codes, run.seed)
        cats = self._fit_bounds(X, cats, codes, bounds.min_constructs, bounds.max_constructs, run.seed)
        themes = []
        for n, (code_type, idx) in enumerate(cats, 1):
            confidence = float(np.mean([codes[i][1] for i in idx]))
            themes.append(build_theme(
                f"category-{n}", idx, pinput, kind="category",
                metrics={"code_type": code_type, "classification_confidence": confidence},
            ))
        self.check_min(themes, bounds.min_constructs, run)
        run.progress("axial_coding", 100.0, f"{len(themes)} categories", categories=len(themes))

        run.checkpoint("selective_coding")
        G = self._relationship_graph(themes)
        pagerank = nx.pagerank(G, alpha=0.85, weight="weight") if G.number_of_nodes() else {}
        max_pr = max(pagerank.values(), default=1.0) or 1.0
        total = len(pinput.excerpts)
        for t in themes:
            pr = pagerank.get(t.id, 0.0)
            coverage = t.size / total
            t.metrics.update({
                "pagerank": pr,
                "coverage": coverage,
                "centrality_score": CENTRALITY_WEIGHT * pr / max_pr + COVERAGE_WEIGHT * coverage,
            })
            t.quality = t.metrics["centrality_score"]
        core = max(themes, key=lambda t: (t.metrics["centrality_score"], t.size))
        for t in themes:
            t.metrics["is_core"] = t is core

        run.checkpoint("labeling")
        self.label_themes(pinput, themes, run)
        by_id = {t.id: t for t in themes}
        relationships = sorted(
            ({"from": a, "to": b, "relationship": d["relationship"], "strength": d["weight"]}
             for a, b, d in G.edges(data=True)),
            key=lambda r: -r["strength"],
        )
        core_rels = [r for r in relationships if core.id in (r["from"], r["to"])][:3]
        statement = self._framework(run, core, core_rels, by_id)

        connected = set(nx.all_neighbors(G, core.id)) if core.id in G else set()
        connected_excerpts = core.size + sum(by_id[c].size for c in connected)
        metrics = {
            "category_count": len(themes),
            "code_type_counts": type_counts,
            "core_category": {"id": core.id, "label": core.label},
            "framework_statement": statement,
            "relationships": relationships,
            "explanatory_power": len(connected) / max(1, len(themes) - 1),
            "variation_accounted": connected_excerpts / total,
            "storyline": " ".join(
                f"{by_id[r['from']].label} {r['relationship']}ly relates to {by_id[r['to']].label}."
                for r in core_rels
            ),
        }
        logger.info("Grounded theory: %d categories, core=%s", len(themes), core.id)
        return themes, metrics
