"""Exploratory concourse construction: many low-redundancy constructs."""

from __future__ import annotations

import logging
import re
from typing import Protocol

from thematica.clustering.bisecting import bisect_clusters
from thematica.clustering.diversity import DIVERSITY_THRESHOLD, diversity_metrics, merge_near_duplicates
from thematica.clustering.kmeans import select_k
from thematica.embedding.orchestrator import EmbeddingOrchestrator, cosine_similarity
from thematica.errors import BudgetExceeded, ProviderError
from thematica.models import Excerpt, Purpose, Theme
from thematica.pipelines.base import Pipeline, PipelineInput, build_theme, groups_from_labels
from thematica.pipelines.labeling import ThemeLabeler
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)

SPLIT_BATCH_SIZE = 10
MAX_SPLITS_PER_EXCERPT = 5
GROUNDING_THRESHOLD = 0.65
# Enrichment only runs when the excerpt count is below this share of the target
ENRICHMENT_TRIGGER = 0.8

_WS_RE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().lower()


class AtomicSplitter(Protocol):
    def split(self, run: RunContext, excerpts: list[Excerpt]) -> tuple[list[Excerpt], dict]:
        """Return the (possibly expanded) excerpt list and split statistics."""
        ...


class PassthroughSplitter:
    """Keeps every excerpt as-is."""

    def split(self, run: RunContext, excerpts: list[Excerpt]) -> tuple[list[Excerpt], dict]:
        return list(excerpts), {"batches": 0, "split": 0, "added": 0, "rejected": 0}


class AssistantSplitter:
    """Splits compound excerpts into atomic statements via the assistant.

    A statement is kept only if its quote appears verbatim in the original
    excerpt and its embedding stays within ``grounding_threshold`` cosine of
    the original. Any failed batch keeps its original excerpts.
    """

    SYSTEM = (
        "You decompose qualitative research excerpts into atomic statements. "
        "Only use wording that appears in the excerpt. Respond with JSON only."
    )

    def __init__(
        self,
        assistant: AssistantClient,
        embedder: EmbeddingOrchestrator,
        grounding_threshold: float = GROUNDING_THRESHOLD,
        batch_size: int = SPLIT_BATCH_SIZE,
        max_splits: int = MAX_SPLITS_PER_EXCERPT,
    ) -> None:
        self._assistant = assistant
        self._embedder = embedder
        self.grounding_threshold = grounding_threshold
        self.batch_size = batch_size
        self.max_splits = max_splits

    def _prompt(self, batch: list[Excerpt]) -> str:
        lines = [
            "Split each excerpt that expresses more than one idea into at most "
            f"{self.max_splits} atomic statements. Leave single-idea excerpts out.",
            'Return {"splits": [{"originalCodeId": "<id>", "atomicStatements": '
            '[{"label": "...", "description": "...", "groundingExcerpt": "<verbatim quote>"}]}]}.',
            "",
        ]
        for e in batch:
            lines.append(f"[{e.id}] {e.text}")
        return "\n".join(lines)

    def _validate(self, original: Excerpt, statements: list[dict]) -> list[Excerpt]:
        """Keep grounded statements; each becomes an excerpt quoting the original."""
        candidates = []
        source_text = _normalize(original.text)
        for stmt in statements[: self.max_splits]:
            if not isinstance(stmt, dict):
                continue
            quote = str(stmt.get("groundingExcerpt", "")).strip()
            label = str(stmt.get("label", "")).strip()
            if not quote or _normalize(quote) not in source_text:
                logger.debug("Rejected ungrounded statement for %s: %r", original.id, quote[:80])
                continue
            summary = f"{label}. {stmt.get('description', '')}".strip(". ")
            candidates.append((quote, label, summary or quote))
        if len(candidates) < 2:
            return []
        embeddings = self._embedder.generate_batch([c[2] for c in candidates])
        kept = []
        for i, ((quote, label, _), emb) in enumerate(zip(candidates, embeddings)):
            if emb is None or cosine_similarity(emb, original.embedding) < self.grounding_threshold:
                continue
            kept.append(Excerpt(
                id=f"{original.id}#{i + 1}",
                text=quote,
                source_id=original.source_id,
                label=label,
                embedding=emb,
            ))
        return kept if len(kept) >= 2 else []

    def split(self, run: RunContext, excerpts: list[Excerpt]) -> tuple[list[Excerpt], dict]:
        stats = {"batches": 0, "split": 0, "added": 0, "rejected": 0}
        replacements: dict[str, list[Excerpt]] = {}
        batches = [excerpts[i : i + self.batch_size] for i in range(0, len(excerpts), self.batch_size)]
        for n, batch in enumerate(batches, 1):
            run.checkpoint("enrichment")
            if not run.ai_available():
                run.mark_truncated("ai_call_budget" if run.budget.remaining == 0 else "deadline")
                break
            try:
                data = self._assistant.generate_json(run, self._prompt(batch), self.SYSTEM, label="atomic-split")
            except BudgetExceeded:
                break
            except ProviderError as e:
                logger.warning("Atomic splitting batch %d failed, keeping originals: %s", n, e)
                continue
            stats["batches"] += 1
            by_id = {e.id: e for e in batch}
            for item in data.get("splits", []) if isinstance(data, dict) else []:
                if not isinstance(item, dict):
                    continue
                original = by_id.get(str(item.get("originalCodeId", "")))
                if original is None or original.id in replacements:
                    continue
                statements = item.get("atomicStatements") or []
                try:
                    kept = self._validate(original, statements)
                except ProviderError as e:
                    logger.warning("Embedding atomic statements for %s failed: %s", original.id, e)
                    kept = []
                if kept:
                    replacements[original.id] = kept
                    stats["split"] += 1
                    stats["added"] += len(kept) - 1
                else:
                    stats["rejected"] += 1
            run.progress("enrichment", 100.0 * n / len(batches), f"Split batch {n}/{len(batches)}",
                         split=stats["split"])

        out: list[Excerpt] = []
        for e in excerpts:
            out.extend(replacements.get(e.id, [e]))
        logger.info("Atomic splitting: %d excerpt(s) split, %d added, %d rejected",
                    stats["split"], stats["added"], stats["rejected"])
        return out, stats


class ConcoursePipeline(Pipeline):
    """k-means++ with adaptive k, bisecting to widen coverage, then near-duplicate merging."""

    purpose = Purpose.CONCOURSE
    min_excerpts = 10

    def __init__(
        self,
        assistant: AssistantClient | None = None,
        embedder: EmbeddingOrchestrator | None = None,
        labeler: ThemeLabeler | None = None,
        splitter: AtomicSplitter | None = None,
        diversity_threshold: float = DIVERSITY_THRESHOLD,
        bisect_tolerance: float = 1.0,
    ) -> None:
        super().__init__(assistant, labeler)
        if splitter is None and assistant is not None and embedder is not None:
            splitter = AssistantSplitter(assistant, embedder)
        self._splitter = splitter or PassthroughSplitter()
        self.diversity_threshold = diversity_threshold
        self.bisect_tolerance = bisect_tolerance

    def _execute(self, pinput: PipelineInput, run: RunContext) -> tuple[list[Theme], dict]:
        bounds = pinput.bounds
        metrics: dict = {}

        run.checkpoint("enrichment")
        if len(pinput.excerpts) < bounds.target * ENRICHMENT_TRIGGER and run.ai_available():
            excerpts, split_stats = self._splitter.split(run, pinput.excerpts)
            pinput = PipelineInput(excerpts=excerpts, sources=pinput.sources, bounds=bounds, options=pinput.options)
        else:
            split_stats = {"batches": 0, "split": 0, "added": 0, "rejected": 0, "skipped": True}
        metrics["enrichment"] = split_stats
        X = pinput.matrix

        run.checkpoint("clustering")
        run.progress("clustering", 0.0, "Selecting k")
        selection = select_k(X, bounds.k_min, bounds.k_max, seed=run.seed)
        labels = selection.result.labels
        metrics["k_selection"] = {
            "k": selection.k,
            "elbow_k": selection.elbow_k,
            "score_k": selection.score_k,
            "reason": selection.reason,
            "candidates": selection.candidates,
        }
        run.progress("clustering", 40.0, f"k={selection.k}", k=selection.k)

        in_time = run.checkpoint("bisecting")
        n_clusters = len(set(labels.tolist()))
        if in_time and n_clusters < bounds.target:
            labels, bisect_info = bisect_clusters(
                X, labels, target=bounds.target, seed=run.seed, tolerance=self.bisect_tolerance,
            )
        else:
            bisect_info = {"accepted": 0, "rejected": 0, "skipped": not in_time}
        metrics["bisecting"] = bisect_info
        run.progress("clustering", 70.0, "Bisecting complete", clusters=len(set(labels.tolist())))

        run.checkpoint("diversity")
        labels, merges = merge_near_duplicates(X, labels, threshold=self.diversity_threshold)
        metrics["diversity_merges"] = len(merges)
        run.progress("clustering", 90.0, "Near-duplicates merged", merges=len(merges))

        themes = [
            build_theme(f"construct-{i + 1}", idx, pinput, kind="construct")
            for i, idx in enumerate(groups_from_labels(labels))
        ]
        for t in themes:
            t.metrics["source_count"] = len(t.source_ids)
        themes = self.enforce_max(themes, bounds.max_constructs, run)
        self.check_min(themes, bounds.min_constructs, run)

        kept = {x for t in themes for x in t.excerpt_ids}
        keep_idx = [i for i, e in enumerate(pinput.excerpts) if e.id in kept]
        final_labels = labels[keep_idx]
        metrics["diversity"] = diversity_metrics(
            X[keep_idx], final_labels, [pinput.excerpts[i].source_id for i in keep_idx],
            threshold=self.diversity_threshold, all_sources=pinput.source_ids,
        )
        metrics["construct_count"] = len(themes)
        logger.info(
            "Concourse: %d construct(s), max pairwise similarity %.3f",
            len(themes), metrics["diversity"]["max_pairwise_similarity"],
        )
        return themes, metrics
