"""Survey-construct validation: coherent, reliable, discriminable constructs."""

from __future__ import annotations

import logging
import math

import numpy as np

from thematica.clustering.hierarchical import agglomerate
from thematica.clustering.metrics import cosine_matrix, internal_coherence, item_total_correlations
from thematica.errors import QualityGateFailure
from thematica.models import Purpose, Theme
from thematica.pipelines.base import Pipeline, PipelineInput, build_theme
from thematica.pipelines.labeling import ThemeLabeler
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)

ICI_THRESHOLD = 0.70
ITEM_TOTAL_MIN = 0.30
RELIABILITY_LEVELS = (
    (0.9, "excellent"),
    (0.8, "good"),
    (0.7, "acceptable"),
    (0.6, "questionable"),
    (0.5, "poor"),
)


def reliability_level(ici: float) -> str:
    for cutoff, name in RELIABILITY_LEVELS:
        if ici >= cutoff:
            return name
    return "unacceptable"


def suggest_scale(n_items: int) -> str:
    if n_items <= 3:
        return "visual-analog"
    if n_items <= 6:
        return "likert-7"
    return "likert-5"


def construct_statistics(members: np.ndarray) -> dict:
    """Simulated factor loadings, AVE, composite reliability and item statistics.

    Loadings are each item's cosine to the construct centroid.
    """
    centroid = members.mean(axis=0)
    loadings = np.clip(cosine_matrix(members, centroid[None, :])[:, 0], -1.0, 1.0)
    ave = float((loadings ** 2).mean())
    s = float(loadings.sum())
    error = float((1.0 - loadings ** 2).sum())
    cr = s * s / (s * s + error) if (s * s + error) > 0 else 0.0
    item_total = item_total_correlations(members)
    if len(members) > 1:
        S = cosine_matrix(members)
        avg_inter_item = float(S[np.triu_indices(len(members), k=1)].mean())
    else:
        avg_inter_item = 0.0
    ici = internal_coherence(members)
    return {
        "ici": ici,
        "loadings": [round(float(x), 4) for x in loadings],
        "ave": ave,
        "composite_reliability": cr,
        "item_total_correlations": [round(float(x), 4) for x in item_total],
        "avg_inter_item_correlation": avg_inter_item,
        "construct_validity": float((item_total > ITEM_TOTAL_MIN).mean()) if len(members) > 1 else 0.0,
        "reliability_level": reliability_level(ici),
        "suggested_scale": suggest_scale(len(members)),
        "item_count": int(len(members)),
    }


class SurveyPipeline(Pipeline):
    """ICI-gated agglomeration with a Fornell-Larcker discriminant validity check."""

    purpose = Purpose.SURVEY
    min_excerpts = 16

    def __init__(
        self,
        assistant: AssistantClient | None = None,
        labeler: ThemeLabeler | None = None,
        ici_threshold: float = ICI_THRESHOLD,
        check_discriminant: bool = True,
    ) -> None:
        super().__init__(assistant, labeler)
        self.ici_threshold = ici_threshold
        self.check_discriminant = check_discriminant

    def _gate(self, theme: Theme, siblings: list[Theme]) -> None:
        stats = theme.metrics
        if stats["ici"] < self.ici_threshold:
            raise QualityGateFailure(
                f"{theme.id} ICI {stats['ici']:.3f} < {self.ici_threshold}",
                construct_id=theme.id, metric="ici", value=stats["ici"],
            )
        if not self.check_discriminant or not siblings:
            return
        sims = cosine_matrix(theme.centroid[None, :], np.stack([s.centroid for s in siblings]))[0]
        max_shared = float(sims.max())
        stats["max_sibling_similarity"] = max_shared
        if math.sqrt(stats["ave"]) <= max_shared:
            raise QualityGateFailure(
                f"{theme.id} fails discriminant validity: sqrt(AVE) {math.sqrt(stats['ave']):.3f} "
                f"<= {max_shared:.3f}",
                construct_id=theme.id, metric="discriminant_validity", value=max_shared,
            )

    def _execute(self, pinput: PipelineInput, run: RunContext) -> tuple[list[Theme], dict]:
        bounds = pinput.bounds
        X = pinput.matrix
        target = min(max(bounds.target, bounds.min_constructs), bounds.max_constructs)

        run.checkpoint("clustering")
        run.progress("clustering", 0.0, "Hierarchical merging")
        groups, info = agglomerate(X, target, internal_coherence, min_score=self.ici_threshold)
        run.progress("clustering", 60.0, f"{len(groups)} group(s)", merges=info["merges"])

        run.checkpoint("quality_gates")
        candidates = []
        for i, idx in enumerate(groups):
            stats = construct_statistics(X[idx])
            candidates.append(build_theme(
                f"construct-{i + 1}", idx, pinput, quality=stats["ici"], kind="construct", metrics=stats,
            ))

        passed: list[Theme] = []
        rejected: list[dict] = []
        for theme in candidates:
            siblings = [t for t in candidates if t is not theme and t.size > 1]
            try:
                self._gate(theme, siblings)
            except QualityGateFailure as e:
                logger.debug("Dropped construct: %s", e)
                rejected.append({"id": theme.id, "metric": e.metric, "value": e.value})
                continue
            passed.append(theme)

        if not passed:
            run.warn("no construct passed the quality gates; returning the best available set")
            passed = sorted(candidates, key=lambda t: -t.quality)[: bounds.max_constructs]

        themes = self.enforce_max(passed, bounds.max_constructs, run)
        self.check_min(themes, bounds.min_constructs, run)
        run.progress("quality_gates", 100.0, f"{len(themes)} construct(s) passed", rejected=len(rejected))

        metrics = {
            "construct_count": len(themes),
            "merges_performed": info["merges"],
            "early_stop": info["early_stop"],
            "ici_threshold": self.ici_threshold,
            "rejected": rejected,
            "min_ici": min((t.metrics["ici"] for t in themes), default=0.0),
            "mean_composite_reliability": float(np.mean([t.metrics["composite_reliability"] for t in themes]))
            if themes else 0.0,
        }
        logger.info("Survey: %d construct(s) kept, %d rejected", len(themes), len(rejected))
        return themes, metrics
