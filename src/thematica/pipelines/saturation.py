"""Qualitative saturation detection.

Sources are folded in one at a time in ranked order, recording which themes
each contributes for the first time. Three complementary estimates follow:

- a Beta posterior over the per-mention novelty rate in the trailing window,
- a power-law fit of new themes per source, predicting the saturation point,
- a permutation test measuring how much the verdict depends on source order.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from scipy import stats

from thematica import config
from thematica.clustering.diversity import DIVERSITY_THRESHOLD, merge_near_duplicates
from thematica.clustering.kmeans import select_k
from thematica.models import Purpose, Theme
from thematica.pipelines.base import Pipeline, PipelineInput, build_theme, groups_from_labels
from thematica.pipelines.labeling import ThemeLabeler
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)

POSTERIOR_THRESHOLD = 0.8
LOW_NOVELTY_RATE = 0.2
POWER_LAW_MIN_EXPONENT = 0.5
POWER_LAW_MIN_R2 = 0.7
ROBUSTNESS_THRESHOLD = 0.75
# New themes per source below which the fitted curve counts as saturated
SATURATION_NEW_THEMES = 0.5
# A source contributing more new themes than this counts as novel in the sequential update
NOVEL_SOURCE_MIN_THEMES = 1


def emergence_curve(order: list[str], themes_by_source: dict[str, set[int]]) -> list[dict]:
    seen: set[int] = set()
    curve = []
    for sid in order:
        mentioned = themes_by_source.get(sid, set())
        new = mentioned - seen
        seen |= mentioned
        curve.append({
            "source_id": sid,
            "mentioned": len(mentioned),
            "new_themes": len(new),
            "cumulative_themes": len(seen),
            "percent_new": round(100.0 * len(new) / len(mentioned), 2) if mentioned else 0.0,
        })
    return curve


def novelty_posterior(curve: list[dict], low_rate: float = LOW_NOVELTY_RATE) -> dict:
    """Beta(1, 1) prior updated with the trailing max(3, n // 2) sources.

    Successes are first-time theme mentions, failures are repeat mentions.
    """
    window = curve[-max(3, len(curve) // 2):]
    new = sum(c["new_themes"] for c in window)
    repeat = sum(c["mentioned"] - c["new_themes"] for c in window)
    a, b = 1.0 + new, 1.0 + repeat
    return {
        "alpha": a,
        "beta": b,
        "window": len(window),
        "posterior_mean": a / (a + b),
        "p_low_novelty": float(stats.beta.cdf(low_rate, a, b)),
        "credible_interval": [float(x) for x in stats.beta.interval(0.95, a, b)],
    }


def sequential_saturation_source(
    curve: list[dict], low_rate: float = LOW_NOVELTY_RATE, threshold: float = POSTERIOR_THRESHOLD,
) -> int | None:
    """First 1-based source index at which P(novelty < low_rate) clears ``threshold``.

    Beta(1, 1) prior updated one source at a time: a source is a success when
    it adds more than NOVEL_SOURCE_MIN_THEMES new themes, otherwise a failure.
    """
    a = b = 1.0
    for i, point in enumerate(curve, 1):
        if point["new_themes"] > NOVEL_SOURCE_MIN_THEMES:
            a += 1
        else:
            b += 1
        if stats.beta.cdf(low_rate, a, b) > threshold:
            return i
    return None


def fit_power_law(new_counts: list[int]) -> dict | None:
    """Fit new(x) = a * x^-b by least squares in log-log space."""
    if len(new_counts) < 3:
        return None
    x = np.log(np.arange(1, len(new_counts) + 1, dtype=float))
    y = np.log(np.maximum(np.asarray(new_counts, dtype=float), 0.1))
    if np.ptp(y) == 0:
        # Flat curve: no decay to fit
        return {"a": float(math.exp(y[0])), "b": 0.0, "r_squared": 0.0,
                "predicted_saturation_source": None, "saturating": False}
    fit = stats.linregress(x, y)
    r2 = float(fit.rvalue ** 2)
    a, b = float(math.exp(fit.intercept)), float(-fit.slope)
    saturation_point = None
    if b > 0:
        saturation_point = max(1.0, (a / SATURATION_NEW_THEMES) ** (1.0 / b))
    return {
        "a": a,
        "b": b,
        "r_squared": r2,
        "predicted_saturation_source": saturation_point,
        "saturating": b > POWER_LAW_MIN_EXPONENT and r2 > POWER_LAW_MIN_R2,
    }


def recommendation(verdict: str, confidence: float) -> str:
    if verdict == "reached" and confidence >= 0.75:
        return "HIGH CONFIDENCE SATURATION: additional sources are unlikely to yield new themes."
    if verdict == "reached":
        return "MODERATE SATURATION: few new themes are emerging; consider a small confirmatory sample."
    if verdict == "approaching":
        return "WEAK SATURATION: new themes are tapering off; add more sources before concluding."
    return "NO SATURATION: new themes are still emerging; continue collecting sources."


class SaturationPipeline(Pipeline):
    purpose = Purpose.SATURATION
    min_excerpts = 5
    min_sources = 3

    def __init__(
        self,
        assistant: AssistantClient | None = None,
        labeler: ThemeLabeler | None = None,
        permutations: int | None = None,
        posterior_threshold: float = POSTERIOR_THRESHOLD,
        diversity_threshold: float = DIVERSITY_THRESHOLD,
    ) -> None:
        super().__init__(assistant, labeler)
        self.permutations = config.PERMUTATION_COUNT if permutations is None else permutations
        self.posterior_threshold = posterior_threshold
        self.diversity_threshold = diversity_threshold

    def _robustness(self, order: list[str], themes_by_source: dict[str, set[int]], seed: int) -> float:
        """Share of random source orders whose posterior also clears the threshold."""
        if self.permutations <= 0:
            return 1.0
        rng = np.random.default_rng(seed)
        agree = 0
        for _ in range(self.permutations):
            perm = [order[i] for i in rng.permutation(len(order))]
            post = novelty_posterior(emergence_curve(perm, themes_by_source))
            if post["p_low_novelty"] > self.posterior_threshold:
                agree += 1
        return agree / self.permutations

    def _execute(self, pinput: PipelineInput, run: RunContext) -> tuple[list[Theme], dict]:
        bounds = pinput.bounds
        X = pinput.matrix

        run.checkpoint("clustering")
        selection = select_k(X, bounds.k_min, bounds.k_max, seed=run.seed)
        labels, merges = merge_near_duplicates(X, selection.result.labels, threshold=self.diversity_threshold)
        groups = groups_from_labels(labels)
        run.progress("clustering", 100.0, f"{len(groups)} theme(s)", themes=len(groups))

        run.checkpoint("emergence")
        order = pinput.source_order()
        themes_by_source: dict[str, set[int]] = {sid: set() for sid in order}
        for i, lab in enumerate(labels):
            themes_by_source[pinput.excerpts[i].source_id].add(int(lab))
        curve = emergence_curve(order, themes_by_source)
        first_seen = {}
        for step, sid in enumerate(order, 1):
            for lab in themes_by_source[sid]:
                first_seen.setdefault(lab, step)

        posterior = novelty_posterior(curve)
        power_law = fit_power_law([c["new_themes"] for c in curve])
        run.progress("saturation", 50.0, "Posterior computed", p_low_novelty=round(posterior["p_low_novelty"], 3))

        robustness: float | None = None
        if run.checkpoint("robustness"):
            robustness = self._robustness(order, themes_by_source, run.seed)
            run.progress("saturation", 100.0, "Permutation check complete", robustness=round(robustness, 3))
        else:
            run.warn("deadline reached; permutation robustness check skipped")

        p = posterior["p_low_novelty"]
        if p > self.posterior_threshold:
            verdict = "reached"
        elif p > 0.5 or (power_law is not None and power_law["saturating"]):
            verdict = "approaching"
        else:
            verdict = "not_reached"
        r2 = power_law["r_squared"] if power_law else 0.0
        confidence = 0.5 * p + 0.3 * (robustness or 0.0) + 0.2 * max(0.0, r2)

        themes = []
        for i, idx in enumerate(groups):
            lab = int(labels[idx[0]])
            frequency = sum(1 for sid in order if lab in themes_by_source[sid])
            themes.append(build_theme(
                f"theme-{i + 1}", idx, pinput,
                metrics={"first_seen_source": first_seen.get(lab), "source_frequency": frequency},
            ))
        themes = self.enforce_max(themes, bounds.max_constructs, run)
        self.check_min(themes, bounds.min_constructs, run)

        metrics = {
            "theme_count": len(themes),
            "k_selection": {"k": selection.k, "reason": selection.reason},
            "diversity_merges": len(merges),
            "emergence_curve": curve,
            "posterior": posterior,
            "power_law": power_law,
            "bayesian_saturation_source": sequential_saturation_source(curve, threshold=self.posterior_threshold),
            "robustness": robustness,
            "order_dependent": None if robustness is None else robustness < ROBUSTNESS_THRESHOLD,
            "verdict": verdict,
            "confidence": confidence,
            "recommendation": recommendation(verdict, confidence),
        }
        logger.info("Saturation: verdict=%s p=%.3f robustness=%s", verdict, p, robustness)
        return themes, metrics
