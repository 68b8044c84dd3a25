"""Shared pipeline contract: input bundle, theme assembly and result packaging."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from thematica.clustering.metrics import cohesion, normalize_rows
from thematica.config import PurposeBounds
from thematica.errors import InputError
from thematica.models import Excerpt, PipelineResult, ProvenanceLink, Purpose, SourceText, Theme
from thematica.pipelines.labeling import ThemeLabeler, select_labeler
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)


@dataclass
class PipelineInput:
    """Excerpts with embeddings, in the source collector's ranked order."""

    excerpts: list[Excerpt]
    sources: list[SourceText]
    bounds: PurposeBounds
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = [e.id for e in self.excerpts if e.embedding is None]
        if missing:
            raise InputError(f"{len(missing)} excerpt(s) have no embedding, e.g. {missing[:3]}")
        self._matrix = (
            normalize_rows(np.stack([e.embedding.vector for e in self.excerpts]))
            if self.excerpts else np.zeros((0, 0))
        )

    @property
    def matrix(self) -> np.ndarray:
        """Unit-normalised embedding rows, aligned with ``excerpts``."""
        return self._matrix

    @property
    def source_ids(self) -> list[str]:
        return [e.source_id for e in self.excerpts]

    def source_order(self) -> list[str]:
        """Source ids in ranked order; sources with no excerpts are skipped."""
        present = {e.source_id for e in self.excerpts}
        ordered = [s.id for s in self.sources if s.id in present]
        ordered.extend(sorted(present.difference(ordered)))
        return ordered


def build_theme(
    theme_id: str,
    indices: Sequence[int],
    pinput: PipelineInput,
    label: str = "",
    description: str = "",
    quality: float | None = None,
    kind: str = "theme",
    metrics: dict[str, Any] | None = None,
) -> Theme:
    """Assemble a Theme with centroid, sources and the document -> excerpt -> theme chain."""
    idx = list(indices)
    X = pinput.matrix
    members = [pinput.excerpts[i] for i in idx]
    source_ids = list(dict.fromkeys(e.source_id for e in members))
    return Theme(
        id=theme_id,
        label=label,
        description=description,
        excerpt_ids=[e.id for e in members],
        source_ids=source_ids,
        centroid=X[idx].mean(axis=0),
        quality=cohesion(X, idx) if quality is None else float(quality),
        kind=kind,
        metrics=dict(metrics or {}),
        provenance=[
            ProvenanceLink(source_id=e.source_id, excerpt_id=e.id, theme_id=theme_id, quote=e.text[:200])
            for e in members
        ],
    )


def groups_from_labels(labels: np.ndarray) -> list[list[int]]:
    groups: dict[int, list[int]] = {}
    for i, lab in enumerate(labels):
        groups.setdefault(int(lab), []).append(i)
    return [groups[k] for k in sorted(groups)]


class Pipeline:
    """Base for the purpose-specific pipelines.

    Subclasses implement ``_execute``; ``run`` validates input, labels the
    resulting themes and packages the result with the run's budget report.
    """

    purpose: Purpose
    min_excerpts: int = 2
    min_sources: int = 1

    def __init__(self, assistant: AssistantClient | None = None, labeler: ThemeLabeler | None = None) -> None:
        self._assistant = assistant
        self._labeler = labeler

    def validate(self, pinput: PipelineInput) -> None:
        if not pinput.excerpts:
            raise InputError("no excerpts supplied")
        if len(pinput.excerpts) < self.min_excerpts:
            raise InputError(
                f"{self.purpose.value} needs at least {self.min_excerpts} excerpts, got {len(pinput.excerpts)}"
            )
        n_sources = len({e.source_id for e in pinput.excerpts})
        if n_sources < self.min_sources:
            raise InputError(f"{self.purpose.value} needs at least {self.min_sources} sources, got {n_sources}")
        ids = [e.id for e in pinput.excerpts]
        if len(set(ids)) != len(ids):
            raise InputError("excerpt ids must be unique")

    def run(self, pinput: PipelineInput, run: RunContext) -> PipelineResult:
        self.validate(pinput)
        logger.info(
            "Pipeline %s: %d excerpt(s) from %d source(s)",
            self.purpose.value, len(pinput.excerpts), len({e.source_id for e in pinput.excerpts}),
        )
        themes, metrics = self._execute(pinput, run)
        run.checkpoint("labeling")
        self.label_themes(pinput, themes, run)
        run.progress("complete", 100.0, f"{len(themes)} theme(s)", themes=len(themes))
        return PipelineResult(
            run_id=run.run_id,
            purpose=self.purpose,
            themes=themes,
            metrics=metrics,
            budget=run.budget_report(),
            warnings=list(run.warnings),
        )

    def _execute(self, pinput: PipelineInput, run: RunContext) -> tuple[list[Theme], dict]:
        raise NotImplementedError

    def label_themes(self, pinput: PipelineInput, themes: list[Theme], run: RunContext) -> None:
        """Fill in labels for themes that do not have one yet."""
        pending = [t for t in themes if not t.label]
        if not pending:
            return
        by_id = {e.id: e for e in pinput.excerpts}
        groups = [[by_id[x].text for x in t.excerpt_ids if x in by_id] for t in pending]
        labeler = self._labeler or select_labeler(run, self._assistant)
        for theme, (label, description) in zip(pending, labeler.label(run, groups)):
            theme.label = label
            theme.description = theme.description or description

    def enforce_max(self, themes: list[Theme], max_n: int, run: RunContext) -> list[Theme]:
        if len(themes) <= max_n:
            return themes
        run.warn(f"{len(themes)} themes exceed the maximum of {max_n}; keeping the highest quality")
        keep = sorted(themes, key=lambda t: -t.quality)[:max_n]
        keep_ids = {t.id for t in keep}
        return [t for t in themes if t.id in keep_ids]

    def check_min(self, themes: list[Theme], min_n: int, run: RunContext) -> None:
        if len(themes) < min_n:
            run.warn(f"only {len(themes)} theme(s) found; the expected minimum is {min_n}")
