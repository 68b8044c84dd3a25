"""Core data types: sources, excerpts, embeddings, themes and pipeline results."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import numpy as np


class Purpose(str, Enum):
    """The closed set of research purposes the engine can serve."""

    CONCOURSE = "concourse"
    SURVEY = "survey"
    SATURATION = "saturation"
    SYNTHESIS = "synthesis"
    GROUNDED = "grounded"


def to_jsonable(value: Any) -> Any:
    """Convert numpy scalars and arrays inside nested metrics to plain Python."""
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class SourceText:
    """One ranked, deduplicated text supplied by the source collector."""

    id: str
    title: str = ""
    text: str = ""
    source_type: str = "paper"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Embedding:
    """A validated, read-only embedding vector.

    Build these with ``create_embedding_with_norm`` only; the vector is
    marked non-writeable so the instance can be shared instead of copied.
    """

    vector: np.ndarray
    norm: float
    model: str
    dimensions: int

    def unit(self) -> np.ndarray:
        return self.vector / self.norm


@dataclass(frozen=True)
class Excerpt:
    """Quoted source text with a reference to its originating document."""

    id: str
    text: str
    source_id: str
    label: str = ""
    embedding: Embedding | None = None

    def with_embedding(self, embedding: Embedding | None) -> Excerpt:
        return replace(self, embedding=embedding)


@dataclass(frozen=True)
class ProvenanceLink:
    """document -> excerpt -> theme."""

    source_id: str
    excerpt_id: str
    theme_id: str
    quote: str = ""

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "excerpt_id": self.excerpt_id,
            "theme_id": self.theme_id,
            "quote": self.quote,
        }


@dataclass
class Theme:
    """A named construct: member excerpts, centroid, label and quality score."""

    id: str
    label: str
    excerpt_ids: list[str]
    centroid: np.ndarray
    quality: float = 0.0
    source_ids: list[str] = field(default_factory=list)
    description: str = ""
    kind: str = "theme"
    metrics: dict[str, Any] = field(default_factory=dict)
    provenance: list[ProvenanceLink] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.excerpt_ids)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "kind": self.kind,
            "description": self.description,
            "excerpt_ids": list(self.excerpt_ids),
            "source_ids": list(self.source_ids),
            "centroid": [float(x) for x in self.centroid],
            "quality": float(self.quality),
            "metrics": to_jsonable(self.metrics),
            "provenance": [p.to_dict() for p in self.provenance],
        }

    @classmethod
    def from_dict(cls, data: dict) -> Theme:
        return cls(
            id=data["id"],
            label=data["label"],
            kind=data.get("kind", "theme"),
            description=data.get("description", ""),
            excerpt_ids=list(data["excerpt_ids"]),
            source_ids=list(data.get("source_ids", [])),
            centroid=np.asarray(data["centroid"], dtype=np.float64),
            quality=float(data.get("quality", 0.0)),
            metrics=dict(data.get("metrics", {})),
            provenance=[ProvenanceLink(**p) for p in data.get("provenance", [])],
        )


@dataclass
class BudgetReport:
    ai_call_budget: int
    ai_calls_used: int
    deadline_seconds: float
    elapsed_seconds: float
    truncated: bool = False
    truncation_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "ai_call_budget": self.ai_call_budget,
            "ai_calls_used": self.ai_calls_used,
            "ai_calls_remaining": max(0, self.ai_call_budget - self.ai_calls_used),
            "deadline_seconds": self.deadline_seconds,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "truncated": self.truncated,
            "truncation_reason": self.truncation_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BudgetReport:
        return cls(
            ai_call_budget=data["ai_call_budget"],
            ai_calls_used=data["ai_calls_used"],
            deadline_seconds=data["deadline_seconds"],
            elapsed_seconds=data["elapsed_seconds"],
            truncated=data.get("truncated", False),
            truncation_reason=data.get("truncation_reason"),
        )


@dataclass
class PipelineResult:
    """Output of one pipeline run."""

    purpose: Purpose
    themes: list[Theme]
    metrics: dict[str, Any]
    budget: BudgetReport
    warnings: list[str] = field(default_factory=list)
    run_id: str = ""
    cached: bool = False

    @property
    def truncated(self) -> bool:
        return self.budget.truncated

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "purpose": self.purpose.value,
            "themes": [t.to_dict() for t in self.themes],
            "metrics": to_jsonable(self.metrics),
            "budget": self.budget.to_dict(),
            "warnings": list(self.warnings),
            "truncated": self.truncated,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PipelineResult:
        return cls(
            run_id=data.get("run_id", ""),
            purpose=Purpose(data["purpose"]),
            themes=[Theme.from_dict(t) for t in data["themes"]],
            metrics=dict(data.get("metrics", {})),
            budget=BudgetReport.from_dict(data["budget"]),
            warnings=list(data.get("warnings", [])),
            cached=data.get("cached", False),
        )
