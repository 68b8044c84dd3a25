"""Purpose router: maps each Purpose to its pipeline."""

from __future__ import annotations

import logging

from thematica.embedding.orchestrator import EmbeddingOrchestrator
from thematica.models import PipelineResult, Purpose
from thematica.pipelines.base import Pipeline, PipelineInput
from thematica.pipelines.concourse import ConcoursePipeline
from thematica.pipelines.grounded import GroundedTheoryPipeline
from thematica.pipelines.saturation import SaturationPipeline
from thematica.pipelines.survey import SurveyPipeline
from thematica.pipelines.synthesis import SynthesisPipeline
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)


class PurposeRouter:
    """Owns one pipeline per purpose.

    Dispatch is an exhaustive branch over the Purpose enum; a purpose with no
    branch fails loudly instead of falling through.
    """

    def __init__(
        self,
        assistant: AssistantClient | None = None,
        embedder: EmbeddingOrchestrator | None = None,
        overrides: dict[Purpose, Pipeline] | None = None,
    ) -> None:
        self._assistant = assistant
        self._embedder = embedder
        self._pipelines: dict[Purpose, Pipeline] = dict(overrides or {})

    def _build(self, purpose: Purpose) -> Pipeline:
        if purpose is Purpose.CONCOURSE:
            return ConcoursePipeline(assistant=self._assistant, embedder=self._embedder)
        elif purpose is Purpose.SURVEY:
            return SurveyPipeline(assistant=self._assistant)
        elif purpose is Purpose.SATURATION:
            return SaturationPipeline(assistant=self._assistant)
        elif purpose is Purpose.SYNTHESIS:
            return SynthesisPipeline(assistant=self._assistant)
        elif purpose is Purpose.GROUNDED:
            return GroundedTheoryPipeline(assistant=self._assistant)
        raise AssertionError(f"unhandled purpose: {purpose!r}")

    def pipeline_for(self, purpose: Purpose) -> Pipeline:
        if purpose not in self._pipelines:
            self._pipelines[purpose] = self._build(purpose)
        return self._pipelines[purpose]

    def run(self, purpose: Purpose, pinput: PipelineInput, run: RunContext) -> PipelineResult:
        pipeline = self.pipeline_for(purpose)
        logger.debug("Routing %s run %s to %s", purpose.value, run.run_id, type(pipeline).__name__)
        return pipeline.run(pinput, run)
