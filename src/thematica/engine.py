"""Extraction engine: embeddings -> semantic cache -> purpose router, behind the bulkhead."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import numpy as np

from thematica import config
from thematica.config import PurposeBounds, purpose_bounds
from thematica.embedding.orchestrator import EmbeddingOrchestrator
from thematica.errors import InputError
from thematica.models import Embedding, Excerpt, PipelineResult, Purpose, SourceText
from thematica.pipelines.base import PipelineInput
from thematica.pipelines.router import PurposeRouter
from thematica.providers.assistant import AssistantClient
from thematica.providers.provider import GeminiProvider, create_embedding_provider
from thematica.resilience.bulkhead import Bulkhead
from thematica.resilience.retry import RetryPolicy, execute_with_retry
from thematica.run import CancellationToken, RunContext
from thematica.storage.semantic_cache import SemanticCache
from thematica.storage.vector_store import CacheVectorStore

logger = logging.getLogger(__name__)


@dataclass
class ExtractionRequest:
    """Sources and excerpts from the upstream collector, plus the research purpose."""

    purpose: Purpose
    sources: list[SourceText]
    excerpts: list[Excerpt]
    options: dict[str, Any] = field(default_factory=dict)
    use_cache: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> ExtractionRequest:
        """Build a request from plain JSON.

        Expected shape::

            {"purpose": "survey",
             "sources": [{"id", "title", "text", "source_type", "metadata"}],
             "excerpts": [{"id", "text", "source_id", "label"}],
             "options": {...}, "use_cache": true}
        """
        try:
            purpose = Purpose(data["purpose"])
        except (KeyError, ValueError) as e:
            raise InputError(f"unknown or missing purpose: {data.get('purpose')!r}") from e
        try:
            sources = [
                SourceText(
                    id=str(s["id"]),
                    title=s.get("title", ""),
                    text=s.get("text", ""),
                    source_type=s.get("source_type", "paper"),
                    metadata=dict(s.get("metadata") or {}),
                )
                for s in data.get("sources", [])
            ]
            excerpts = [
                Excerpt(id=str(e["id"]), text=e["text"], source_id=str(e["source_id"]), label=e.get("label", ""))
                for e in data.get("excerpts", [])
            ]
        except (KeyError, TypeError) as e:
            raise InputError(f"malformed source or excerpt: {e}") from e
        return cls(
            purpose=purpose,
            sources=sources,
            excerpts=excerpts,
            options=dict(data.get("options") or {}),
            use_cache=bool(data.get("use_cache", True)),
        )


def cache_key(purpose: Purpose, bounds: PurposeBounds, source_ids: Iterable[str]) -> str:
    """Purpose, bounds and a digest of the source-id set.

    Runs over different sources never share an entry, so a hit cannot carry
    themes from documents the caller did not send.
    """
    digest = hashlib.sha1("\n".join(sorted(set(source_ids))).encode()).hexdigest()[:16]
    return f"{purpose.value}:{bounds.min_constructs}-{bounds.max_constructs}:{bounds.target}:{digest}"


def _belongs_to(payload: dict, excerpts: list[Excerpt]) -> bool:
    """True if every excerpt a cached result refers to is part of this request."""
    ids = {e.id for e in excerpts}
    for theme in payload.get("themes", []):
        if not ids.issuperset(theme.get("excerpt_ids", [])):
            logger.info("Cached result references excerpts outside this request; ignoring it")
            return False
    return True


def query_embedding(excerpts: list[Excerpt]) -> np.ndarray:
    """L2-normalised centroid of the excerpts' unit embeddings."""
    c = np.mean(np.stack([e.embedding.unit() for e in excerpts]), axis=0)
    norm = float(np.linalg.norm(c))
    return c / norm if norm > 0 else c


class ThematicEngine:
    """Runs one extraction request end to end.

    The embedding orchestrator, router, bulkhead and semantic cache are
    shared across runs; each call gets its own RunContext.
    """

    def __init__(
        self,
        orchestrator: EmbeddingOrchestrator,
        router: PurposeRouter,
        bulkhead: Bulkhead | None = None,
        semantic_cache: SemanticCache | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.router = router
        self.bulkhead = bulkhead or Bulkhead()
        self.semantic_cache = semantic_cache
        self._retry_policy = retry_policy or RetryPolicy()

    # ── Validation ──

    @staticmethod
    def validate(request: ExtractionRequest) -> None:
        if not request.excerpts:
            raise InputError("no excerpts supplied")
        for e in request.excerpts:
            if not e.text or not e.text.strip():
                raise InputError(f"excerpt {e.id} has empty text")
        ids = [e.id for e in request.excerpts]
        if len(set(ids)) != len(ids):
            raise InputError("excerpt ids must be unique")

    # ── Extraction ──

    def extract(
        self,
        user_id: str,
        request: ExtractionRequest,
        token: CancellationToken | None = None,
        on_progress: Callable[[dict], None] | None = None,
        ai_call_budget: int | None = None,
        deadline_seconds: float | None = None,
        run_id: str | None = None,
    ) -> PipelineResult:
        """Run ``request`` for ``user_id`` inside the extraction bulkhead.

        Raises:
            InputError: The request is empty or malformed, or too small for the purpose.
            ResourceExhausted: The user's queue is full or the extraction circuit is open.
            RunCancelled: ``token`` was cancelled before the run finished.
        """
        self.validate(request)
        run = RunContext(
            request.purpose,
            user_id=user_id,
            ai_call_budget=ai_call_budget,
            deadline_seconds=deadline_seconds,
            token=token,
            on_progress=on_progress,
            seed=request.options.get("seed"),
            run_id=run_id,
        )
        return self.bulkhead.execute_extraction(user_id, lambda: self._run(request, run))

    def _run(self, request: ExtractionRequest, run: RunContext) -> PipelineResult:
        t0 = time.perf_counter()
        logger.info(
            "Run %s: purpose=%s user=%s excerpts=%d sources=%d",
            run.run_id, request.purpose.value, run.user_id, len(request.excerpts), len(request.sources),
        )
        excerpts = self._embed(request.excerpts, run)
        if not excerpts:
            raise InputError("no excerpt produced a valid embedding")

        run.checkpoint("cache")
        bounds = purpose_bounds(request.purpose.value)
        key = cache_key(request.purpose, bounds, (e.source_id for e in excerpts))
        query = query_embedding(excerpts)
        if self.semantic_cache is not None and request.use_cache:
            payload = self.semantic_cache.get(key, query)
            if payload is not None and _belongs_to(payload, excerpts):
                result = PipelineResult.from_dict(payload)
                result.cached = True
                result.run_id = run.run_id
                run.progress("complete", 100.0, "Served from cache", themes=len(result.themes))
                logger.info("Run %s served from semantic cache", run.run_id)
                return result

        pinput = PipelineInput(excerpts=excerpts, sources=request.sources, bounds=bounds, options=request.options)
        result = self.router.run(request.purpose, pinput, run)

        if self.semantic_cache is not None and request.use_cache:
            if result.truncated:
                logger.info("Run %s truncated; not caching partial result", run.run_id)
            else:
                self.semantic_cache.set(key, query, result.to_dict())

        logger.info(
            "Run %s complete: %d theme(s), %d AI call(s), %.2fs%s",
            run.run_id, len(result.themes), result.budget.ai_calls_used, time.perf_counter() - t0,
            " (truncated)" if result.truncated else "",
        )
        return result

    def _embed(self, excerpts: list[Excerpt], run: RunContext) -> list[Excerpt]:
        """Attach embeddings to excerpts that lack one; drop excerpts whose vector was invalid."""
        pending = [e for e in excerpts if e.embedding is None]
        embedded: dict[str, Embedding | None] = {}
        if pending:
            run.progress("embedding", 0.0, f"Embedding {len(pending)} excerpt(s)", total=len(pending))
            texts = [e.text for e in pending]
            outcome = execute_with_retry(
                lambda: self.orchestrator.generate_batch(texts, run),
                label="embedding",
                policy=self._retry_policy,
            )
            embedded = {e.id: emb for e, emb in zip(pending, outcome.result)}

        out = []
        dropped = 0
        for e in excerpts:
            if e.embedding is not None:
                out.append(e)
            elif embedded.get(e.id) is not None:
                out.append(e.with_embedding(embedded[e.id]))
            else:
                dropped += 1
        if dropped:
            run.warn(f"{dropped} excerpt(s) dropped because their embedding was invalid")
        return out

    # ── Search-class operations ──

    def embed_texts(self, user_id: str, texts: list[str]) -> list[Embedding | None]:
        """Embed ad-hoc texts for a caller, guarded by the search bulkhead."""
        if not texts:
            raise InputError("no texts supplied")

        def _call() -> list[Embedding | None]:
            return execute_with_retry(
                lambda: self.orchestrator.generate_batch(texts), label="embedding", policy=self._retry_policy,
            ).result

        return self.bulkhead.execute_search(user_id, _call)

    def stats(self) -> dict:
        return {
            "provider": self.orchestrator.get_provider_info(),
            "embedding_cache": self.orchestrator.cache_stats(),
            "semantic_cache": self.semantic_cache.stats() if self.semantic_cache is not None else None,
            "bulkhead": self.bulkhead.stats(),
        }


def create_engine() -> ThematicEngine:
    """Build an engine from ``thematica.config``."""
    orchestrator = EmbeddingOrchestrator(create_embedding_provider())
    assistant = None
    if config.GEMINI_API_KEY:
        assistant = AssistantClient(GeminiProvider())
    else:
        logger.warning("GEMINI_API_KEY not set; AI-assisted steps will use heuristic fallbacks")
    store = CacheVectorStore(config.LANCEDB_PATH, dims=orchestrator.get_provider_info()["dimensions"])
    return ThematicEngine(
        orchestrator=orchestrator,
        router=PurposeRouter(assistant=assistant, embedder=orchestrator),
        bulkhead=Bulkhead(),
        semantic_cache=SemanticCache(store),
    )
