"""FastAPI server: synchronous and background extraction runs with SSE progress."""

from __future__ import annotations

import json
import logging
import math
import queue
import time
import uuid
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from thematica import config
from thematica.api.task_manager import TERMINAL_STATUSES, TaskManager
from thematica.engine import ExtractionRequest, ThematicEngine, create_engine
from thematica.errors import InputError, ProviderError, ResourceExhausted, RunCancelled, ThematicaError
from thematica.models import Purpose
from thematica.run import CancellationToken

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Thematica", description="Thematic extraction service")

_task_manager = TaskManager()

# Lazy-initialized engine (created on first request)
_engine: ThematicEngine | None = None


def _get_engine() -> ThematicEngine:
    global _engine
    if _engine is None:
        logger.info("Initializing extraction engine...")
        t0 = time.perf_counter()
        _engine = create_engine()
        logger.info("Extraction engine ready (%.2fs)", time.perf_counter() - t0)
    return _engine


def _http_error(e: ThematicaError) -> HTTPException:
    """Map an engine error to an HTTP error carrying only its user-facing message."""
    if isinstance(e, ResourceExhausted):
        status = 503 if e.reason == "circuit_open" else 429
        return HTTPException(
            status_code=status,
            detail=e.user_message,
            headers={"Retry-After": str(max(1, math.ceil(e.retry_after)))},
        )
    if isinstance(e, InputError):
        return HTTPException(status_code=400, detail=e.user_message)
    if isinstance(e, RunCancelled):
        return HTTPException(status_code=409, detail=e.user_message)
    if isinstance(e, ProviderError):
        return HTTPException(status_code=502, detail=e.user_message)
    return HTTPException(status_code=500, detail=e.user_message)


# ── Request models ──


class SourceModel(BaseModel):
    id: str
    title: str = ""
    text: str = ""
    source_type: str = "paper"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExcerptModel(BaseModel):
    id: str
    text: str
    source_id: str
    label: str = ""


class ExtractRequest(BaseModel):
    purpose: Purpose
    excerpts: list[ExcerptModel]
    sources: list[SourceModel] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = True
    user_id: str = "anonymous"
    ai_call_budget: int | None = None
    deadline_seconds: float | None = None


class EmbedRequest(BaseModel):
    texts: list[str]
    user_id: str = "anonymous"


def _to_engine_request(req: ExtractRequest) -> ExtractionRequest:
    return ExtractionRequest.from_dict(req.model_dump(mode="json"))


# ── Endpoints ──


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/extract")
def extract(req: ExtractRequest):
    logger.info("POST /extract purpose=%s user=%s excerpts=%d", req.purpose.value, req.user_id, len(req.excerpts))
    t0 = time.perf_counter()
    try:
        request = _to_engine_request(req)
        result = _get_engine().extract(
            req.user_id, request,
            ai_call_budget=req.ai_call_budget, deadline_seconds=req.deadline_seconds,
        )
    except ThematicaError as e:
        logger.warning("Extraction failed after %.2fs: %s", time.perf_counter() - t0, e)
        raise _http_error(e)
    logger.info("Extraction complete: %d theme(s), %.2fs", len(result.themes), time.perf_counter() - t0)
    return result.to_dict()


@app.post("/embed")
def embed(req: EmbedRequest):
    try:
        embeddings = _get_engine().embed_texts(req.user_id, req.texts)
    except ThematicaError as e:
        logger.warning("Embedding failed: %s", e)
        raise _http_error(e)
    return {
        "embeddings": [
            None if emb is None else {
                "model": emb.model,
                "dimensions": emb.dimensions,
                "norm": emb.norm,
                "vector": [float(v) for v in emb.vector],
            }
            for emb in embeddings
        ]
    }


def _make_progress_callback(task_id: str):
    """Create a progress callback bound to a task ID."""
    def callback(event: dict):
        _task_manager.push_progress(task_id, event)
    return callback


@app.post("/runs", status_code=202)
def start_run(req: ExtractRequest):
    """Start an extraction in the background; follow it via /runs/{id}/stream."""
    try:
        request = _to_engine_request(req)
        ThematicEngine.validate(request)
    except InputError as e:
        raise _http_error(e)
    engine = _get_engine()
    task_id = str(uuid.uuid4())

    def _run(token: CancellationToken):
        result = engine.extract(
            req.user_id, request,
            token=token,
            on_progress=_make_progress_callback(task_id),
            ai_call_budget=req.ai_call_budget,
            deadline_seconds=req.deadline_seconds,
            run_id=task_id,
        )
        return result.to_dict()

    _task_manager.submit(req.purpose.value, _run, task_id=task_id, user_id=req.user_id)
    logger.info("Run %s queued (purpose=%s, user=%s)", task_id, req.purpose.value, req.user_id)
    return {"run_id": task_id, "status": "running"}


@app.get("/runs")
def list_runs():
    return _task_manager.list_tasks()


@app.get("/runs/{run_id}")
def get_run(run_id: str):
    task = _task_manager.get_status(run_id)
    if not task:
        raise HTTPException(status_code=404, detail="Run not found")
    return task


@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str):
    task = _task_manager.get_status(run_id)
    if not task:
        raise HTTPException(status_code=404, detail="Run not found")
    if not _task_manager.cancel(run_id):
        raise HTTPException(status_code=409, detail=f"Run already {task['status']}")
    return {"run_id": run_id, "status": "cancelling"}


# ── SSE streaming ──


@app.get("/runs/{run_id}/stream")
def stream_run(run_id: str):
    """SSE stream of progress events for a run."""
    subscription = _task_manager.subscribe(run_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Run not found")
    sub_queue, task = subscription

    def _final_event(t: dict) -> dict:
        if t["status"] == "completed":
            return {"type": "done", "result": t.get("result")}
        if t["status"] == "cancelled":
            return {"type": "cancelled", "error": t.get("error", "")}
        return {"type": "error", "error": t.get("error", "")}

    def event_generator():
        try:
            # First, replay any existing progress events
            for evt in task.get("progress_events", []):
                yield f"data: {json.dumps({'type': 'progress', **evt})}\n\n"

            # If the run already finished, send the final event
            if task["status"] in TERMINAL_STATUSES:
                yield f"data: {json.dumps(_final_event(task))}\n\n"
                return

            # Stream new events from queue
            while True:
                try:
                    event = sub_queue.get(timeout=30)
                except queue.Empty:
                    # Send keepalive
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
                if event.get("type") in ("done", "error", "cancelled"):
                    break
        finally:
            _task_manager.unsubscribe(run_id, sub_queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/stats")
def stats():
    runs = _task_manager.list_tasks()
    by_status: dict[str, int] = {}
    for r in runs:
        by_status[r["status"]] = by_status.get(r["status"], 0) + 1
    return {**_get_engine().stats(), "runs": by_status}
