"""Tests for the FastAPI extraction endpoints and background runs."""

from __future__ import annotations

import json
import time
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from thematica.api.task_manager import TaskManager
from thematica.errors import InputError, ProviderError, ResourceExhausted, RunCancelled
from tests.helpers import request_dict


def _wait_for_task(client: TestClient, run_id: str, timeout: float = 20.0) -> dict:
    """Poll a background run until it leaves the running state."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        data = client.get(f"/runs/{run_id}").json()
        if data["status"] != "running":
            return data
        time.sleep(0.05)
    raise TimeoutError(f"run {run_id} still running")


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def api(engine):
    """Server module with the test engine and a fresh task manager swapped in."""
    from thematica.api import server

    # Fresh task manager per test to avoid cross-test thread pool contention
    fresh_tm = TaskManager()
    old_tm = server._task_manager
    server._task_manager = fresh_tm
    try:
        with patch.object(server, "_engine", engine):
            yield server
    finally:
        server._task_manager = old_tm
        fresh_tm.shutdown()


@pytest.fixture
def client(api):
    return TestClient(api.app)


@pytest.fixture
def mock_engine_client():
    """Client whose engine is a MagicMock, for error mapping and cancellation."""
    from thematica.api import server

    engine = MagicMock()
    fresh_tm = TaskManager()
    old_tm = server._task_manager
    server._task_manager = fresh_tm
    try:
        with patch.object(server, "_engine", engine):
            yield TestClient(server.app), engine
    finally:
        server._task_manager = old_tm
        fresh_tm.shutdown()


class TestExtractEndpoint:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_extract_survey(self, client):
        resp = client.post("/extract", json=request_dict())
        assert resp.status_code == 200
        data = resp.json()
        assert data["purpose"] == "survey"
        assert 8 <= len(data["themes"]) <= 12
        assert data["cached"] is False
        assert data["budget"]["truncated"] is False

    def test_repeat_is_served_from_cache(self, client):
        first = client.post("/extract", json=request_dict()).json()
        second = client.post("/extract", json=request_dict()).json()
        assert second["cached"] is True
        assert second["run_id"] != first["run_id"]

    def test_too_few_excerpts(self, client):
        resp = client.post("/extract", json=request_dict(n_topics=2, per_topic=3))
        assert resp.status_code == 400
        assert resp.json()["detail"] == InputError.user_message

    def test_empty_excerpts(self, client):
        resp = client.post("/extract", json={"purpose": "survey", "excerpts": []})
        assert resp.status_code == 400

    def test_unknown_purpose_is_rejected_by_schema(self, client):
        resp = client.post("/extract", json={**request_dict(), "purpose": "astrology"})
        assert resp.status_code == 422


class TestErrorMapping:
    @pytest.mark.parametrize("error,status,retry_after", [
        (ResourceExhausted("user queue full", retry_after=2.5, reason="queue_full"), 429, "3"),
        (ResourceExhausted("waited too long", retry_after=30, reason="queue_timeout"), 429, "30"),
        (ResourceExhausted("breaker open", retry_after=30, reason="circuit_open"), 503, "30"),
    ])
    def test_resource_exhausted(self, mock_engine_client, error, status, retry_after):
        client, engine = mock_engine_client
        engine.extract.side_effect = error
        resp = client.post("/extract", json=request_dict())
        assert resp.status_code == status
        assert resp.headers["Retry-After"] == retry_after
        assert resp.json()["detail"] == ResourceExhausted.user_message

    def test_provider_error_hides_internals(self, mock_engine_client):
        client, engine = mock_engine_client
        engine.extract.side_effect = ProviderError("401 from https://internal/key=abc", retryable=False)
        resp = client.post("/extract", json=request_dict())
        assert resp.status_code == 502
        assert "internal" not in resp.json()["detail"]

    def test_cancelled(self, mock_engine_client):
        client, engine = mock_engine_client
        engine.extract.side_effect = RunCancelled("stop")
        assert client.post("/extract", json=request_dict()).status_code == 409


class TestEmbedEndpoint:
    def test_embed(self, client):
        resp = client.post("/embed", json={"texts": ["topic-1 one", "topic-2 two"]})
        assert resp.status_code == 200
        embeddings = resp.json()["embeddings"]
        assert len(embeddings) == 2
        assert embeddings[0]["dimensions"] == 64
        assert len(embeddings[0]["vector"]) == 64
        assert embeddings[0]["norm"] > 0

    def test_embed_empty(self, client):
        assert client.post("/embed", json={"texts": []}).status_code == 400


class TestBackgroundRuns:
    def test_run_lifecycle(self, client):
        resp = client.post("/runs", json=request_dict())
        assert resp.status_code == 202
        run_id = resp.json()["run_id"]
        assert resp.json()["status"] == "running"

        task = _wait_for_task(client, run_id)
        assert task["status"] == "completed"
        assert task["result"]["run_id"] == run_id
        assert 8 <= len(task["result"]["themes"]) <= 12
        assert any(e["stage"] == "clustering" for e in task["progress_events"])

    def test_invalid_run_rejected_up_front(self, client):
        resp = client.post("/runs", json={"purpose": "survey", "excerpts": []})
        assert resp.status_code == 400
        assert client.get("/runs").json() == []

    def test_stream_after_completion(self, client):
        run_id = client.post("/runs", json=request_dict()).json()["run_id"]
        _wait_for_task(client, run_id)

        resp = client.get(f"/runs/{run_id}/stream")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(resp.text)
        assert events[0]["type"] == "progress"
        assert events[-1]["type"] == "done"
        assert events[-1]["result"]["purpose"] == "survey"

    def test_stream_unknown_run(self, client):
        assert client.get("/runs/nope/stream").status_code == 404

    def test_list_runs(self, client):
        run_id = client.post("/runs", json=request_dict()).json()["run_id"]
        _wait_for_task(client, run_id)
        runs = client.get("/runs").json()
        assert [r["id"] for r in runs] == [run_id]
        assert "result" not in runs[0]

    def test_get_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404


class TestCancellation:
    def test_cancel_unknown(self, client):
        assert client.post("/runs/nope/cancel").status_code == 404

    def test_cancel_finished_run(self, client):
        run_id = client.post("/runs", json=request_dict()).json()["run_id"]
        _wait_for_task(client, run_id)
        resp = client.post(f"/runs/{run_id}/cancel")
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Run already completed"

    def test_cancel_running_run(self, mock_engine_client):
        client, engine = mock_engine_client

        def slow_extract(user_id, request, token, on_progress, **kwargs):
            on_progress({"stage": "embedding", "percent": 0.0})
            deadline = time.time() + 10
            while not token.cancelled and time.time() < deadline:
                time.sleep(0.01)
            raise RunCancelled("cancelled at clustering")

        engine.extract.side_effect = slow_extract
        run_id = client.post("/runs", json=request_dict()).json()["run_id"]
        resp = client.post(f"/runs/{run_id}/cancel")
        assert resp.json() == {"run_id": run_id, "status": "cancelling"}

        task = _wait_for_task(client, run_id)
        assert task["status"] == "cancelled"
        assert task["error"] == RunCancelled.user_message

        events = _sse_events(client.get(f"/runs/{run_id}/stream").text)
        assert events[-1]["type"] == "cancelled"

    def test_failed_run(self, mock_engine_client):
        client, engine = mock_engine_client
        engine.extract.side_effect = ProviderError("upstream 500 with secrets")
        run_id = client.post("/runs", json=request_dict()).json()["run_id"]
        task = _wait_for_task(client, run_id)
        assert task["status"] == "failed"
        assert task["error"] == ProviderError.user_message


class TestStats:
    def test_stats(self, client):
        run_id = client.post("/runs", json=request_dict()).json()["run_id"]
        _wait_for_task(client, run_id)
        data = client.get("/stats").json()
        assert data["runs"] == {"completed": 1}
        assert data["semantic_cache"]["writes"] == 1
        assert data["provider"]["dimensions"] == 64
        assert set(data["bulkhead"]) == {"search", "extraction"}


class TestTaskManager:
    def test_progress_is_recorded(self):
        tm = TaskManager()
        task_id = "t1"

        def fn(token):
            tm.push_progress(task_id, {"stage": "x", "percent": 50.0})
            return {"ok": True}

        assert tm.subscribe(task_id) is None
        tm.submit("demo", fn, task_id=task_id)
        deadline = time.time() + 5
        while tm.get_status(task_id)["status"] == "running" and time.time() < deadline:
            time.sleep(0.01)
        status = tm.get_status(task_id)
        assert status["status"] == "completed"
        assert status["result"] == {"ok": True}
        assert status["progress_events"] == [{"stage": "x", "percent": 50.0}]
        tm.shutdown()

    def test_unexpected_exception_is_reported_generically(self):
        tm = TaskManager()

        def fn(token):
            raise KeyError("internal detail")

        task_id = tm.submit("demo", fn)
        deadline = time.time() + 5
        while tm.get_status(task_id)["status"] == "running" and time.time() < deadline:
            time.sleep(0.01)
        status = tm.get_status(task_id)
        assert status["status"] == "failed"
        assert "internal detail" not in status["error"]
        tm.shutdown()
