"""Background task manager for extraction runs."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from thematica.errors import RunCancelled, ThematicaError
from thematica.run import CancellationToken

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class TaskManager:
    """Runs extraction tasks in the background with progress streaming and cancellation.

    Every task gets its own CancellationToken, passed to ``fn`` as ``token``.
    Per-user admission is the bulkhead's job, not the task manager's.
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._tasks: dict[str, dict[str, Any]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._subscribers: dict[str, list[queue.Queue]] = {}
        self._lock = threading.Lock()

    def submit(
        self, name: str, fn: Callable, task_id: str | None = None,
        user_id: str = "anonymous", **kwargs,
    ) -> str:
        """Start ``fn(token=..., **kwargs)`` on the pool and return the task id.

        ``name`` is the purpose shown in listings. Pass ``task_id`` when the
        caller needs the id before the task starts (the run id doubles as it).
        """
        token = CancellationToken()
        with self._lock:
            if task_id is None:
                task_id = str(uuid.uuid4())
            self._tasks[task_id] = {
                "id": task_id,
                "name": name,
                "user_id": user_id,
                "status": "running",
                "created_at": time.time(),
                "progress_events": [],
                "result": None,
                "error": None,
            }
            self._tokens[task_id] = token
            self._subscribers[task_id] = []

        def _run():
            try:
                result = fn(token=token, **kwargs)
            except RunCancelled as e:
                logger.info("Task %s (%s) cancelled", task_id, name)
                self._finish(task_id, "cancelled", error=e.user_message)
                self._broadcast(task_id, {"type": "cancelled", "error": e.user_message})
            except ThematicaError as e:
                logger.warning("Task %s (%s) failed: %s", task_id, name, e)
                self._finish(task_id, "failed", error=e.user_message)
                self._broadcast(task_id, {"type": "error", "error": e.user_message})
            except Exception:
                logger.exception("Task %s (%s) failed", task_id, name)
                message = ThematicaError.user_message
                self._finish(task_id, "failed", error=message)
                self._broadcast(task_id, {"type": "error", "error": message})
            else:
                self._finish(task_id, "completed", result=result)
                self._broadcast(task_id, {"type": "done", "result": result})

        self._executor.submit(_run)
        return task_id

    def _finish(self, task_id: str, status: str, result: Any = None, error: str | None = None) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            task["status"] = status
            task["result"] = result
            task["error"] = error
            task["finished_at"] = time.time()

    def cancel(self, task_id: str) -> bool:
        """Signal cancellation. Returns False if the task is unknown or already finished.

        The run stops at its next checkpoint; in-flight provider calls finish first.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task["status"] in TERMINAL_STATUSES:
                return False
            token = self._tokens[task_id]
        token.cancel()
        logger.info("Cancellation requested for task %s", task_id)
        return True

    def get_status(self, task_id: str) -> dict | None:
        """Snapshot of one task, or None if unknown."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            return {**task, "progress_events": list(task["progress_events"])}

    def list_tasks(self) -> list[dict]:
        """List all tasks, without their results."""
        with self._lock:
            return [
                {k: v for k, v in t.items() if k not in ("result", "progress_events")}
                for t in self._tasks.values()
            ]

    def subscribe(self, task_id: str) -> tuple[queue.Queue, dict] | None:
        """Register a listener queue and return it with a snapshot taken under the same lock.

        Events pushed after the snapshot land on the queue, so replaying the
        snapshot and then draining the queue loses nothing. None if unknown.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            q: queue.Queue = queue.Queue()
            self._subscribers[task_id].append(q)
            return q, {**task, "progress_events": list(task["progress_events"])}

    def unsubscribe(self, task_id: str, q: queue.Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(task_id, [])
            if q in subs:
                subs.remove(q)

    def push_progress(self, task_id: str, event: dict) -> None:
        """Record a run progress event and fan it out to live listeners."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task:
                task["progress_events"].append(event)
            subs = list(self._subscribers.get(task_id, []))
        for q in subs:
            q.put_nowait({"type": "progress", **event})

    def _broadcast(self, task_id: str, event: dict) -> None:
        """Deliver a terminal event to live listeners."""
        with self._lock:
            subs = list(self._subscribers.get(task_id, []))
        for q in subs:
            q.put_nowait(event)

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        self._executor.shutdown(wait=wait)
