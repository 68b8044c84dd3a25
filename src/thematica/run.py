"""Per-run state: AI-call budget, deadline, cancellation token and progress sink."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from thematica import config
from thematica.errors import BudgetExceeded, RunCancelled
from thematica.models import BudgetReport, Purpose

logger = logging.getLogger(__name__)


class CancellationToken:
    """External cancellation signal, checked between stages and before AI batches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class AICallBudget:
    """Thread-safe counter that never lets a run exceed its AI-call ceiling."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        with self._lock:
            return self._used

    @property
    def remaining(self) -> int:
        with self._lock:
            return max(0, self.limit - self._used)

    def try_acquire(self) -> bool:
        with self._lock:
            if self._used >= self.limit:
                return False
            self._used += 1
            return True


@dataclass
class ProgressEvent:
    stage: str
    percent: float
    status: str = ""
    counters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "percent": round(self.percent, 1),
            "status": self.status,
            **self.counters,
        }


class RunContext:
    """One pipeline invocation: purpose, caller, budget, deadline and cancellation.

    Shared structures (caches, bulkhead) are not held here; they are injected
    into the engine and outlive individual runs.
    """

    def __init__(
        self,
        purpose: Purpose,
        user_id: str = "anonymous",
        ai_call_budget: int | None = None,
        deadline_seconds: float | None = None,
        token: CancellationToken | None = None,
        on_progress: Callable[[dict], None] | None = None,
        seed: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        run_id: str | None = None,
    ) -> None:
        self.run_id = run_id or str(uuid.uuid4())
        self.purpose = purpose
        self.user_id = user_id
        self.budget = AICallBudget(config.AI_CALL_BUDGET if ai_call_budget is None else ai_call_budget)
        self.deadline_seconds = config.RUN_DEADLINE_SECONDS if deadline_seconds is None else deadline_seconds
        self.token = token or CancellationToken()
        self.seed = config.RANDOM_SEED if seed is None else seed
        self._on_progress = on_progress
        self._clock = clock
        self._started = clock()
        self._last_percent: dict[str, float] = {}
        self.truncated = False
        self.truncation_reason: str | None = None
        self.warnings: list[str] = []

    # ── Deadline / cancellation ──

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def deadline_exceeded(self) -> bool:
        return self.elapsed >= self.deadline_seconds

    def checkpoint(self, stage: str) -> bool:
        """Stage boundary. Raise RunCancelled if the token was triggered.

        Returns False once the deadline has passed: the run is marked
        truncated and callers skip optional work, finishing with what exists.
        """
        if self.token.cancelled:
            logger.info("Run %s cancelled before stage %s", self.run_id, stage)
            raise RunCancelled(f"run {self.run_id} cancelled at {stage}")
        if self.deadline_exceeded():
            self.mark_truncated("deadline")
            return False
        return True

    # ── AI budget ──

    def ai_available(self) -> bool:
        return self.budget.remaining > 0 and not self.deadline_exceeded()

    def consume_ai_call(self) -> None:
        """Reserve one AI call or raise BudgetExceeded."""
        if self.deadline_exceeded():
            self.mark_truncated("deadline")
            raise BudgetExceeded(f"deadline of {self.deadline_seconds}s reached")
        if not self.budget.try_acquire():
            self.mark_truncated("ai_call_budget")
            raise BudgetExceeded(f"AI-call budget of {self.budget.limit} exhausted")

    def mark_truncated(self, reason: str) -> None:
        if not self.truncated:
            logger.warning("Run %s truncated: %s", self.run_id, reason)
        self.truncated = True
        self.truncation_reason = self.truncation_reason or reason

    def warn(self, message: str) -> None:
        logger.warning("Run %s: %s", self.run_id, message)
        self.warnings.append(message)

    # ── Progress ──

    def progress(self, stage: str, percent: float, status: str = "", **counters: Any) -> None:
        """Emit a stage-progress event; repeated events at the same percent are dropped."""
        if self._on_progress is None:
            return
        if self._last_percent.get(stage) == round(percent, 1) and percent < 100:
            return
        self._last_percent[stage] = round(percent, 1)
        event = ProgressEvent(stage=stage, percent=percent, status=status, counters=counters)
        try:
            self._on_progress(event.to_dict())
        except Exception:
            logger.exception("Progress sink raised; ignoring")

    def budget_report(self) -> BudgetReport:
        return BudgetReport(
            ai_call_budget=self.budget.limit,
            ai_calls_used=self.budget.used,
            deadline_seconds=self.deadline_seconds,
            elapsed_seconds=self.elapsed,
            truncated=self.truncated,
            truncation_reason=self.truncation_reason,
        )
