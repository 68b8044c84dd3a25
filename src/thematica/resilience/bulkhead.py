"""Bulkhead isolation: per-user and global concurrency limits plus circuit breakers.

Each operation class ("search", "extraction") has its own limits and its own
circuit breaker. Work beyond a user's limit waits in a bounded queue (up to
twice the per-user limit); anything beyond that is rejected immediately with
ResourceExhausted.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from thematica import config
from thematica.errors import InputError, ResourceExhausted, RunCancelled

logger = logging.getLogger(__name__)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Closed -> Open after ``failure_threshold`` consecutive failures.

    Open rejects immediately until ``cooldown`` elapses, then a single
    HalfOpen probe is let through: success closes the circuit, failure
    reopens it. Calls arriving while the probe is in flight are rejected.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        cooldown: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = config.CIRCUIT_FAILURE_THRESHOLD if failure_threshold is None else failure_threshold
        self.cooldown = config.CIRCUIT_COOLDOWN_SECONDS if cooldown is None else cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.cooldown:
            return CircuitState.HALF_OPEN
        return self._state

    def before_call(self) -> bool:
        """Admit a call or raise ResourceExhausted. Returns True if the call is the HalfOpen probe."""
        with self._lock:
            state = self._current_state()
            if state is CircuitState.CLOSED:
                return False
            if state is CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info("Circuit %s half-open: probing", self.name)
                return True
        raise ResourceExhausted(
            f"circuit {self.name} is {state.value}", retry_after=self.cooldown, reason="circuit_open",
        )

    def record_success(self, probe: bool = False) -> None:
        with self._lock:
            if probe:
                self._probe_in_flight = False
                self._state = CircuitState.CLOSED
                self._failures = 0
                logger.info("Circuit %s closed after successful probe", self.name)
            elif self._state is CircuitState.CLOSED:
                self._failures = 0

    def record_failure(self, probe: bool = False) -> None:
        with self._lock:
            if probe:
                self._probe_in_flight = False
                self._open()
            elif self._state is CircuitState.CLOSED:
                self._failures += 1
                if self._failures >= self.failure_threshold:
                    self._open()

    def release_probe(self) -> None:
        """Give up a probe slot without a verdict (the call never ran)."""
        with self._lock:
            self._probe_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning("Circuit %s opened after %d failure(s)", self.name, self._failures)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "state": self._current_state().value,
                "consecutive_failures": self._failures,
                "probe_in_flight": self._probe_in_flight,
            }


@dataclass
class PoolLimits:
    per_user: int
    global_limit: int

    @property
    def queue_limit(self) -> int:
        return 2 * self.per_user


class _Pool:
    """Per-user and global counters for one operation class."""

    def __init__(self, name: str, limits: PoolLimits, queue_timeout: float, retry_after: float) -> None:
        self.name = name
        self.limits = limits
        self.queue_timeout = queue_timeout
        self.retry_after = retry_after
        self._cond = threading.Condition()
        self._active: dict[str, int] = {}
        self._waiting: dict[str, int] = {}
        self._global_active = 0
        self.rejected = 0

    def _can_run(self, user_id: str) -> bool:
        return (
            self._active.get(user_id, 0) < self.limits.per_user
            and self._global_active < self.limits.global_limit
        )

    def acquire(self, user_id: str) -> None:
        with self._cond:
            if self._can_run(user_id):
                self._take(user_id)
                return
            if self._waiting.get(user_id, 0) >= self.limits.queue_limit:
                self.rejected += 1
                raise ResourceExhausted(
                    f"{self.name} queue full for user {user_id}",
                    retry_after=self.retry_after, reason="queue_full",
                )
            self._waiting[user_id] = self._waiting.get(user_id, 0) + 1
            try:
                admitted = self._cond.wait_for(lambda: self._can_run(user_id), timeout=self.queue_timeout)
            finally:
                self._waiting[user_id] -= 1
                if not self._waiting[user_id]:
                    del self._waiting[user_id]
            if not admitted:
                self.rejected += 1
                raise ResourceExhausted(
                    f"{self.name} wait timed out for user {user_id}",
                    retry_after=self.retry_after, reason="queue_timeout",
                )
            self._take(user_id)

    def _take(self, user_id: str) -> None:
        self._active[user_id] = self._active.get(user_id, 0) + 1
        self._global_active += 1

    def release(self, user_id: str) -> None:
        with self._cond:
            self._active[user_id] -= 1
            if not self._active[user_id]:
                del self._active[user_id]
            self._global_active -= 1
            self._cond.notify_all()

    def snapshot(self) -> dict:
        with self._cond:
            return {
                "active": self._global_active,
                "waiting": sum(self._waiting.values()),
                "per_user_limit": self.limits.per_user,
                "global_limit": self.limits.global_limit,
                "active_users": len(self._active),
                "rejected": self.rejected,
            }


# Errors that say nothing about the health of the guarded operation
_NEUTRAL_ERRORS = (InputError, RunCancelled)


class Bulkhead:
    """Guards entry points with per-user / global limits and a circuit breaker per class."""

    def __init__(
        self,
        search_limits: PoolLimits | None = None,
        extraction_limits: PoolLimits | None = None,
        queue_timeout: float | None = None,
        failure_threshold: int | None = None,
        cooldown: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        queue_timeout = config.BULKHEAD_QUEUE_TIMEOUT if queue_timeout is None else queue_timeout
        retry_after = config.CIRCUIT_COOLDOWN_SECONDS if cooldown is None else cooldown
        self._pools = {
            "search": _Pool(
                "search",
                search_limits or PoolLimits(config.SEARCH_PER_USER_LIMIT, config.SEARCH_GLOBAL_LIMIT),
                queue_timeout, retry_after,
            ),
            "extraction": _Pool(
                "extraction",
                extraction_limits or PoolLimits(config.EXTRACTION_PER_USER_LIMIT, config.EXTRACTION_GLOBAL_LIMIT),
                queue_timeout, retry_after,
            ),
        }
        self.breakers = {
            name: CircuitBreaker(name, failure_threshold=failure_threshold, cooldown=cooldown, clock=clock)
            for name in self._pools
        }

    def execute_search(self, user_id: str, fn: Callable[[], Any]) -> Any:
        return self._execute("search", user_id, fn)

    def execute_extraction(self, user_id: str, fn: Callable[[], Any]) -> Any:
        return self._execute("extraction", user_id, fn)

    def _execute(self, kind: str, user_id: str, fn: Callable[[], Any]) -> Any:
        breaker = self.breakers[kind]
        pool = self._pools[kind]
        probe = breaker.before_call()
        try:
            pool.acquire(user_id)
        except ResourceExhausted:
            if probe:
                breaker.release_probe()
            raise
        try:
            result = fn()
        except _NEUTRAL_ERRORS:
            if probe:
                breaker.release_probe()
            raise
        except Exception:
            breaker.record_failure(probe)
            raise
        finally:
            pool.release(user_id)
        breaker.record_success(probe)
        return result

    def stats(self) -> dict:
        return {
            kind: {**pool.snapshot(), "circuit": self.breakers[kind].snapshot()}
            for kind, pool in self._pools.items()
        }
