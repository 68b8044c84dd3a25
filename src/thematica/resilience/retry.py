"""Retry with exponential backoff and jitter for provider calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

from thematica import config
from thematica.errors import InputError, ProviderError, ThematicaError

logger = logging.getLogger(__name__)

_RETRYABLE_HINTS = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "connection aborted",
    "rate limit",
    "too many requests",
    "service unavailable",
)


@dataclass
class RetryPolicy:
    """Backoff settings.

    Attributes:
        max_attempts: Total attempts, including the first.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay, before jitter.
        jitter: Fractional +/- variation applied to each delay.
    """

    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    base_delay: float = config.RETRY_BASE_DELAY
    max_delay: float = config.RETRY_MAX_DELAY
    jitter: float = 0.25


@dataclass
class RetryOutcome:
    result: Any
    attempts: int


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable(error: BaseException) -> bool:
    """Timeouts, network failures, 5xx and 429 are retryable; everything else is terminal."""
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, ThematicaError):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (ValueError, TypeError, KeyError, PermissionError)):
        return False
    code = _status_code(error)
    if code is not None:
        return code == 429 or code == 408 or code >= 500
    message = str(error).lower()
    return any(hint in message for hint in _RETRYABLE_HINTS)


def compute_delay(attempt: int, policy: RetryPolicy, rng: random.Random | None = None) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based): base*2^attempt, capped, jittered."""
    delay = min(policy.base_delay * (2 ** attempt), policy.max_delay)
    if policy.jitter:
        r = (rng or random).random()
        delay *= 1 - policy.jitter + 2 * policy.jitter * r
    return delay


def execute_with_retry(
    fn: Callable[[], Any],
    label: str = "operation",
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Call ``fn`` until it succeeds, a terminal error occurs, or attempts run out.

    Terminal errors propagate immediately. When every attempt fails with a
    retryable error, the last error is re-raised after exactly
    ``policy.max_attempts`` calls.
    """
    policy = policy or RetryPolicy()
    if policy.max_attempts < 1:
        raise InputError(f"max_attempts must be >= 1, got {policy.max_attempts}")

    for attempt in range(policy.max_attempts):
        try:
            result = fn()
        except Exception as e:
            if not is_retryable(e):
                logger.debug("%s failed with terminal error: %s", label, e)
                raise
            if attempt == policy.max_attempts - 1:
                logger.error("%s exhausted all %d attempts: %s", label, policy.max_attempts, e)
                raise
            delay = compute_delay(attempt, policy)
            logger.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                label, attempt + 1, policy.max_attempts, e, delay,
            )
            sleep(delay)
            continue
        if attempt > 0:
            logger.info("%s succeeded after %d attempts", label, attempt + 1)
        return RetryOutcome(result=result, attempts=attempt + 1)

    raise AssertionError("unreachable")
