"""Exception hierarchy for the extraction engine.

Every error carries a ``user_message`` that is safe to return to callers.
The ``str()`` of an error is internal diagnostics and is only logged.
"""

from __future__ import annotations


class ThematicaError(Exception):
    """Base exception for all engine errors."""

    user_message = "The thematic extraction failed."


class InputError(ThematicaError):
    """The excerpt set is empty, malformed, or too small for the purpose.

    Raised before any work is done and never retried.
    """

    user_message = "The request is invalid or has too few excerpts for this purpose."


class ProviderError(ThematicaError):
    """An embedding or generative-text provider call failed."""

    user_message = "An upstream model provider failed to respond."

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class InvalidEmbeddingError(ProviderError):
    """A provider returned a vector with a non-finite or non-positive norm,
    or with the wrong dimensionality."""

    user_message = "The embedding provider returned an invalid vector."

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, retryable=False)


class QualityGateFailure(ThematicaError):
    """A purpose-specific statistical check rejected a construct."""

    user_message = "Some constructs did not meet the quality criteria for this purpose."

    def __init__(self, message: str, construct_id: str | None = None, metric: str | None = None,
                 value: float | None = None) -> None:
        super().__init__(message)
        self.construct_id = construct_id
        self.metric = metric
        self.value = value


class BudgetExceeded(ThematicaError):
    """The run's AI-call budget or wall-clock deadline is exhausted."""

    user_message = "The analysis budget was reached; results are partial."


class ResourceExhausted(ThematicaError):
    """The bulkhead queue is full or the circuit breaker is open."""

    user_message = "The service is busy. Please retry shortly."

    def __init__(self, message: str, retry_after: float, reason: str = "queue_full") -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.reason = reason


class RunCancelled(ThematicaError):
    """The run's cancellation token was triggered."""

    user_message = "The analysis was cancelled."
