"""Budgeted generative-text client returning parsed JSON."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from thematica.errors import ProviderError
from thematica.providers.provider import GenerationProvider
from thematica.resilience.retry import RetryPolicy, execute_with_retry
from thematica.run import RunContext

logger = logging.getLogger(__name__)


def parse_json_response(content: str) -> Any:
    """Parse a model response as JSON, tolerating code fences and surrounding prose.

    Raises:
        ProviderError: No JSON object could be recovered (terminal).
    """
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Find first { and its matching }
    start = text.find("{")
    if start >= 0:
        depth = 0
        for i in range(start, len(text)):
            if text[i] == "{":
                depth += 1
            elif text[i] == "}":
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(text[start : i + 1])
                    except json.JSONDecodeError:
                        break
    raise ProviderError(
        f"Unparseable assistant response: {content[:100]!r}",
        provider="assistant",
        retryable=False,
    )


class AssistantClient:
    """Wraps a GenerationProvider with the run's AI-call budget, retry and cancellation.

    Every attempt (including retries) consumes one call from the run's budget.
    ``BudgetExceeded`` and ``RunCancelled`` propagate to the caller, which is
    expected to fall back to a heuristic.
    """

    def __init__(self, provider: GenerationProvider, policy: RetryPolicy | None = None) -> None:
        self._provider = provider
        self._policy = policy or RetryPolicy()

    def generate_json(self, run: RunContext, prompt: str, system: str | None = None,
                      label: str = "assistant") -> Any:
        run.checkpoint(label)

        def _call() -> str:
            run.consume_ai_call()
            return self._provider.generate(prompt, system=system)

        t0 = time.perf_counter()
        outcome = execute_with_retry(_call, label=label, policy=self._policy)
        logger.debug(
            "%s: %d attempt(s), %.0fms, budget remaining %d",
            label, outcome.attempts, (time.perf_counter() - t0) * 1000, run.budget.remaining,
        )
        return parse_json_response(outcome.result)
