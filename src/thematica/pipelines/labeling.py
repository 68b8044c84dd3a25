"""Theme labeling: assistant-backed with a keyword heuristic fallback."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Protocol

from thematica.errors import BudgetExceeded, ProviderError
from thematica.providers.assistant import AssistantClient
from thematica.run import RunContext

logger = logging.getLogger(__name__)

LABEL_BATCH_SIZE = 10
MAX_EXAMPLES_PER_GROUP = 5

_TOKEN_RE = re.compile(r"[a-z][a-z\-]{2,}")
STOPWORDS = frozenset(
    """a about above after again against all also am an and any are as at be because been
    before being below between both but by can could did do does doing down during each
    few for from further had has have having he her here hers him his how i if in into is
    it its itself just me more most my no nor not now of off on once only or other our
    ours out over own same she should so some such than that the their them then there
    these they this those through to too under until up very was we were what when where
    which while who whom why will with would you your yours one two also may might many
    much using used use within without however although""".split()
)


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]


class ThemeLabeler(Protocol):
    def label(self, run: RunContext, groups: list[list[str]]) -> list[tuple[str, str]]:
        """Return a (label, description) pair for each group of member texts."""
        ...


class KeywordLabeler:
    """Labels each group by its most distinctive terms (group frequency x inverse group frequency)."""

    def __init__(self, max_terms: int = 3) -> None:
        self.max_terms = max_terms

    def label(self, run: RunContext, groups: list[list[str]]) -> list[tuple[str, str]]:
        counts = [Counter(tok for text in g for tok in tokenize(text)) for g in groups]
        doc_freq: Counter = Counter()
        for c in counts:
            doc_freq.update(c.keys())
        n = max(len(groups), 1)
        out = []
        for i, c in enumerate(counts):
            scored = sorted(c.items(), key=lambda kv: (-kv[1] * (n / doc_freq[kv[0]]), kv[0]))
            terms = [t for t, _ in scored[: self.max_terms]]
            label = " / ".join(terms) if terms else f"Theme {i + 1}"
            out.append((label, f"Excerpts mentioning {', '.join(terms)}" if terms else ""))
        return out


class AssistantLabeler:
    """Asks the assistant to name groups in batches; falls back per batch on failure."""

    SYSTEM = (
        "You name themes in qualitative research data. "
        "Respond with JSON only."
    )

    def __init__(self, assistant: AssistantClient, fallback: ThemeLabeler | None = None) -> None:
        self._assistant = assistant
        self._fallback = fallback or KeywordLabeler()

    def _prompt(self, groups: list[list[str]]) -> str:
        lines = [
            "For each numbered group of excerpts, give a short theme label (max 6 words) "
            "and a one-sentence description.",
            'Return {"labels": [{"index": <n>, "label": "...", "description": "..."}]}.',
            "",
        ]
        for i, texts in enumerate(groups):
            lines.append(f"Group {i}:")
            lines.extend(f"  - {t[:300]}" for t in texts[:MAX_EXAMPLES_PER_GROUP])
        return "\n".join(lines)

    def label(self, run: RunContext, groups: list[list[str]]) -> list[tuple[str, str]]:
        fallback = self._fallback.label(run, groups)
        out = list(fallback)
        for start in range(0, len(groups), LABEL_BATCH_SIZE):
            batch = groups[start : start + LABEL_BATCH_SIZE]
            if not run.ai_available():
                break
            try:
                data = self._assistant.generate_json(run, self._prompt(batch), self.SYSTEM, label="label-themes")
            except (BudgetExceeded, ProviderError) as e:
                logger.warning("Theme labeling fell back to keywords: %s", e)
                break
            for item in data.get("labels", []) if isinstance(data, dict) else []:
                try:
                    idx = int(item["index"])
                except (KeyError, TypeError, ValueError):
                    continue
                label = str(item.get("label", "")).strip()
                if 0 <= idx < len(batch) and label:
                    out[start + idx] = (label, str(item.get("description", "")).strip())
        return out


def select_labeler(run: RunContext, assistant: AssistantClient | None) -> ThemeLabeler:
    if assistant is not None and run.ai_available():
        return AssistantLabeler(assistant)
    return KeywordLabeler()
