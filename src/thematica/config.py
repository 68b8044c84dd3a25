"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# API keys
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

# Models
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
EMBEDDING_PROVIDER: str = os.getenv("EMBEDDING_PROVIDER", "local").lower()
EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "gemini-embedding-001")
LOCAL_EMBEDDING_MODEL: str = os.getenv("LOCAL_EMBEDDING_MODEL", "BAAI/bge-small-en-v1.5")
EMBEDDING_DIMS: int = _int(
    "EMBEDDING_DIMS", "384" if EMBEDDING_PROVIDER == "local" else "768"
)

# Embedding orchestration
EMBEDDING_BATCH_SIZE: int = _int("EMBEDDING_BATCH_SIZE", "20")
LOCAL_EMBEDDING_CONCURRENCY: int = _int("LOCAL_EMBEDDING_CONCURRENCY", "50")
REMOTE_EMBEDDING_CONCURRENCY: int = _int("REMOTE_EMBEDDING_CONCURRENCY", "10")
EMBEDDING_CACHE_SIZE: int = _int("EMBEDDING_CACHE_SIZE", "10000")
EMBEDDING_CACHE_TTL: float = _float("EMBEDDING_CACHE_TTL", "86400")

# Semantic cache
SEMANTIC_CACHE_TTL: float = _float("SEMANTIC_CACHE_TTL", "86400")
SEMANTIC_CACHE_THRESHOLD: float = _float("SEMANTIC_CACHE_THRESHOLD", "0.98")
SEMANTIC_CACHE_MAX_ENTRIES: int = _int("SEMANTIC_CACHE_MAX_ENTRIES", "5000")

# Run limits
AI_CALL_BUDGET: int = _int("AI_CALL_BUDGET", "100")
RUN_DEADLINE_SECONDS: float = _float("RUN_DEADLINE_SECONDS", "600")
PERMUTATION_COUNT: int = _int("PERMUTATION_COUNT", "100")
RANDOM_SEED: int = _int("RANDOM_SEED", "42")

# Bulkhead
SEARCH_PER_USER_LIMIT: int = _int("SEARCH_PER_USER_LIMIT", "3")
SEARCH_GLOBAL_LIMIT: int = _int("SEARCH_GLOBAL_LIMIT", "50")
EXTRACTION_PER_USER_LIMIT: int = _int("EXTRACTION_PER_USER_LIMIT", "1")
EXTRACTION_GLOBAL_LIMIT: int = _int("EXTRACTION_GLOBAL_LIMIT", "10")
BULKHEAD_QUEUE_TIMEOUT: float = _float("BULKHEAD_QUEUE_TIMEOUT", "30")
CIRCUIT_FAILURE_THRESHOLD: int = _int("CIRCUIT_FAILURE_THRESHOLD", "5")
CIRCUIT_COOLDOWN_SECONDS: float = _float("CIRCUIT_COOLDOWN_SECONDS", "30")

# Retry
RETRY_MAX_ATTEMPTS: int = _int("RETRY_MAX_ATTEMPTS", "3")
RETRY_BASE_DELAY: float = _float("RETRY_BASE_DELAY", "0.25")
RETRY_MAX_DELAY: float = _float("RETRY_MAX_DELAY", "8")

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = _int("PORT", "8000")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Derived paths
LANCEDB_PATH: Path = DATA_DIR / "lancedb"


@dataclass(frozen=True)
class PurposeBounds:
    """Construct-count bounds for one purpose.

    ``k_min``/``k_max`` bound the adaptive-k search, ``min_constructs`` and
    ``max_constructs`` bound the final output, ``target`` is the refinement goal.
    """

    k_min: int
    k_max: int
    min_constructs: int
    max_constructs: int
    target: int


_PURPOSE_BOUNDS: dict[str, PurposeBounds] = {
    "concourse": PurposeBounds(
        k_min=_int("CONCOURSE_K_MIN", "30"),
        k_max=_int("CONCOURSE_K_MAX", "80"),
        min_constructs=_int("CONCOURSE_MIN_CONSTRUCTS", "40"),
        max_constructs=_int("CONCOURSE_MAX_CONSTRUCTS", "80"),
        target=_int("CONCOURSE_TARGET", "60"),
    ),
    "survey": PurposeBounds(
        k_min=8,
        k_max=12,
        min_constructs=_int("SURVEY_MIN_CONSTRUCTS", "8"),
        max_constructs=_int("SURVEY_MAX_CONSTRUCTS", "12"),
        target=_int("SURVEY_TARGET", "10"),
    ),
    "saturation": PurposeBounds(
        k_min=_int("SATURATION_MIN_THEMES", "5"),
        k_max=_int("SATURATION_MAX_THEMES", "20"),
        min_constructs=_int("SATURATION_MIN_THEMES", "5"),
        max_constructs=_int("SATURATION_MAX_THEMES", "20"),
        target=12,
    ),
    "synthesis": PurposeBounds(
        k_min=10,
        k_max=25,
        min_constructs=_int("SYNTHESIS_MIN_THEMES", "10"),
        max_constructs=_int("SYNTHESIS_MAX_THEMES", "25"),
        target=15,
    ),
    "grounded": PurposeBounds(
        k_min=8,
        k_max=15,
        min_constructs=_int("GROUNDED_MIN_THEMES", "8"),
        max_constructs=_int("GROUNDED_MAX_THEMES", "15"),
        target=12,
    ),
}


def purpose_bounds(purpose: str) -> PurposeBounds:
    """Return the construct-count bounds for a purpose value (e.g. "survey")."""
    return _PURPOSE_BOUNDS[purpose]
