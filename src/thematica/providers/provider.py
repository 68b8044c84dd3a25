"""Embedding / generation provider interfaces with Gemini and local implementations."""

from __future__ import annotations

import logging
import time
from typing import Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from thematica import config
from thematica.errors import ProviderError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that maps texts to raw vectors of a fixed dimensionality."""

    name: str
    model: str
    dimensions: int
    rate_limited: bool

    def embed(self, texts: list[str]) -> list[list[float]]:
        """One raw vector per input text, in input order."""
        ...


class GenerationProvider(Protocol):
    """Prompt in, text out. Used by the assistant for splitting, coding and labeling."""

    def generate(self, prompt: str, system: str | None = None) -> str:
        """Return the model reply to ``prompt``."""
        ...


def _wrap_api_error(e: genai_errors.APIError) -> ProviderError:
    code = getattr(e, "code", None)
    retryable = code is None or code == 429 or code >= 500
    return ProviderError(str(e), provider="gemini", status_code=code, retryable=retryable)


class GeminiProvider:
    """Gemini implementation of embedding and generation.

    Remote and rate-limited, so the orchestrator fans out to fewer workers.
    """

    name = "gemini"
    rate_limited = True

    def __init__(
        self,
        api_key: str | None = None,
        embedding_model: str | None = None,
        embedding_dims: int | None = None,
        generation_model: str | None = None,
    ) -> None:
        self._client = genai.Client(api_key=api_key or config.GEMINI_API_KEY)
        self.model = embedding_model or config.EMBEDDING_MODEL
        self.dimensions = embedding_dims or config.EMBEDDING_DIMS
        self._generation_model = generation_model or config.GEMINI_MODEL

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed one batch with ``embed_content`` (at most 250 texts per call).

        Raises:
            ProviderError: The API call failed; ``retryable`` reflects the status.
        """
        total_chars = sum(len(t) for t in texts)
        logger.debug("Embedding %d text(s) (%d chars) via %s", len(texts), total_chars, self.model)
        t0 = time.perf_counter()
        try:
            result = self._client.models.embed_content(
                model=self.model,
                contents=texts,
                config=types.EmbedContentConfig(
                    output_dimensionality=self.dimensions,
                ),
            )
        except genai_errors.APIError as e:
            raise _wrap_api_error(e) from e
        logger.debug("Embed complete: %.0fms", (time.perf_counter() - t0) * 1000)
        return [e.values for e in result.embeddings]

    def generate(self, prompt: str, system: str | None = None) -> str:
        """Ask the generation model for a JSON reply to ``prompt``."""
        logger.debug("Generate via %s (%d char prompt)", self._generation_model, len(prompt))
        t0 = time.perf_counter()
        gen_config = types.GenerateContentConfig(
            system_instruction=system,
            response_mime_type="application/json",
        )
        try:
            response = self._client.models.generate_content(
                model=self._generation_model,
                contents=prompt,
                config=gen_config,
            )
        except genai_errors.APIError as e:
            raise _wrap_api_error(e) from e
        logger.debug("Generate complete: %d chars, %.0fms", len(response.text or ""), (time.perf_counter() - t0) * 1000)
        return response.text or ""


class LocalEmbeddingProvider:
    """Self-hosted sentence-transformers model; no external rate limit."""

    name = "local"
    rate_limited = False

    def __init__(self, model_name: str | None = None, dimensions: int | None = None) -> None:
        # Imported lazily: torch is heavy and only needed for local embeddings
        from sentence_transformers import SentenceTransformer

        self.model = model_name or config.LOCAL_EMBEDDING_MODEL
        logger.info("Loading local embedding model %s", self.model)
        t0 = time.perf_counter()
        self._model = SentenceTransformer(self.model)
        self.dimensions = dimensions or self._model.get_sentence_embedding_dimension()
        logger.info("Local model ready: dimension=%d (%.2fs)", self.dimensions, time.perf_counter() - t0)

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors = self._model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return vectors.astype("float32").tolist()


def create_embedding_provider(kind: str | None = None) -> EmbeddingProvider:
    """Build the configured embedding provider ("local" or "gemini")."""
    kind = (kind or config.EMBEDDING_PROVIDER).lower()
    if kind == "local":
        return LocalEmbeddingProvider()
    if kind == "gemini":
        return GeminiProvider()
    raise ValueError(f"Unknown embedding provider: {kind!r}")
