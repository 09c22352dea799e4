"""Text embeddings and vector similarity.

``Embedder`` wraps the OpenAI embeddings endpoint (through LangChain) with
an explicit timeout and an in-memory LRU cache, so re-embedding the same
query or passage within a process is free.  ``cosine_similarity`` is a pure
function and treats zero-norm vectors as unrelated (score 0) instead of
failing.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Sequence

from langchain_openai import OpenAIEmbeddings

from konsul.config import EMBEDDING_MODEL_NAME, EMBEDDING_TIMEOUT_SECONDS, get_secret
from konsul.services.cache import EmbeddingCache
from konsul.services.metrics import metrics

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when vectors cannot be produced for the given text."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return the cosine of the angle between ``a`` and ``b``, in [-1, 1].

    Vectors of different length or with zero norm score 0.
    """
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    norm = math.sqrt(math.fsum(x * x for x in a)) * math.sqrt(math.fsum(y * y for y in b))
    if norm == 0.0:
        return 0.0
    score = math.fsum(x * y for x, y in zip(a, b, strict=True)) / norm
    # Clamp float noise so callers can rely on the documented range.
    return max(-1.0, min(1.0, score))


class Embedder:
    """Deterministic text → vector mapping for a fixed embedding model."""

    def __init__(
        self,
        model: str = EMBEDDING_MODEL_NAME,
        *,
        cache: EmbeddingCache | None = None,
        client: OpenAIEmbeddings | None = None,
    ) -> None:
        self.model = model
        self._cache = cache or EmbeddingCache()
        self._client = client

    def _get_client(self) -> OpenAIEmbeddings:
        if self._client is None:
            api_key = get_secret("OPENAI_API_KEY")
            if not api_key:
                raise EmbeddingError("OPENAI_API_KEY is not configured")
            self._client = OpenAIEmbeddings(
                model=self.model,
                api_key=api_key,
                timeout=EMBEDDING_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._client

    def embed(self, text: str) -> list[float]:
        """Embed a single text (cached)."""
        return self.embed_many([text])[0]

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts, sending only cache misses to the backend."""
        keys = [self._cache.key_for(self.model, t) for t in texts]
        vectors: list[list[float] | None] = [self._cache.get(k) for k in keys]
        missing = [i for i, v in enumerate(vectors) if v is None]

        if missing:
            t0 = time.perf_counter()
            try:
                fresh = self._get_client().embed_documents([texts[i] for i in missing])
            except EmbeddingError:
                raise
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "openai", "embed", error_type=type(exc).__name__, latency_ms=elapsed,
                )
                raise EmbeddingError(f"Embedding request failed: {exc}") from exc
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("openai", "embed", latency_ms=elapsed)
            logger.debug("Embedded %d text(s) with %s in %.0fms", len(missing), self.model, elapsed)

            for i, vector in zip(missing, fresh, strict=True):
                vectors[i] = list(vector)
                self._cache.put(keys[i], vectors[i])

        return [v for v in vectors if v is not None]
