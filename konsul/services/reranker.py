"""HTTP client for the Cohere re-rank endpoint.

Re-ranking is a best-effort second pass, so unlike the integration
clients this one never retries: any timeout, transport error or non-2xx
response is raised as :class:`RerankError` and the caller falls back to
vector-similarity order.

Cohere API docs: https://docs.cohere.com/reference/rerank
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

import httpx

from konsul.config import COHERE_BASE_URL, RERANK_MODEL_NAME, RERANK_TIMEOUT_SECONDS, get_secret
from konsul.services.metrics import metrics

logger = logging.getLogger(__name__)


class RerankError(Exception):
    """Raised when the re-rank call fails for any reason."""


class CohereReranker:
    """Thin wrapper around ``POST /v1/rerank``."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = RERANK_MODEL_NAME,
        base_url: str = COHERE_BASE_URL,
        timeout: float = RERANK_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def rerank(self, query: str, documents: Sequence[str], top_n: int) -> list[int]:
        """Return indices into ``documents``, most relevant first."""
        t0 = time.perf_counter()
        try:
            response = self._client.post(
                "/v1/rerank",
                json={
                    "model": self.model,
                    "query": query,
                    "documents": list(documents),
                    "top_n": top_n,
                },
            )
            if response.status_code >= 400:
                raise RerankError(f"Rerank error {response.status_code}: {response.text}")
            body = response.json()
            results = body.get("results") if isinstance(body, dict) else None
            if not isinstance(results, list) or not all(isinstance(item, dict) for item in results):
                raise RerankError(f"Rerank returned an unexpected body: {body!r}")
            indices = [int(item["index"]) for item in results]
        except RerankError as exc:
            self._record_failure(t0, exc)
            raise
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            self._record_failure(t0, exc)
            raise RerankError(f"Rerank request failed: {exc}") from exc

        if any(i < 0 or i >= len(documents) for i in indices):
            raise RerankError(f"Rerank returned out-of-range indices: {indices}")

        metrics.record_success("cohere", "rerank", latency_ms=(time.perf_counter() - t0) * 1000)
        return indices

    @staticmethod
    def _record_failure(t0: float, exc: Exception) -> None:
        metrics.record_failure(
            "cohere", "rerank",
            error_type=type(exc).__name__, latency_ms=(time.perf_counter() - t0) * 1000,
        )


def build_default_reranker() -> CohereReranker | None:
    """Return a re-ranker when ``COHERE_API_KEY`` is configured, else ``None``."""
    api_key = get_secret("COHERE_API_KEY")
    if not api_key:
        return None
    return CohereReranker(api_key)
