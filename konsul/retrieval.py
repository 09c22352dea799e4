"""Knowledge retrieval: HyDE expansion → vector scoring → optional re-rank.

Pipeline
--------
1. **HyDE** - a lightweight model writes a hypothetical, manual-style answer
   to the query.  Any failure degrades to the raw query.
2. **Query vector** - the query and the hypothetical answer are embedded
   together so the vector carries both the user's intent and domain
   vocabulary.
3. **Candidate scoring** - every passage of the agent's knowledge base is
   scored by cosine similarity; the top ``candidates`` are kept.
4. **Re-rank** (optional) - an external re-ranker reorders the candidates
   against the *raw* query.  Any failure degrades to similarity order.

The HyDE call and the passage load are independent, so they run
concurrently.  ``retrieve`` never raises.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from konsul.config import HYDE_MODEL_NAME, HYDE_TIMEOUT_SECONDS, RETRIEVAL_CANDIDATES, RETRIEVAL_LIMIT
from konsul.embeddings import Embedder, cosine_similarity
from konsul.models import KnowledgePassage
from konsul.providers import ProviderConfigError, build_chat_model, provider_for_model
from konsul.services.metrics import metrics
from konsul.services.reranker import CohereReranker
from konsul.services.store import ConversationStore

logger = logging.getLogger(__name__)

HYDE_PROMPT = (
    "Answer the following user question in a technical, detailed way, as if "
    "you were an expert writing an official manual. Do not greet the user and "
    "do not introduce the answer; go straight to the point.\n\n"
    "Question: {query}\n\n"
    "Hypothetical answer:"
)


@dataclass(frozen=True)
class ScoredPassage:
    passage: KnowledgePassage
    score: float


def rank_by_similarity(
    query_vector: list[float],
    passages: list[KnowledgePassage],
    vectors: list[list[float]],
) -> list[ScoredPassage]:
    """Score passages against ``query_vector``, highest similarity first.

    The sort is stable, so passages with equal scores keep their knowledge
    base order and the ranking is reproducible.
    """
    scored = [
        ScoredPassage(passage=p, score=cosine_similarity(query_vector, v))
        for p, v in zip(passages, vectors, strict=True)
    ]
    scored.sort(key=lambda sp: sp.score, reverse=True)
    return scored


class KnowledgeRetriever:
    """Retrieve the passages most relevant to a user query for one agent."""

    def __init__(
        self,
        store: ConversationStore,
        embedder: Embedder,
        *,
        reranker: CohereReranker | None = None,
        hyde_model: BaseChatModel | None = None,
        candidates: int = RETRIEVAL_CANDIDATES,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._reranker = reranker
        self._hyde_model = hyde_model
        self._candidates = candidates

    # ── HyDE ─────────────────────────────────────────────────────────

    def _get_hyde_model(self) -> BaseChatModel:
        if self._hyde_model is None:
            self._hyde_model = build_chat_model(
                HYDE_MODEL_NAME,
                temperature=0.0,
                max_tokens=300,
                timeout=HYDE_TIMEOUT_SECONDS,
            )
        return self._hyde_model

    def hypothetical_answer(self, query: str) -> str:
        """Return a hypothetical answer for ``query``, or ``query`` itself on failure."""
        t0 = time.perf_counter()
        service = provider_for_model(HYDE_MODEL_NAME) or "unknown"
        try:
            response = self._get_hyde_model().invoke(
                [HumanMessage(content=HYDE_PROMPT.format(query=query))]
            )
        except ProviderConfigError as exc:
            logger.warning("HyDE disabled, using raw query: %s", exc)
            return query
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(service, "hyde", error_type=type(exc).__name__, latency_ms=elapsed)
            logger.warning("HyDE generation failed, using raw query: %s", exc)
            return query

        metrics.record_success(service, "hyde", latency_ms=(time.perf_counter() - t0) * 1000)
        content = response.content if isinstance(response.content, str) else ""
        return content.strip() or query

    # ── Scoring ──────────────────────────────────────────────────────

    def _passage_vectors(self, passages: list[KnowledgePassage]) -> list[list[float]]:
        """Return stored vectors, embedding only passages indexed without one."""
        vectors: list[list[float] | None] = [list(p.embedding) or None for p in passages]
        missing = [i for i, v in enumerate(vectors) if v is None]
        if missing:
            logger.debug("Embedding %d passage(s) without a stored vector", len(missing))
            fresh = self._embedder.embed_many([passages[i].content for i in missing])
            for i, vector in zip(missing, fresh, strict=True):
                vectors[i] = vector
        return [v or [] for v in vectors]

    def candidates(self, agent_id: str, query: str) -> list[ScoredPassage]:
        """Run steps 1-3 and return the similarity-ordered candidate prefix."""
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="retrieval")
        try:
            hyde_future = pool.submit(self.hypothetical_answer, query)
            passages = pool.submit(self._store.list_passages, agent_id).result()
            if not passages:
                logger.info("No knowledge passages for agent %s", agent_id)
                return []
            hypothetical = hyde_future.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        query_vector = self._embedder.embed(f"Question: {query}\nContext: {hypothetical}")
        scored = rank_by_similarity(query_vector, passages, self._passage_vectors(passages))
        logger.debug(
            "Scored %d passage(s) for agent %s; keeping %d candidate(s)",
            len(scored), agent_id, min(len(scored), self._candidates),
        )
        return scored[: self._candidates]

    # ── Public entry point ───────────────────────────────────────────

    def retrieve(self, agent_id: str, query: str, limit: int = RETRIEVAL_LIMIT) -> list[str]:
        """Return up to ``limit`` passage texts, most relevant first.

        Never raises: an unexpected failure (e.g. the embedding backend is
        down) is logged and yields no context.
        """
        try:
            top = self.candidates(agent_id, query)
        except Exception:
            logger.exception("Retrieval failed for agent %s; continuing without context", agent_id)
            return []

        if not top:
            return []

        fallback = [sp.passage.content for sp in top[:limit]]
        if self._reranker is None:
            return fallback

        try:
            order = self._reranker.rerank(query, [sp.passage.content for sp in top], top_n=limit)
            ranked = [top[i].passage.content for i in order][:limit]
        except Exception as exc:
            logger.warning("Re-rank failed, using similarity order: %s", exc)
            return fallback
        return ranked
