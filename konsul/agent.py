"""LangGraph-based reply orchestrator.

Architecture:
  One reply cycle is a LangGraph StateGraph with five nodes:

    1. **retrieve**  - knowledge passages for the message (smart-retrieval only)
    2. **compose**   - deterministic system prompt
    3. **model**     - one provider round trip through the fallback chain
    4. **tools**     - dispatches the requested tool calls in provider order
    5. **finalize**  - picks the reply text

  Routing:
    retrieve → compose → model → (tool calls?) → tools → model (loop)
                               → (final text / failure?) → finalize → END
    tools → (round-trip cap reached?) → finalize

  The loop is bounded by ``MAX_TOOL_ITERATIONS`` provider round trips.
  Conversation history lives in the store, not in a checkpointer, so the
  graph is compiled once and reused for every agent.

``Orchestrator.generate_reply`` is the single entry point for channel
adapters.  It serializes cycles per conversation and never raises.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from konsul.accounting import charge_usage
from konsul.config import HISTORY_LIMIT, MAX_TOOL_ITERATIONS, STRICT_ESCALATION
from konsul.embeddings import Embedder
from konsul.escalation import DEFAULT_VISITOR_NAME
from konsul.models import AgentConfig, ConversationState, Message, MessageRole, ReplyResult, ToolResult
from konsul.prompts import build_system_prompt
from konsul.providers import (
    FallbackChain,
    ModelFactory,
    ModelTurn,
    ProviderConfigError,
    ProviderSession,
    ProviderUnavailableError,
    build_chat_model,
)
from konsul.retrieval import KnowledgeRetriever
from konsul.services.cache import EmbeddingCache
from konsul.services.notifications import HandoffNotifier, build_default_notifier
from konsul.services.reranker import build_default_reranker
from konsul.services.store import ConversationStore
from konsul.tools.catalog import build_catalog
from konsul.tools.registry import ToolCatalog, ToolContext

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "I'm sorry, I'm having trouble responding right now. Please try again in a moment."
)
LOOP_FALLBACK_MESSAGE = (
    "I'm sorry, I couldn't finish processing your request. Could you tell me a bit more?"
)
CONFIG_ERROR_MESSAGE = (
    "This assistant is not configured correctly ({detail}). "
    "Please contact the site administrator."
)
HUMAN_AGENT_PREFIX = "[Human agent]: "


# ── Single writer per conversation ───────────────────────────────────


@dataclass
class _LockEntry:
    lock: threading.Lock
    holders: int = 0


class ConversationLocks:
    """Keyed locks so only one reply cycle runs per conversation at a time.

    Entries are reference-counted and dropped once nobody holds or waits on
    them, so the registry only grows with *concurrent* conversations.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(conversation_id)
            if entry is None:
                entry = self._entries[conversation_id] = _LockEntry(threading.Lock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[conversation_id]


# ── History ──────────────────────────────────────────────────────────


def build_history(
    messages: Sequence[Message],
    user_message: str,
    limit: int = HISTORY_LIMIT,
) -> list[BaseMessage]:
    """Convert stored messages into chat turns for the model.

    Channel adapters store the inbound message before asking for a reply;
    when the last stored message is that same text it is left out here,
    since the session appends the inbound message itself.
    """
    stored = list(messages)
    if stored and stored[-1].role is MessageRole.USER and stored[-1].content == user_message:
        stored.pop()

    history: list[BaseMessage] = []
    for message in stored[-limit:] if limit > 0 else []:
        if message.role is MessageRole.USER:
            history.append(HumanMessage(content=message.content))
        elif message.role is MessageRole.HUMAN:
            history.append(AIMessage(content=f"{HUMAN_AGENT_PREFIX}{message.content}"))
        else:
            history.append(AIMessage(content=message.content))
    return history


# ── State schema ─────────────────────────────────────────────────────


class CycleState(TypedDict, total=False):
    """The state that flows through the graph for one reply cycle.

    ``session``, ``catalog`` and ``tool_context`` are per-cycle runtime
    objects; nothing here is checkpointed.
    """

    agent: AgentConfig
    user_message: str
    history: list[BaseMessage]
    session: ProviderSession
    catalog: ToolCatalog
    tool_context: ToolContext

    passages: list[str]
    system_prompt: str
    turn: ModelTurn | None
    round_trips: int
    tool_results: list[ToolResult]
    tools_called: list[str]
    last_text: str
    failure: str | None
    reply: str


# ── Orchestrator ─────────────────────────────────────────────────────


class Orchestrator:
    """Generates agent replies against a :class:`ConversationStore`."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        retriever: KnowledgeRetriever | None = None,
        notifier: HandoffNotifier | None = None,
        model_factory: ModelFactory = build_chat_model,
        clock: Callable[[], datetime] | None = None,
        max_round_trips: int = MAX_TOOL_ITERATIONS,
        history_limit: int = HISTORY_LIMIT,
        strict_escalation: bool = STRICT_ESCALATION,
    ) -> None:
        self.store = store
        self._retriever = retriever
        self._notifier = notifier
        self._model_factory = model_factory
        self._clock = clock or (lambda: datetime.now(UTC))
        self._max_round_trips = max_round_trips
        self._history_limit = history_limit
        self._strict_escalation = strict_escalation
        self.locks = ConversationLocks()
        self._graph = self._build_graph()

    # ── Lazily built collaborators ────────────────────────────────────

    @property
    def retriever(self) -> KnowledgeRetriever:
        if self._retriever is None:
            self._retriever = KnowledgeRetriever(
                self.store,
                Embedder(cache=EmbeddingCache()),
                reranker=build_default_reranker(),
            )
        return self._retriever

    @property
    def notifier(self) -> HandoffNotifier:
        if self._notifier is None:
            self._notifier = build_default_notifier()
        return self._notifier

    # ── Nodes ─────────────────────────────────────────────────────────

    def _retrieve_node(self, state: CycleState) -> dict:
        agent = state["agent"]
        if not agent.smart_retrieval:
            return {"passages": []}
        passages = self.retriever.retrieve(agent.id, state["user_message"])
        logger.debug("Retrieved %d passage(s) for agent %s", len(passages), agent.id)
        return {"passages": passages}

    def _compose_node(self, state: CycleState) -> dict:
        prompt = build_system_prompt(state["agent"], state["passages"], now=self._clock())
        return {"system_prompt": prompt}

    def _model_node(self, state: CycleState) -> dict:
        session = state["session"]
        round_trips = state.get("round_trips", 0)
        try:
            if round_trips == 0:
                turn = session.converse(state["system_prompt"], state["history"], state["user_message"])
            else:
                turn = session.resume(state["tool_results"])
        except ProviderConfigError as exc:
            logger.error("Agent %s misconfigured: %s", state["agent"].id, exc)
            return {"turn": None, "failure": "config", "reply": CONFIG_ERROR_MESSAGE.format(detail=exc)}
        except ProviderUnavailableError as exc:
            logger.error("No model available for agent %s: %s", state["agent"].id, exc)
            return {"turn": None, "failure": "unavailable"}

        update: dict[str, Any] = {"turn": turn, "round_trips": round_trips + 1}
        if turn.text:
            update["last_text"] = turn.text
        return update

    def _tools_node(self, state: CycleState) -> dict:
        calls = state["turn"].tool_calls
        logger.debug("Dispatching %d tool call(s): %s", len(calls), [c.name for c in calls])
        results = state["catalog"].dispatch_all(calls, state["tool_context"])
        return {
            "tool_results": results,
            "tools_called": [*state.get("tools_called", []), *(c.name for c in calls)],
        }

    def _finalize_node(self, state: CycleState) -> dict:
        if state.get("failure") == "config":
            return {"reply": state["reply"]}
        turn = state.get("turn")
        if turn is not None and turn.is_final and turn.text:
            return {"reply": turn.text}
        if state.get("last_text"):
            return {"reply": state["last_text"]}
        if state.get("failure"):
            return {"reply": APOLOGY_MESSAGE}
        logger.warning("Tool loop ended without a text reply for agent %s", state["agent"].id)
        return {"reply": LOOP_FALLBACK_MESSAGE}

    # ── Conditional edges ─────────────────────────────────────────────

    @staticmethod
    def _after_model(state: CycleState) -> str:
        turn = state.get("turn")
        if turn is None or turn.is_final:
            return "finalize"
        return "tools"

    def _after_tools(self, state: CycleState) -> str:
        if state["round_trips"] >= self._max_round_trips:
            logger.info("Tool loop cap (%d) reached; finishing cycle", self._max_round_trips)
            return "finalize"
        return "model"

    # ── Graph assembly ────────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(CycleState)
        graph.add_node("retrieve", self._retrieve_node)
        graph.add_node("compose", self._compose_node)
        graph.add_node("model", self._model_node)
        graph.add_node("tools", self._tools_node)
        graph.add_node("finalize", self._finalize_node)

        graph.set_entry_point("retrieve")
        graph.add_edge("retrieve", "compose")
        graph.add_edge("compose", "model")
        graph.add_conditional_edges(
            "model", self._after_model, {"tools": "tools", "finalize": "finalize"},
        )
        graph.add_conditional_edges(
            "tools", self._after_tools, {"model": "model", "finalize": "finalize"},
        )
        graph.add_edge("finalize", END)
        return graph.compile()

    # ── Cycle ─────────────────────────────────────────────────────────

    def _ensure_contact(self, agent: AgentConfig, conversation: ConversationState) -> None:
        if conversation.contact_id is not None:
            return
        try:
            contact = self.store.create_contact(
                agent.workspace_id,
                name=conversation.contact_name or DEFAULT_VISITOR_NAME,
                email=conversation.contact_email,
                external_id=conversation.external_id,
            )
            self.store.link_contact(conversation.id, contact.id)
        except Exception:
            logger.exception("Could not create a contact for conversation %s", conversation.id)
            return
        conversation.contact_id = contact.id
        logger.info("Created contact %s for conversation %s", contact.id, conversation.id)

    def _run_cycle(self, agent_id: str, conversation_id: str, user_message: str) -> ReplyResult:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            logger.warning("Agent %s not found", agent_id)
            return ReplyResult(reply=APOLOGY_MESSAGE)
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or conversation.agent_id != agent_id:
            logger.warning("Conversation %s not found for agent %s", conversation_id, agent_id)
            return ReplyResult(reply=APOLOGY_MESSAGE)

        self._ensure_contact(agent, conversation)

        catalog = build_catalog(agent)
        session = ProviderSession(
            FallbackChain.for_model(agent.model),
            tools=catalog.schemas(),
            temperature=agent.temperature,
            model_factory=self._model_factory,
        )
        tool_context = ToolContext(
            store=self.store,
            agent=agent,
            conversation_id=conversation_id,
            notifier=self.notifier if agent.transfer_to_human else None,
            strict_escalation=self._strict_escalation,
        )
        logger.debug("Cycle for %s/%s with tools %s", agent_id, conversation_id, catalog.names)

        final = self._graph.invoke({
            "agent": agent,
            "user_message": user_message,
            "history": build_history(conversation.messages, user_message, self._history_limit),
            "session": session,
            "catalog": catalog,
            "tool_context": tool_context,
            "round_trips": 0,
            "tools_called": [],
            "last_text": "",
            "failure": None,
        })

        reply = final["reply"]
        if final.get("failure") == "config":
            return ReplyResult(reply=reply)

        model_name = session.bound.model if session.bound else agent.model
        now = self._clock()
        self.store.append_message(conversation_id, Message(
            role=MessageRole.AGENT,
            content=reply,
            metadata={
                "model": model_name,
                "tokens_used": session.tokens_used,
                "tools_called": final.get("tools_called", []),
                "knowledge_passages": len(final.get("passages", [])),
            },
            created_at=now,
        ))
        self.store.update_conversation(conversation_id, last_message_at=now)

        usage = charge_usage(
            self.store,
            workspace_id=agent.workspace_id,
            agent_id=agent_id,
            conversation_id=conversation_id,
            tokens=session.tokens_used,
            model=model_name,
        )
        return ReplyResult(reply=reply, tokens_used=usage.tokens_used, credits_used=usage.credits_used)

    def _store_inbound(self, agent_id: str, conversation_id: str, user_message: str) -> None:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or conversation.agent_id != agent_id:
            return
        now = self._clock()
        self.store.append_message(
            conversation_id,
            Message(role=MessageRole.USER, content=user_message, created_at=now),
        )
        self.store.update_conversation(conversation_id, last_message_at=now)

    def generate_reply(
        self,
        agent_id: str,
        conversation_id: str,
        user_message: str,
        *,
        store_message: bool = False,
    ) -> ReplyResult:
        """Produce the agent's reply to ``user_message``.  Never raises.

        With ``store_message`` the inbound message is appended to the
        conversation inside the same locked cycle, so concurrent messages on
        one conversation are stored and answered one at a time.
        """
        with self.locks.hold(conversation_id):
            try:
                if store_message:
                    self._store_inbound(agent_id, conversation_id, user_message)
                return self._run_cycle(agent_id, conversation_id, user_message)
            except Exception:
                logger.exception("Reply cycle failed for conversation %s", conversation_id)
                return ReplyResult(reply=APOLOGY_MESSAGE)
