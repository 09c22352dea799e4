"""Konsul - multi-tenant conversational agent orchestration engine.

Architecture Overview
=====================

Given an agent configuration, a conversation and a new visitor message, the
engine produces one reply plus usage accounting.  A reply cycle is a
**LangGraph** state machine (see ``konsul/agent.py``):

1. **retrieve** - HyDE expansion, vector scoring and optional re-ranking of
   the agent's knowledge passages (only when smart retrieval is enabled).
2. **compose** - a deterministic system prompt built from the agent's
   identity, persona, feature flags, knowledge and capture rules.
3. **model** - one provider round trip through an explicit fallback chain
   (requested family variants, then a known-good fallback family).
4. **tools** - the model's tool calls dispatched through the capability
   catalog enabled for the agent.
5. **finalize** - the reply text; apology on terminal provider failure.

Routing: model → (tool calls?) → tools → model, at most three round trips.

Key Design Decisions
--------------------
- **Providers**: OpenAI and Anthropic chat models through LangChain, client
  retries disabled; retrying means moving down the fallback chain.
- **Never raise**: every terminal state resolves to a well-formed reply.
- **Single writer**: reply cycles for the same conversation are serialized.
- **Capabilities**: each integration contributes a fixed set of tools, so no
  tool is ever offered that cannot be serviced.
- **Persistence**: the engine depends on the ``ConversationStore`` protocol;
  an in-memory implementation backs the CLI, the server and the tests.

Package Structure
-----------------
- ``konsul/agent.py`` - LangGraph orchestrator and ``generate_reply``
- ``konsul/config.py`` - centralized configuration from environment variables
- ``konsul/models.py`` - pydantic domain model
- ``konsul/providers.py`` - fallback chain and provider session
- ``konsul/retrieval.py`` / ``konsul/embeddings.py`` - knowledge retrieval
- ``konsul/prompts.py`` - system prompt composition
- ``konsul/contacts.py`` - contact reconciliation
- ``konsul/escalation.py`` - ACTIVE → PENDING → CLOSED handoff
- ``konsul/accounting.py`` - token → credit accounting
- ``konsul/tools/`` - tool registry, capabilities and handlers
- ``konsul/services/`` - store, HTTP clients, cache and metrics
- ``konsul/server.py`` / ``konsul/api/`` - FastAPI surface
- ``konsul/main.py`` - CLI chat loop
"""
