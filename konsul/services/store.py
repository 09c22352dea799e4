"""Persistence boundary for the conversational engine.

The engine never talks to a database directly.  It depends on the
:class:`ConversationStore` protocol below; production deployments plug in
their own implementation, while tests and the CLI use
:class:`InMemoryStore`.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from konsul.models import (
    AgentConfig,
    ContactRecord,
    ConversationState,
    ConversationStatus,
    IntegrationEvent,
    KnowledgePassage,
    Message,
    UsageRecord,
    Workspace,
)

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Reads and writes the engine performs against the product database."""

    def get_agent(self, agent_id: str) -> AgentConfig | None: ...

    def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    def get_conversation(self, conversation_id: str) -> ConversationState | None: ...

    def list_passages(self, agent_id: str) -> list[KnowledgePassage]: ...

    def custom_field_keys(self, workspace_id: str) -> set[str]: ...

    def get_contact(self, contact_id: str) -> ContactRecord | None: ...

    def create_contact(
        self,
        workspace_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        external_id: str | None = None,
    ) -> ContactRecord: ...

    def save_contact(self, contact: ContactRecord) -> None: ...

    def link_contact(self, conversation_id: str, contact_id: str) -> None: ...

    def append_message(self, conversation_id: str, message: Message) -> None: ...

    def update_conversation(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        last_message_at: datetime | None = None,
    ) -> None: ...

    def record_usage(self, usage: UsageRecord) -> None: ...

    def decrement_credits(self, workspace_id: str, credits: int) -> None: ...

    def log_integration_event(self, event: IntegrationEvent) -> None: ...


class InMemoryStore:
    """Dictionary-backed :class:`ConversationStore`.

    Every read returns a deep copy so callers can never mutate stored
    state except through the write methods.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.agents: dict[str, AgentConfig] = {}
        self.workspaces: dict[str, Workspace] = {}
        self.conversations: dict[str, ConversationState] = {}
        self.contacts: dict[str, ContactRecord] = {}
        self.passages: dict[str, list[KnowledgePassage]] = {}
        self.usage: list[UsageRecord] = []
        self.integration_events: list[IntegrationEvent] = []

    # ── Seeding ──────────────────────────────────────────────────────

    def add_agent(self, agent: AgentConfig) -> None:
        self.agents[agent.id] = agent

    def add_workspace(self, workspace: Workspace) -> None:
        self.workspaces[workspace.id] = workspace

    def add_conversation(self, conversation: ConversationState) -> None:
        self.conversations[conversation.id] = conversation

    def add_contact(self, contact: ContactRecord) -> None:
        self.contacts[contact.id] = contact

    def add_passages(self, agent_id: str, passages: list[KnowledgePassage]) -> None:
        self.passages.setdefault(agent_id, []).extend(passages)

    @classmethod
    def from_json(cls, path: str | Path) -> InMemoryStore:
        """Build a store from a seed file with ``workspaces``, ``agents``,
        ``conversations``, ``contacts`` and ``passages`` (keyed by agent id).
        """
        data: dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
        store = cls()
        for raw in data.get("workspaces", []):
            store.add_workspace(Workspace.model_validate(raw))
        for raw in data.get("agents", []):
            store.add_agent(AgentConfig.model_validate(raw))
        for raw in data.get("conversations", []):
            store.add_conversation(ConversationState.model_validate(raw))
        for raw in data.get("contacts", []):
            store.add_contact(ContactRecord.model_validate(raw))
        for agent_id, passages in data.get("passages", {}).items():
            store.add_passages(agent_id, [KnowledgePassage.model_validate(p) for p in passages])
        logger.info(
            "Loaded seed %s: %d agent(s), %d conversation(s)",
            path, len(store.agents), len(store.conversations),
        )
        return store

    # ── Reads ────────────────────────────────────────────────────────

    def get_agent(self, agent_id: str) -> AgentConfig | None:
        return self.agents.get(agent_id)

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        with self._lock:
            workspace = self.workspaces.get(workspace_id)
            return workspace.model_copy(deep=True) if workspace else None

    def get_conversation(self, conversation_id: str) -> ConversationState | None:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def list_passages(self, agent_id: str) -> list[KnowledgePassage]:
        return list(self.passages.get(agent_id, []))

    def custom_field_keys(self, workspace_id: str) -> set[str]:
        return {
            field.key
            for agent in self.agents.values()
            if agent.workspace_id == workspace_id
            for field in agent.custom_fields
        }

    def get_contact(self, contact_id: str) -> ContactRecord | None:
        with self._lock:
            contact = self.contacts.get(contact_id)
            return contact.model_copy(deep=True) if contact else None

    # ── Writes ───────────────────────────────────────────────────────

    def create_contact(
        self,
        workspace_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        external_id: str | None = None,
    ) -> ContactRecord:
        contact = ContactRecord(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            name=name,
            email=email,
            external_id=external_id,
        )
        with self._lock:
            self.contacts[contact.id] = contact
        return contact.model_copy(deep=True)

    def save_contact(self, contact: ContactRecord) -> None:
        with self._lock:
            if contact.id not in self.contacts:
                raise KeyError(contact.id)
            self.contacts[contact.id] = contact.model_copy(deep=True)

    def link_contact(self, conversation_id: str, contact_id: str) -> None:
        with self._lock:
            self.conversations[conversation_id].contact_id = contact_id

    def append_message(self, conversation_id: str, message: Message) -> None:
        with self._lock:
            self.conversations[conversation_id].messages.append(message)

    def update_conversation(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        last_message_at: datetime | None = None,
    ) -> None:
        with self._lock:
            conversation = self.conversations[conversation_id]
            if status is not None:
                conversation.status = status
            if last_message_at is not None:
                conversation.last_message_at = last_message_at

    def record_usage(self, usage: UsageRecord) -> None:
        with self._lock:
            self.usage.append(copy.deepcopy(usage))

    def decrement_credits(self, workspace_id: str, credits: int) -> None:
        with self._lock:
            workspace = self.workspaces.get(workspace_id)
            if workspace is None:
                return
            workspace.credit_balance -= credits
            workspace.credits_used += credits

    def log_integration_event(self, event: IntegrationEvent) -> None:
        with self._lock:
            self.integration_events.append(event)
