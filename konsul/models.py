"""Domain model for the conversational engine.

Agents, integrations and contacts arrive from the persistence layer as loose
JSON; they are validated here, at the boundary, so the rest of the engine can
trust their shape.  Integrations are a tagged union keyed by ``provider`` so
each one carries its own strongly-typed config.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Enumerations ─────────────────────────────────────────────────────


class CommunicationStyle(str, Enum):
    FORMAL = "FORMAL"
    NORMAL = "NORMAL"
    CASUAL = "CASUAL"


class JobType(str, Enum):
    SUPPORT = "SUPPORT"
    SALES = "SALES"
    PERSONAL = "PERSONAL"


class ConversationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    CLOSED = "CLOSED"


class MessageRole(str, Enum):
    USER = "USER"
    AGENT = "AGENT"
    HUMAN = "HUMAN"


class FieldType(str, Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    DATE = "DATE"
    BOOLEAN = "BOOLEAN"
    SELECT = "SELECT"


# ── Agent configuration ──────────────────────────────────────────────


class CustomFieldDefinition(BaseModel):
    """A workspace-defined data point the agent should capture."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    description: str = ""
    type: FieldType = FieldType.TEXT
    options: tuple[str, ...] = ()


class HandoffTarget(BaseModel):
    """A department a conversation can be escalated to."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str | None = None
    description: str = ""


class CalendlyConfig(BaseModel):
    api_token: str
    event_type_uri: str | None = None
    timezone: str = "UTC"


class AltaplazaConfig(BaseModel):
    base_url: str = "https://altaplaza-web.vercel.app"
    api_key: str


class CalendlyIntegration(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Literal["CALENDLY"] = "CALENDLY"
    enabled: bool = True
    config: CalendlyConfig


class AltaplazaIntegration(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Literal["ALTAPLAZA"] = "ALTAPLAZA"
    enabled: bool = True
    config: AltaplazaConfig


Integration = Annotated[
    CalendlyIntegration | AltaplazaIntegration,
    Field(discriminator="provider"),
]


class AgentConfig(BaseModel):
    """Immutable snapshot of an agent for the duration of one reply."""

    model_config = ConfigDict(frozen=True)

    id: str
    workspace_id: str
    name: str
    personality_prompt: str = ""
    communication_style: CommunicationStyle = CommunicationStyle.NORMAL
    job_type: JobType | None = None
    job_company: str | None = None
    job_description: str | None = None
    timezone: str = "UTC"

    model: str = "gpt-4o-mini"
    temperature: float = 0.7

    allow_emojis: bool = False
    sign_messages: bool = False
    restrict_topics: bool = False
    split_long_messages: bool = False
    transfer_to_human: bool = False
    smart_retrieval: bool = False

    custom_fields: tuple[CustomFieldDefinition, ...] = ()
    handoff_targets: tuple[HandoffTarget, ...] = ()
    handoff_email: str | None = None
    integrations: tuple[Integration, ...] = ()

    def integration(self, provider: str) -> CalendlyIntegration | AltaplazaIntegration | None:
        """Return the *enabled* integration for ``provider``, if any."""
        for integration in self.integrations:
            if integration.provider == provider and integration.enabled:
                return integration
        return None


class Workspace(BaseModel):
    id: str
    name: str
    owner_email: str
    credit_balance: int = 0
    credits_used: int = 0


# ── Conversation ─────────────────────────────────────────────────────


class Message(BaseModel):
    """A single conversation turn.  Append-only."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class ContactRecord(BaseModel):
    id: str
    workspace_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    external_id: str | None = None
    custom_data: dict[str, Any] = Field(default_factory=dict)


class ConversationState(BaseModel):
    id: str
    agent_id: str
    contact_id: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    external_id: str | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    messages: list[Message] = Field(default_factory=list)
    last_message_at: datetime | None = None


class KnowledgePassage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    embedding: tuple[float, ...] = ()


# ── Ephemeral tool-loop values ───────────────────────────────────────


class ToolCall(BaseModel):
    """A provider-agnostic tool invocation."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Outcome of one tool call, correlated to it by ``tool_call_id``."""

    tool_call_id: str
    success: bool
    payload: Any = None
    error: str | None = None

    def to_json_payload(self) -> dict[str, Any]:
        if self.success:
            if isinstance(self.payload, dict):
                return {"success": True, **self.payload}
            return {"success": True, "result": self.payload}
        return {"success": False, "error": self.error}


# ── Accounting / output ──────────────────────────────────────────────


class UsageRecord(BaseModel):
    workspace_id: str
    agent_id: str
    conversation_id: str
    tokens_used: int
    credits_used: int
    model: str


class IntegrationEvent(BaseModel):
    agent_id: str
    provider: str
    event: str
    status: Literal["SUCCESS", "ERROR"] = "SUCCESS"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReplyResult(BaseModel):
    reply: str
    tokens_used: int = 0
    credits_used: int = 0
