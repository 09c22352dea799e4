"""Conversation escalation: ACTIVE → PENDING → CLOSED.

A conversation only becomes PENDING through a successful
``escalate_to_human`` tool call.  On that transition the routing target is
resolved (department → legacy handoff address → workspace owner) and the
handoff notification is sent exactly once.  A human later closes it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from konsul.config import APP_URL
from konsul.models import AgentConfig, ContactRecord, ConversationState, ConversationStatus, Workspace
from konsul.services.notifications import HandoffNotifier, VisitorDetails
from konsul.services.store import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_DEPARTMENT = "General"
DEFAULT_VISITOR_NAME = "Visitor"

ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({ConversationStatus.PENDING, ConversationStatus.CLOSED}),
    ConversationStatus.PENDING: frozenset({ConversationStatus.CLOSED}),
    ConversationStatus.CLOSED: frozenset(),
}


class EscalationError(Exception):
    """Raised when a conversation cannot be escalated."""


class InvalidTransitionError(EscalationError):
    def __init__(self, current: ConversationStatus, target: ConversationStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move conversation from {current.value} to {target.value}")


def transition(current: ConversationStatus, target: ConversationStatus) -> ConversationStatus:
    """Validate a status change and return the new status."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)
    return target


@dataclass(frozen=True)
class RoutingTarget:
    email: str
    department: str = DEFAULT_DEPARTMENT


def resolve_routing_target(
    agent: AgentConfig,
    workspace: Workspace,
    department_id: str | None = None,
) -> RoutingTarget:
    """Pick who gets notified: matched department, else legacy address, else owner."""
    if department_id:
        for target in agent.handoff_targets:
            if target.id == department_id and target.email:
                return RoutingTarget(email=target.email, department=target.name)
        logger.info("Department %r not configured for agent %s", department_id, agent.id)
    if agent.handoff_email:
        return RoutingTarget(email=agent.handoff_email)
    return RoutingTarget(email=workspace.owner_email)


def conversation_link(conversation_id: str) -> str:
    return f"{APP_URL}/inbox?conversationId={conversation_id}"


def visitor_details(conversation: ConversationState, contact: ContactRecord | None) -> VisitorDetails:
    name = (contact.name if contact else None) or conversation.contact_name or DEFAULT_VISITOR_NAME
    email = (contact.email if contact else None) or conversation.contact_email
    return VisitorDetails(name=name, email=email, phone=contact.phone if contact else None)


@dataclass(frozen=True)
class EscalationOutcome:
    status: ConversationStatus
    target: RoutingTarget | None
    notified: bool
    already_pending: bool = False


def escalate(
    store: ConversationStore,
    agent: AgentConfig,
    conversation_id: str,
    summary: str,
    *,
    department_id: str | None = None,
    notifier: HandoffNotifier | None = None,
    strict: bool = False,
) -> EscalationOutcome:
    """Move the conversation to PENDING and notify the routing target.

    With ``strict`` the linked contact must already have a name and an
    e-mail or phone; otherwise the decision is left to the model.
    """
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise EscalationError("Conversation not found")
    if conversation.contact_id is None:
        raise EscalationError("No contact linked to this conversation")

    if conversation.status is ConversationStatus.PENDING:
        logger.info("Conversation %s already pending a human", conversation_id)
        return EscalationOutcome(status=conversation.status, target=None, notified=False, already_pending=True)

    new_status = transition(conversation.status, ConversationStatus.PENDING)
    contact = store.get_contact(conversation.contact_id)
    if strict and not (contact and contact.name and (contact.email or contact.phone)):
        raise EscalationError("Collect the user's name and an e-mail or phone before transferring")

    store.update_conversation(conversation_id, status=new_status)
    logger.info("Conversation %s escalated to a human", conversation_id)

    workspace = store.get_workspace(agent.workspace_id)
    if workspace is None:
        logger.warning("Workspace %s not found; handoff not notified", agent.workspace_id)
        return EscalationOutcome(status=new_status, target=None, notified=False)

    target = resolve_routing_target(agent, workspace, department_id)
    notified = False
    if notifier is not None:
        try:
            notifier.send_handoff_email(
                target.email,
                agent.name,
                workspace.name,
                conversation_link(conversation_id),
                visitor_details(conversation, contact),
                f"[{target.department}] {summary}",
            )
            notified = True
        except Exception:
            logger.exception("Handoff notification to %s failed", target.email)
    return EscalationOutcome(status=new_status, target=target, notified=notified)


def close_conversation(store: ConversationStore, conversation_id: str) -> ConversationStatus:
    """Close a conversation on behalf of a human operator."""
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise EscalationError("Conversation not found")
    new_status = transition(conversation.status, ConversationStatus.CLOSED)
    store.update_conversation(conversation_id, status=new_status)
    return new_status
