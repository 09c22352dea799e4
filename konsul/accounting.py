"""Token → credit accounting.

One credit buys 100 tokens, rounded up.  Usage is recorded once per reply
cycle and the workspace balance is decremented once, after the reply is
computed.  Failed cycles are charged for whatever they consumed.
"""

from __future__ import annotations

import logging

from konsul.models import UsageRecord
from konsul.services.metrics import metrics
from konsul.services.store import ConversationStore

logger = logging.getLogger(__name__)

TOKENS_PER_CREDIT = 100


def credits_for_tokens(tokens: int) -> int:
    """Return ``ceil(tokens / 100)``; zero tokens cost zero credits."""
    if tokens < 0:
        raise ValueError("tokens must be non-negative")
    return (tokens + TOKENS_PER_CREDIT - 1) // TOKENS_PER_CREDIT


def charge_usage(
    store: ConversationStore,
    *,
    workspace_id: str,
    agent_id: str,
    conversation_id: str,
    tokens: int,
    model: str,
) -> UsageRecord:
    """Create the cycle's usage record and decrement the workspace balance."""
    usage = UsageRecord(
        workspace_id=workspace_id,
        agent_id=agent_id,
        conversation_id=conversation_id,
        tokens_used=tokens,
        credits_used=credits_for_tokens(tokens),
        model=model,
    )
    store.record_usage(usage)
    if usage.credits_used:
        store.decrement_credits(workspace_id, usage.credits_used)
    metrics.record_usage(model, tokens=tokens, credits=usage.credits_used)
    logger.info(
        "Conversation %s used %d tokens (%d credits) on %s",
        conversation_id, tokens, usage.credits_used, model,
    )
    return usage
