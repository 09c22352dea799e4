"""The ``escalate_to_human`` tool, offered when the agent allows transfers."""

from __future__ import annotations

from typing import Any

from konsul.escalation import EscalationError, escalate
from konsul.tools.registry import ESCALATE_TO_HUMAN, ToolContext, ToolError, ToolSpec


def escalate_to_human(ctx: ToolContext, summary: str, departmentId: str | None = None) -> dict[str, Any]:  # noqa: N803
    try:
        outcome = escalate(
            ctx.store,
            ctx.agent,
            ctx.conversation_id,
            summary,
            department_id=departmentId,
            notifier=ctx.notifier,
            strict=ctx.strict_escalation,
        )
    except EscalationError as exc:
        raise ToolError(str(exc)) from exc

    if outcome.already_pending:
        return {"message": "The conversation is already waiting for a human agent."}
    return {
        "message": "Conversation transferred to a human agent. Let the user know someone will reply soon.",
        "department": outcome.target.department if outcome.target else None,
    }


TOOLS = (
    ToolSpec(
        name=ESCALATE_TO_HUMAN,
        description=(
            "Escalate the conversation to a human agent. USE ONLY AFTER COLLECTING USER "
            "CONTACT INFO (Name + Email/Phone) if possible."
        ),
        parameters={
            "type": "object",
            "properties": {
                "summary": {
                    "type": "string",
                    "description": "Brief summary of the user's issue and why they need a human.",
                },
                "departmentId": {
                    "type": "string",
                    "description": "The ID of the department to transfer to, based on user intent. Optional.",
                },
            },
            "required": ["summary"],
        },
        handler=escalate_to_human,
    ),
)
