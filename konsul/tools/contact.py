"""The ``update_contact`` tool: always available to every agent."""

from __future__ import annotations

from typing import Any

from konsul.contacts import reconcile_contact
from konsul.tools.registry import UPDATE_CONTACT, ToolContext, ToolError, ToolSpec


def update_contact(ctx: ToolContext, updates: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(updates, dict):
        raise ToolError("`updates` must be an object of key/value pairs")

    conversation = ctx.store.get_conversation(ctx.conversation_id)
    if conversation is None or conversation.contact_id is None:
        raise ToolError("Contact not found")

    result = reconcile_contact(ctx.store, conversation.contact_id, updates)
    if not result.success:
        raise ToolError(result.error or "Contact update failed")
    return {
        "message": "Contact updated successfully",
        "updated": result.applied,
        "ignored": result.dropped,
    }


TOOLS = (
    ToolSpec(
        name=UPDATE_CONTACT,
        description="Update the contact information with collected data.",
        parameters={
            "type": "object",
            "properties": {
                "updates": {
                    "type": "object",
                    "description": (
                        'Key-value pairs of data to update. Keys can be standard fields '
                        '("name", "email", "phone") or defined custom fields.'
                    ),
                    "additionalProperties": True,
                },
            },
            "required": ["updates"],
        },
        handler=update_contact,
    ),
)
