"""Calendar tools backed by the agent's Calendly integration.

Handlers return structured payloads; every outcome is also written to the
integration event log so operators can audit what the agent booked.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from konsul.models import CalendlyConfig
from konsul.services.calendly_client import CalendlyAPIError, get_calendly_client
from konsul.tools.registry import CREATE_EVENT, LIST_AVAILABILITY, ToolContext, ToolError, ToolSpec

logger = logging.getLogger(__name__)

PROVIDER = "CALENDLY"

# RFC 5322-ish pattern, good enough for real-world addresses.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def _validate_email(email: str) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "No email address was provided. Please ask the user for their email."
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return (
            f'"{email}" does not look like a valid email address. '
            "Please ask the user to double-check and provide a corrected email."
        )
    return None


def _format_dt(iso_str: str) -> str:
    """Convert an ISO 8601 string to a friendly 'Mon 17 Feb 2026 at 10:30' format."""
    dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
    return dt.strftime("%a %d %b %Y at %H:%M")


def _calendly_config(ctx: ToolContext) -> CalendlyConfig:
    integration = ctx.agent.integration(PROVIDER)
    if integration is None:
        raise ToolError("Calendar integration is not enabled for this agent")
    return integration.config


def _event_type_uri(config: CalendlyConfig) -> str:
    if config.event_type_uri:
        return config.event_type_uri
    event_types = get_calendly_client(config).get_event_types()
    if not event_types:
        raise CalendlyAPIError("No active event types found. Please check the Calendly configuration.")
    return event_types[0]["uri"]


# ── Tool 1: Check available slots ───────────────────────────────────


def list_availability(ctx: ToolContext, start_date: str, end_date: str) -> dict[str, Any]:
    config = _calendly_config(ctx)
    try:
        slots = get_calendly_client(config).get_available_times(
            _event_type_uri(config),
            f"{start_date}T00:00:00Z",
            f"{end_date}T23:59:59Z",
        )
    except CalendlyAPIError as exc:
        logger.error("Failed to get available slots: %s", exc)
        ctx.log_event(PROVIDER, "LIST_AVAILABILITY", "ERROR", error=str(exc))
        raise ToolError(f"Could not check availability right now: {exc}") from exc

    available = [
        {"start_time": slot["start_time"], "label": _format_dt(slot["start_time"])}
        for slot in slots if slot.get("status") == "available"
    ]
    ctx.log_event(
        PROVIDER, "LIST_AVAILABILITY", "SUCCESS",
        start_date=start_date, end_date=end_date, slots=len(available),
    )
    return {"start_date": start_date, "end_date": end_date, "slots": available}


# ── Tool 2: Book a slot ─────────────────────────────────────────────


def create_event(ctx: ToolContext, start_time: str, full_name: str, email: str) -> dict[str, Any]:
    email_error = _validate_email(email)
    if email_error:
        raise ToolError(email_error)

    try:
        friendly_time = _format_dt(start_time)
    except ValueError as exc:
        raise ToolError(
            f'"{start_time}" is not a valid ISO 8601 start time. Use one of the listed slots.'
        ) from exc

    config = _calendly_config(ctx)
    try:
        invitee = get_calendly_client(config).create_invitee(
            _event_type_uri(config),
            start_time,
            name=full_name,
            email=email.strip(),
            timezone=config.timezone,
        )
    except CalendlyAPIError as exc:
        logger.error("Failed to create booking: %s", exc)
        ctx.log_event(PROVIDER, "CREATE_EVENT", "ERROR", error=str(exc))
        raise ToolError(f"Could not complete the booking: {exc}") from exc

    ctx.log_event(PROVIDER, "CREATE_EVENT", "SUCCESS", start_time=start_time, email=email.strip())
    return {
        "name": full_name,
        "email": email.strip(),
        "time": friendly_time,
        "cancel_url": invitee.get("cancel_url"),
        "reschedule_url": invitee.get("reschedule_url"),
    }


TOOLS = (
    ToolSpec(
        name=LIST_AVAILABILITY,
        description="List available appointment slots between two dates.",
        parameters={
            "type": "object",
            "properties": {
                "start_date": {"type": "string", "description": "Start date in YYYY-MM-DD format."},
                "end_date": {
                    "type": "string",
                    "description": "End date in YYYY-MM-DD format, within 7 days of start_date.",
                },
            },
            "required": ["start_date", "end_date"],
        },
        handler=list_availability,
    ),
    ToolSpec(
        name=CREATE_EVENT,
        description=(
            "Book an appointment. start_time must be one of the slots returned by "
            f"{LIST_AVAILABILITY}. The invitee receives a confirmation e-mail."
        ),
        parameters={
            "type": "object",
            "properties": {
                "start_time": {
                    "type": "string",
                    "description": 'Exact start time in ISO 8601 (e.g. "2026-02-17T10:30:00Z").',
                },
                "full_name": {"type": "string", "description": "The invitee's full name."},
                "email": {"type": "string", "description": "The invitee's e-mail address."},
            },
            "required": ["start_time", "full_name", "email"],
        },
        handler=create_event,
    ),
)
