"""Altaplaza loyalty tools: verify a member, register one, record invoices."""

from __future__ import annotations

import logging
from typing import Any

from konsul.services.business_api import AltaplazaClient, BusinessAPIError, get_altaplaza_client
from konsul.tools.registry import (
    ALTAPLAZA_CHECK_USER,
    ALTAPLAZA_REGISTER_INVOICE,
    ALTAPLAZA_REGISTER_USER,
    ToolContext,
    ToolError,
    ToolSpec,
)

logger = logging.getLogger(__name__)

PROVIDER = "ALTAPLAZA"


def _client(ctx: ToolContext) -> AltaplazaClient:
    integration = ctx.agent.integration(PROVIDER)
    if integration is None:
        raise ToolError("Altaplaza integration is not enabled for this agent")
    return get_altaplaza_client(integration.config)


def _compact(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


def check_user(ctx: ToolContext, idCard: str) -> dict[str, Any]:  # noqa: N803
    client = _client(ctx)
    try:
        result = client.check_user(idCard)
    except BusinessAPIError as exc:
        ctx.log_event(PROVIDER, "CHECK_USER", "ERROR", error=str(exc))
        raise ToolError(str(exc)) from exc
    ctx.log_event(PROVIDER, "CHECK_USER", "SUCCESS", idCard=idCard)
    return result


def register_user(
    ctx: ToolContext,
    firstName: str,  # noqa: N803
    lastName: str,  # noqa: N803
    email: str,
    idCard: str,  # noqa: N803
    birthDate: str,  # noqa: N803
    phone: str | None = None,
    neighborhood: str | None = None,
) -> dict[str, Any]:
    client = _client(ctx)
    user = _compact(
        firstName=firstName, lastName=lastName, email=email, idCard=idCard,
        birthDate=birthDate, phone=phone, neighborhood=neighborhood,
    )
    try:
        result = client.register_user(user)
    except BusinessAPIError as exc:
        ctx.log_event(PROVIDER, "REGISTER_USER", "ERROR", error=str(exc))
        raise ToolError(str(exc)) from exc
    ctx.log_event(PROVIDER, "REGISTER_USER", "SUCCESS", email=email)
    return result


def register_invoice(
    ctx: ToolContext,
    idCard: str,  # noqa: N803
    invoiceNumber: str,  # noqa: N803
    amount: float,
    storeName: str,  # noqa: N803
    imageUrl: str | None = None,  # noqa: N803
    date: str | None = None,
) -> dict[str, Any]:
    client = _client(ctx)
    invoice = _compact(
        idCard=idCard, invoiceNumber=invoiceNumber, amount=amount,
        storeName=storeName, imageUrl=imageUrl, date=date,
    )
    try:
        result = client.register_invoice(invoice)
    except BusinessAPIError as exc:
        ctx.log_event(PROVIDER, "REGISTER_INVOICE", "ERROR", error=str(exc))
        raise ToolError(str(exc)) from exc
    ctx.log_event(PROVIDER, "REGISTER_INVOICE", "SUCCESS", amount=amount, invoiceNumber=invoiceNumber)
    return result


TOOLS = (
    ToolSpec(
        name=ALTAPLAZA_CHECK_USER,
        description="Verify if a user exists in the Altaplaza system using their ID card (cédula).",
        parameters={
            "type": "object",
            "properties": {
                "idCard": {"type": "string", "description": "The user's ID card number (cédula)."},
            },
            "required": ["idCard"],
        },
        handler=check_user,
    ),
    ToolSpec(
        name=ALTAPLAZA_REGISTER_USER,
        description=(
            "Register a new user in Altaplaza. Call this if "
            f"{ALTAPLAZA_CHECK_USER} reports that the user does not exist."
        ),
        parameters={
            "type": "object",
            "properties": {
                "firstName": {"type": "string"},
                "lastName": {"type": "string"},
                "email": {"type": "string"},
                "idCard": {"type": "string"},
                "birthDate": {"type": "string", "description": "Format: YYYY-MM-DD"},
                "phone": {"type": "string"},
                "neighborhood": {"type": "string"},
            },
            "required": ["firstName", "lastName", "email", "idCard", "birthDate"],
        },
        handler=register_user,
    ),
    ToolSpec(
        name=ALTAPLAZA_REGISTER_INVOICE,
        description="Register a processed invoice in the Altaplaza system.",
        parameters={
            "type": "object",
            "properties": {
                "idCard": {"type": "string"},
                "invoiceNumber": {"type": "string"},
                "amount": {"type": "number"},
                "storeName": {"type": "string"},
                "imageUrl": {"type": "string"},
                "date": {"type": "string", "description": "Optional. Format: YYYY-MM-DD"},
            },
            "required": ["idCard", "invoiceNumber", "amount", "storeName"],
        },
        handler=register_invoice,
    ),
)
