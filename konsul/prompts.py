"""System prompt composition.

``build_system_prompt`` is a pure function: the same agent, passages and
``now`` always produce the same string, byte for byte.  Every block is
assembled in a fixed order and iterates the agent's tuples in their stored
order, so nothing here depends on dict or set ordering.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from konsul.models import AgentConfig, CommunicationStyle, FieldType, JobType
from konsul.tools.registry import (
    ALTAPLAZA_CHECK_USER,
    ALTAPLAZA_REGISTER_INVOICE,
    ALTAPLAZA_REGISTER_USER,
    CREATE_EVENT,
    ESCALATE_TO_HUMAN,
    LIST_AVAILABILITY,
    UPDATE_CONTACT,
)

logger = logging.getLogger(__name__)

STYLE_INSTRUCTIONS: dict[CommunicationStyle, str] = {
    CommunicationStyle.FORMAL: "Use a formal, professional tone in every reply.",
    CommunicationStyle.NORMAL: "Use a friendly yet professional, balanced tone.",
    CommunicationStyle.CASUAL: "Use a casual, relaxed tone, but always stay respectful.",
}

JOB_INSTRUCTIONS: dict[JobType, str] = {
    JobType.SUPPORT: (
        "You are a customer support agent. Your goal is to help users solve "
        "their problems efficiently and kindly."
    ),
    JobType.SALES: (
        "You are a sales agent. Your goal is to help customers find the products "
        "or services that fit their needs and to close sales ethically."
    ),
    JobType.PERSONAL: (
        "You are a personal assistant. Your goal is to help the user with their "
        "tasks and questions."
    ),
}


def _local_time(now: datetime, timezone: str) -> tuple[datetime, str]:
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, rendering time in UTC", timezone)
        tz, timezone = ZoneInfo("UTC"), "UTC"
    return now.astimezone(tz), timezone


# ── Blocks ───────────────────────────────────────────────────────────


def _identity_block(agent: AgentConfig, now: datetime) -> str:
    local, tz_name = _local_time(now, agent.timezone)
    lines = ["## Identity", f"Your name is **{agent.name}**."]
    if agent.job_company:
        lines.append(f"You work for **{agent.job_company}**.")
    if agent.job_type is not None:
        lines.append(JOB_INSTRUCTIONS[agent.job_type])
    lines.append(STYLE_INSTRUCTIONS[agent.communication_style])
    lines.append(
        f"Today is {local.strftime('%A %d %B %Y')} and the local time is "
        f"{local.strftime('%H:%M')} ({tz_name}). Use this to resolve relative "
        'dates such as "tomorrow" or "next week".'
    )
    if agent.job_description:
        lines.append(f"\nAdditional information about your job:\n{agent.job_description}")
    return "\n".join(lines)


def _persona_block(agent: AgentConfig) -> str:
    return (
        "## Personality & Behaviour (HIGHEST PRIORITY)\n"
        "The following instructions come from your owner. They take precedence "
        "over every other instruction in this prompt:\n\n"
        f"{agent.personality_prompt}"
    )


def _feature_flag_block(agent: AgentConfig, has_calendar: bool) -> str:
    lines = ["## Rules"]
    if agent.restrict_topics:
        lines.append(
            "- IMPORTANT: Only answer questions related to your area of work. If "
            "asked about anything else, politely steer the conversation back."
        )
    lines.append(
        "- Emojis are allowed when they fit the tone." if agent.allow_emojis
        else "- Do not use emojis in your replies."
    )
    if agent.sign_messages:
        lines.append(f"- Sign your messages professionally at the end as {agent.name}.")
    if agent.split_long_messages:
        lines.append("- If your answer is long, split it into several shorter, easy-to-read messages.")
    if agent.transfer_to_human:
        lines.append(
            "- If the user asks to talk to a human, or the situation requires it, "
            f"you can transfer the conversation with `{ESCALATE_TO_HUMAN}`."
        )
    else:
        lines.append("- Transfer to a human is not available; never promise one.")
    if has_calendar:
        lines.append(
            f"- You can check calendar availability with `{LIST_AVAILABILITY}` and "
            f"book appointments with `{CREATE_EVENT}`. Never invent time slots."
        )
    return "\n".join(lines)


def _knowledge_block(passages: Sequence[str]) -> str:
    if not passages:
        return (
            "## Knowledge Context\n"
            "No documents were retrieved for this message. Rely only on your "
            "identity and behaviour instructions above, and say so honestly when "
            "you do not know something."
        )
    lines = [
        "## Knowledge Context (STRICT - DO NOT FABRICATE)",
        "The blocks below are excerpts from your official documents. Follow these rules:",
        "1. Answer ONLY from the information in these blocks. If the user asks about "
        "something that is not in them, say you do not have that information right now.",
        "2. Never invent names, places, prices, phone numbers or e-mail addresses. "
        "If it is not written below, it does not exist for you.",
        "3. This knowledge overrides anything you believe from general training.",
        "4. Use the information naturally; do not mention block numbers to the user.",
        "",
        "--------- KNOWLEDGE BLOCKS ---------",
    ]
    lines.extend(f"[BLOCK {index}]: {content}" for index, content in enumerate(passages, start=1))
    lines.append("------------------------------------")
    return "\n".join(lines)


def _data_capture_block(agent: AgentConfig) -> str | None:
    if not agent.custom_fields:
        return None
    lines = ["## Data To Collect", "Your secondary goal is to collect the following information from the user:"]
    for definition in agent.custom_fields:
        line = f'- {definition.label} (key: "{definition.key}"): {definition.description or "No description"}'
        if definition.type is FieldType.SELECT and definition.options:
            line += f" [Valid options: {', '.join(definition.options)}]"
        lines.append(line)
    lines.extend([
        "",
        f"When the user gives you any of this information, save it with the `{UPDATE_CONTACT}` tool.",
        "For fields with valid options you MUST map the user's answer to one of the exact "
        "options, or ask for clarification.",
        "Do not be pushy; ask for these details naturally during the conversation.",
    ])
    return "\n".join(lines)


def _standard_contact_block() -> str:
    return "\n".join([
        "## Contact Details (ALWAYS ACTIVE)",
        "Identify and save these contact details whenever the user mentions them:",
        '- Full name (key: "name")',
        '- E-mail (key: "email")',
        '- Phone number (key: "phone")',
        "",
        f"1. If the user mentions their name, e-mail or phone, call `{UPDATE_CONTACT}` IMMEDIATELY.",
        "2. Users often answer your question directly. If you asked for their name and they "
        'reply "I\'m Omar", "Soy Omar" or "It\'s Omar", save ONLY the name ("Omar"), never the '
        "whole sentence. If you asked for their e-mail or phone and they reply with just the "
        "value, assume it is that field and save it.",
        "3. Do not wait for the end of the conversation; save each detail as soon as you have it.",
        "4. If a detail is already known, do not ask for it or save it again unless the user corrects it.",
    ])


def _escalation_block(agent: AgentConfig) -> str | None:
    if not agent.transfer_to_human:
        return None
    lines = [
        "## Human Handoff Protocol (CRITICAL)",
        f"1. BEFORE calling `{ESCALATE_TO_HUMAN}`, make sure you have the user's name AND "
        "(e-mail OR phone).",
        "2. If any of them is missing, politely ask for it: \"To transfer you to a specialist "
        "I need your name and an e-mail or phone number. Could you share them?\"",
        "3. Once you have them (or if the user refuses but insists on the transfer), call "
        f"`{ESCALATE_TO_HUMAN}`.",
        "4. Include a clear summary of the user's request in the tool call.",
    ]
    if agent.handoff_targets:
        lines.extend(["", "Available departments (set `departmentId` according to the user's need):"])
        lines.extend(
            f'- ID: "{target.id}" | Name: "{target.name}" | Context: {target.description}'
            for target in agent.handoff_targets
        )
        lines.append("If no department matches, omit `departmentId`.")
    return "\n".join(lines)


def _business_api_block() -> str:
    return "\n".join([
        "## Altaplaza Protocol",
        f"1. If the user wants to register an invoice or check points, FIRST ask for their ID "
        f"card number and call `{ALTAPLAZA_CHECK_USER}`.",
        f"2. If the user does not exist, ask for first name, last name, e-mail and birth date and "
        f"call `{ALTAPLAZA_REGISTER_USER}`. Tell the user their temporaryPassword if one is returned.",
        f"3. Once the user exists, register invoices with `{ALTAPLAZA_REGISTER_INVOICE}`.",
        "4. Birth dates must use the YYYY-MM-DD format.",
    ])


# ── Public API ───────────────────────────────────────────────────────


def build_system_prompt(agent: AgentConfig, passages: Sequence[str], *, now: datetime) -> str:
    """Compose the full instruction set for one reply."""
    has_calendar = agent.integration("CALENDLY") is not None
    has_business_api = agent.integration("ALTAPLAZA") is not None

    blocks: list[str | None] = [
        _identity_block(agent, now),
        _persona_block(agent),
        _feature_flag_block(agent, has_calendar),
        _knowledge_block(passages),
        _data_capture_block(agent),
        _business_api_block() if has_business_api else None,
        _standard_contact_block(),
        _escalation_block(agent),
    ]
    return "\n\n".join(block for block in blocks if block).strip()
