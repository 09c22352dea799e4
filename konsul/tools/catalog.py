"""Tool capabilities and the per-agent catalog.

Order matters: it is the order in which tools are presented to the model.
"""

from __future__ import annotations

from konsul.models import AgentConfig
from konsul.tools import business, calendar, contact, escalation
from konsul.tools.registry import Capability, ToolCatalog

CAPABILITIES: tuple[Capability, ...] = (
    Capability("contact", contact.TOOLS, lambda agent: True),
    Capability("escalation", escalation.TOOLS, lambda agent: agent.transfer_to_human),
    Capability("calendar", calendar.TOOLS, lambda agent: agent.integration("CALENDLY") is not None),
    Capability("altaplaza", business.TOOLS, lambda agent: agent.integration("ALTAPLAZA") is not None),
)


def build_catalog(agent: AgentConfig) -> ToolCatalog:
    """Return the tools enabled for ``agent``."""
    return ToolCatalog.for_agent(agent, CAPABILITIES)
