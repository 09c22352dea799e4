"""Capability registry and provider-agnostic tool dispatch.

Each capability (contact capture, human handoff, calendar, business API)
contributes a fixed set of :class:`ToolSpec` objects and declares when it is
enabled for an agent.  The catalog offered to the model is the union of the
enabled capabilities, so no tool is ever offered that cannot be serviced.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from konsul.models import AgentConfig, IntegrationEvent, ToolCall, ToolResult
from konsul.services.store import ConversationStore

logger = logging.getLogger(__name__)

# ── Tool names ───────────────────────────────────────────────────────
UPDATE_CONTACT = "update_contact"
ESCALATE_TO_HUMAN = "escalate_to_human"
LIST_AVAILABILITY = "list_availability"
CREATE_EVENT = "create_event"
ALTAPLAZA_CHECK_USER = "altaplaza_check_user"
ALTAPLAZA_REGISTER_USER = "altaplaza_register_user"
ALTAPLAZA_REGISTER_INVOICE = "altaplaza_register_invoice"


class ToolError(Exception):
    """An expected tool failure, reported back to the model verbatim."""


@dataclass
class ToolContext:
    """Everything a handler may touch during one reply cycle."""

    store: ConversationStore
    agent: AgentConfig
    conversation_id: str
    notifier: Any = None
    strict_escalation: bool = False

    def log_event(self, provider: str, event: str, status: str, **metadata: Any) -> None:
        """Append an integration event; failures are logged, never raised."""
        try:
            self.store.log_integration_event(IntegrationEvent(
                agent_id=self.agent.id,
                provider=provider,
                event=event,
                status=status,
                metadata=metadata,
            ))
        except Exception:
            logger.exception("Failed to log integration event %s/%s", provider, event)


Handler = Callable[..., dict[str, Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: Handler

    def schema(self) -> dict[str, Any]:
        """OpenAI-style function schema (accepted by every LangChain chat model)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class Capability:
    name: str
    tools: tuple[ToolSpec, ...]
    is_enabled: Callable[[AgentConfig], bool]


class ToolCatalog:
    """The tools enabled for one agent, computed once per cycle."""

    def __init__(self, tools: Sequence[ToolSpec]) -> None:
        self._tools = {tool.name: tool for tool in tools}

    @classmethod
    def for_agent(cls, agent: AgentConfig, capabilities: Sequence[Capability]) -> ToolCatalog:
        tools = [tool for cap in capabilities if cap.is_enabled(agent) for tool in cap.tools]
        return cls(tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def dispatch(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        """Execute one call.  Never raises; failures become error results."""
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("Model requested unavailable tool %r", call.name)
            return ToolResult(
                tool_call_id=call.id, success=False,
                error=f"Tool '{call.name}' is not available for this agent",
            )

        try:
            inspect.signature(tool.handler).bind(ctx, **call.arguments)
        except TypeError as exc:
            logger.warning("Tool %s called with bad arguments %r: %s", call.name, call.arguments, exc)
            return ToolResult(tool_call_id=call.id, success=False, error=f"Invalid arguments: {exc}")

        t0 = time.perf_counter()
        try:
            payload = tool.handler(ctx, **call.arguments)
        except ToolError as exc:
            logger.info("Tool %s reported failure: %s", call.name, exc)
            return ToolResult(tool_call_id=call.id, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Tool %s failed", call.name)
            return ToolResult(tool_call_id=call.id, success=False, error=str(exc) or type(exc).__name__)

        logger.debug("Tool %s succeeded in %.0fms", call.name, (time.perf_counter() - t0) * 1000)
        return ToolResult(tool_call_id=call.id, success=True, payload=payload)

    def dispatch_all(self, calls: Sequence[ToolCall], ctx: ToolContext) -> list[ToolResult]:
        """Execute a batch sequentially, keeping the provider's call order."""
        return [self.dispatch(call, ctx) for call in calls]
