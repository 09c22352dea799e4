"""Handoff e-mail notifications.

The engine only needs one operation, ``send_handoff_email``.  The
production implementation posts an HTML e-mail through the Resend REST API;
callers treat it as fire-and-forget and must never let a failure here fail
the reply cycle.

Resend API docs: https://resend.com/docs/api-reference/emails/send-email
"""

from __future__ import annotations

import html
import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from konsul.config import NOTIFICATION_TIMEOUT_SECONDS, RESEND_BASE_URL, RESEND_FROM_EMAIL, get_secret
from konsul.services.metrics import metrics

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when the e-mail provider rejects or never receives a message."""


@dataclass(frozen=True)
class VisitorDetails:
    name: str
    email: str | None = None
    phone: str | None = None


class HandoffNotifier(Protocol):
    def send_handoff_email(
        self,
        recipient: str,
        agent_name: str,
        workspace_name: str,
        conversation_link: str,
        visitor: VisitorDetails,
        summary: str,
    ) -> None: ...


def render_handoff_email(
    agent_name: str,
    workspace_name: str,
    conversation_link: str,
    visitor: VisitorDetails,
    summary: str,
) -> str:
    """Render the HTML body of a handoff notification."""
    rows = [("Name", visitor.name), ("E-mail", visitor.email), ("Phone", visitor.phone)]
    details = "".join(
        f"<li><strong>{label}:</strong> {html.escape(value)}</li>"
        for label, value in rows if value
    )
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<h2>{html.escape(agent_name)} needs a human</h2>"
        f"<p>A conversation in <strong>{html.escape(workspace_name)}</strong> was transferred "
        "and is waiting for a reply.</p>"
        f"<h3>Visitor</h3><ul>{details}</ul>"
        f"<h3>Summary</h3><p>{html.escape(summary)}</p>"
        f"<p><a href=\"{html.escape(conversation_link, quote=True)}\">Open the conversation</a></p>"
        "</body></html>"
    )


class ResendNotifier:
    """Send handoff e-mails through Resend (single attempt, no retries)."""

    def __init__(
        self,
        api_key: str,
        *,
        from_email: str = RESEND_FROM_EMAIL,
        base_url: str = RESEND_BASE_URL,
        timeout: float = NOTIFICATION_TIMEOUT_SECONDS,
    ) -> None:
        self._from_email = from_email
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def send_handoff_email(
        self,
        recipient: str,
        agent_name: str,
        workspace_name: str,
        conversation_link: str,
        visitor: VisitorDetails,
        summary: str,
    ) -> None:
        t0 = time.perf_counter()
        try:
            response = self._client.post(
                "/emails",
                json={
                    "from": self._from_email,
                    "to": [recipient],
                    "subject": f"[{workspace_name}] {visitor.name} wants to talk to a human",
                    "html": render_handoff_email(
                        agent_name, workspace_name, conversation_link, visitor, summary,
                    ),
                },
            )
        except httpx.HTTPError as exc:
            metrics.record_failure(
                "resend", "POST /emails",
                error_type=type(exc).__name__, latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise NotificationError(f"Handoff e-mail to {recipient} failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        if response.status_code >= 400:
            metrics.record_failure(
                "resend", "POST /emails", error_type=str(response.status_code), latency_ms=elapsed,
            )
            raise NotificationError(f"Resend error {response.status_code}: {response.text}")
        metrics.record_success("resend", "POST /emails", latency_ms=elapsed)
        logger.info("Handoff e-mail sent to %s", recipient)


class LoggingNotifier:
    """Fallback notifier used when no e-mail provider is configured."""

    def send_handoff_email(
        self,
        recipient: str,
        agent_name: str,
        workspace_name: str,
        conversation_link: str,
        visitor: VisitorDetails,
        summary: str,
    ) -> None:
        logger.warning(
            "RESEND_API_KEY not set; handoff for %s (%s) to %s not e-mailed: %s",
            visitor.name, conversation_link, recipient, summary,
        )


def build_default_notifier() -> HandoffNotifier:
    api_key = get_secret("RESEND_API_KEY")
    if not api_key:
        return LoggingNotifier()
    return ResendNotifier(api_key)
