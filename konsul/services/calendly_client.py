"""HTTP client for the Calendly API v2 with retry logic and timeout handling.

Calendly API docs: https://developer.calendly.com/api-docs/
All requests require a Personal Access Token passed as a Bearer token.
Each agent carries its own token, so clients are pooled per token.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from konsul.config import CALENDLY_BASE_URL, INTEGRATION_TIMEOUT_SECONDS
from konsul.models import CalendlyConfig
from konsul.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0


class CalendlyAPIError(Exception):
    """Raised when a Calendly API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CalendlyClient:
    """Thin wrapper around the Calendly REST API v2 with automatic retries.

    The current user URI and the event-type list are fetched lazily once
    per client; availability is always fetched fresh.
    """

    def __init__(
        self,
        token: str,
        base_url: str = CALENDLY_BASE_URL,
        *,
        timeout: float = INTEGRATION_TIMEOUT_SECONDS,
    ):
        self._base_url = base_url
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )
        self._user_uri: str | None = None
        self._event_types: list[dict[str, Any]] | None = None
        self._locations: dict[str, list[dict[str, Any]]] = {}

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        operation = f"{method} {path.split('?')[0]}"
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(method, path, params=params, json=json_body)
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code >= 400:
                    metrics.record_failure(
                        "calendly", operation, error_type=str(response.status_code), latency_ms=elapsed,
                    )
                    kind = "Server" if response.status_code >= 500 else "Client"
                    raise CalendlyAPIError(
                        f"{kind} error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success("calendly", operation, latency_ms=elapsed)
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure(
                    "calendly", operation, error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning(
                    "Calendly API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except CalendlyAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Calendly API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CalendlyAPIError(
            f"Calendly API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Public API methods ───────────────────────────────────────────

    def get_current_user_uri(self) -> str:
        """Return the URI of the authenticated Calendly user (cached)."""
        if self._user_uri is None:
            data = self._request("GET", "/users/me")
            self._user_uri = data["resource"]["uri"]
        return self._user_uri

    def get_event_types(self) -> list[dict[str, Any]]:
        """List all active event types for the current user (cached)."""
        if self._event_types is None:
            user_uri = self.get_current_user_uri()
            data = self._request(
                "GET", "/event_types", params={"user": user_uri, "active": "true"},
            )
            self._event_types = data.get("collection", [])
        return self._event_types

    def get_available_times(
        self,
        event_type_uri: str,
        start_time: str,
        end_time: str,
    ) -> list[dict[str, Any]]:
        """Get available time slots for a given event type and date range.

        Args:
            event_type_uri: The URI of the event type.
            start_time: ISO 8601 start datetime (e.g. "2026-02-15T00:00:00Z").
            end_time: ISO 8601 end datetime (e.g. "2026-02-16T00:00:00Z").
        """
        data = self._request(
            "GET",
            "/event_type_available_times",
            params={
                "event_type": event_type_uri,
                "start_time": start_time,
                "end_time": end_time,
            },
        )
        return data.get("collection", [])

    def create_invitee(
        self,
        event_type_uri: str,
        start_time: str,
        *,
        name: str,
        email: str,
        timezone: str = "UTC",
    ) -> dict[str, Any]:
        """Book a slot by adding an invitee to an event type.

        See: https://developer.calendly.com/schedule-events-with-ai-agents

        Returns the invitee resource (cancel_url, reschedule_url, event URI…).
        """
        locations = self._locations.get(event_type_uri)
        if locations is None:
            path = event_type_uri.replace(self._base_url, "")
            et_data = self._request("GET", path)
            locations = et_data.get("resource", {}).get("locations") or []
            self._locations[event_type_uri] = locations

        payload: dict[str, Any] = {
            "event_type": event_type_uri,
            "start_time": start_time,
            "invitee": {"name": name, "email": email, "timezone": timezone},
        }
        if locations:
            loc = locations[0]
            payload["location"] = {"kind": loc["kind"], "location": loc.get("location", "")}

        data = self._request("POST", "/invitees", json_body=payload)
        return data["resource"]


# ── Per-token client pool (thread-safe) ─────────────────────────────
_clients: dict[str, CalendlyClient] = {}
_clients_lock = threading.Lock()


def get_calendly_client(config: CalendlyConfig) -> CalendlyClient:
    """Return the pooled CalendlyClient for ``config.api_token``.

    Uses double-checked locking so that the lock is only acquired the
    first time a token is seen.
    """
    client = _clients.get(config.api_token)
    if client is None:
        with _clients_lock:
            client = _clients.get(config.api_token)
            if client is None:
                client = CalendlyClient(config.api_token)
                _clients[config.api_token] = client
    return client
