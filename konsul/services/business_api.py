"""HTTP client for the Altaplaza loyalty API.

Three endpoints under ``/api/v1/external`` authenticated with an
``x-api-key`` header.  Transport errors and 5xx responses are retried with
exponential backoff; 4xx responses are surfaced immediately with the
server's own message, except check-user's 404 which simply means the user
is not registered.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from konsul.config import INTEGRATION_TIMEOUT_SECONDS
from konsul.models import AltaplazaConfig
from konsul.services.metrics import metrics

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0


class BusinessAPIError(Exception):
    """Raised when an Altaplaza call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return default


class AltaplazaClient:
    def __init__(self, config: AltaplazaConfig, *, timeout: float = INTEGRATION_TIMEOUT_SECONDS):
        self._client = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            headers={"x-api-key": config.api_key, "Content-Type": "application/json"},
            timeout=timeout,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        default_error: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> dict[str, Any] | None:
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(method, path, params=params, json=json_body)
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure(
                    "altaplaza", f"{method} {path}", error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning(
                    "Altaplaza attempt %d/%d failed (%s)", attempt, MAX_RETRIES, type(exc).__name__,
                )
            else:
                elapsed = (time.perf_counter() - t0) * 1000
                if allow_404 and response.status_code == 404:
                    metrics.record_success("altaplaza", f"{method} {path}", latency_ms=elapsed)
                    return None
                if response.status_code < 400:
                    metrics.record_success("altaplaza", f"{method} {path}", latency_ms=elapsed)
                    return response.json()

                metrics.record_failure(
                    "altaplaza", f"{method} {path}",
                    error_type=str(response.status_code), latency_ms=elapsed,
                )
                error = BusinessAPIError(
                    _error_message(response, default_error), status_code=response.status_code,
                )
                if response.status_code < 500:
                    raise error
                last_error = error
                logger.warning("Altaplaza server error on attempt %d/%d", attempt, MAX_RETRIES)

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        if isinstance(last_error, BusinessAPIError):
            raise last_error
        raise BusinessAPIError(f"{default_error}: {last_error}")

    def check_user(self, id_card: str) -> dict[str, Any]:
        data = self._request(
            "GET", "/api/v1/external/check-user",
            params={"idCard": id_card}, default_error="Error checking user", allow_404=True,
        )
        if data is None:
            return {"exists": False}
        return data

    def register_user(self, user: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST", "/api/v1/external/register-user",
            json_body=user, default_error="Error registering user",
        )

    def register_invoice(self, invoice: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST", "/api/v1/external/register-invoice",
            json_body=invoice, default_error="Error registering invoice",
        )


# ── Per-tenant client pool (thread-safe) ────────────────────────────
_clients: dict[tuple[str, str], AltaplazaClient] = {}
_clients_lock = threading.Lock()


def get_altaplaza_client(config: AltaplazaConfig) -> AltaplazaClient:
    """Return the pooled AltaplazaClient for this base URL and API key."""
    key = (config.base_url.rstrip("/"), config.api_key)
    client = _clients.get(key)
    if client is None:
        with _clients_lock:
            client = _clients.get(key)
            if client is None:
                client = AltaplazaClient(config)
                _clients[key] = client
    return client
