"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
service a reply cycle touches (model providers, embeddings, re-ranker,
calendar and business APIs, e-mail), plus model fail-over counts and
per-reply token / credit usage.

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.

Usage
-----
>>> from konsul.services.metrics import metrics
>>> metrics.record_success("openai", "gpt-4o-mini", latency_ms=812.0)
>>> metrics.record_fallback("anthropic", "claude-haiku-4-5-001")
>>> metrics.record_usage("gpt-4o-mini", tokens=950, credits=10)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "Konsul"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external call."""
        now = datetime.now(UTC)
        self._append(self._datum(
            "ExternalAPI/RequestCount", _dims(Service=service, Status="success"), now, 1, "Count",
        ))
        self._append(self._datum(
            "ExternalAPI/Latency", _dims(Service=service, Operation=operation), now,
            latency_ms, "Milliseconds",
        ))
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external call."""
        now = datetime.now(UTC)
        self._append(self._datum(
            "ExternalAPI/RequestCount", _dims(Service=service, Status="failure"), now, 1, "Count",
        ))
        self._append(self._datum(
            "ExternalAPI/ErrorCount", _dims(Service=service, ErrorType=error_type), now, 1, "Count",
        ))
        if latency_ms > 0:
            self._append(self._datum(
                "ExternalAPI/Latency", _dims(Service=service, Operation=operation), now,
                latency_ms, "Milliseconds",
            ))
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_fallback(self, provider: str, variant: str) -> None:
        """Record that ``variant`` failed and the chain moved on."""
        self._append(self._datum(
            "Model/Fallback", _dims(Provider=provider, Variant=variant),
            datetime.now(UTC), 1, "Count",
        ))
        logger.debug("Metric: fallback from %s/%s", provider, variant)

    def record_usage(self, model: str, tokens: int, credits: int) -> None:
        """Record token and credit consumption for one reply."""
        now = datetime.now(UTC)
        self._append(self._datum("Usage/TokensUsed", _dims(Model=model), now, tokens, "Count"))
        self._append(self._datum("Usage/CreditsUsed", _dims(Model=model), now, credits, "Count"))
        logger.debug("Metric: usage model=%s tokens=%d credits=%d", model, tokens, credits)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    @staticmethod
    def _datum(
        name: str,
        dimensions: list[dict[str, str]],
        timestamp: datetime,
        value: float,
        unit: str,
    ) -> dict[str, Any]:
        return {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
