"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from konsul.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        if enabled:
            with patch.object(MetricsClient, "_start_flush_thread"):
                return MetricsClient()
        return MetricsClient()


class TestMetricsRecording:
    """Verify that each record_* call buffers the right data."""

    def test_record_success_appends_count_and_latency(self):
        client = _make_client()
        client.record_success("openai", "gpt-4o-mini", latency_ms=123.4)
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_without_latency(self):
        client = _make_client()
        client.record_failure("anthropic", "claude-haiku-4-5", error_type="APITimeoutError")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/ErrorCount"}

    def test_record_failure_with_latency_appends_three_data_points(self):
        client = _make_client()
        client.record_failure("calendly", "POST /invitees", error_type="4xx", latency_ms=500.0)
        assert len(client._buffer) == 3

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("cohere", "rerank", error_type="ReadTimeout")
        error_metric = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount")
        dim_map = {d["Name"]: d["Value"] for d in error_metric["Dimensions"]}
        assert dim_map == {"Service": "cohere", "ErrorType": "ReadTimeout"}

    def test_record_fallback(self):
        client = _make_client()
        client.record_fallback("anthropic", "claude-haiku-4-5-001")
        (datum,) = client._buffer
        assert datum["MetricName"] == "Model/Fallback"
        assert {d["Name"]: d["Value"] for d in datum["Dimensions"]}["Variant"] == "claude-haiku-4-5-001"

    def test_record_usage(self):
        client = _make_client()
        client.record_usage("gpt-4o-mini", tokens=950, credits=10)
        values = {m["MetricName"]: m["Value"] for m in client._buffer}
        assert values == {"Usage/TokensUsed": 950, "Usage/CreditsUsed": 10}


class TestMetricsFlush:
    def test_flush_when_disabled_sends_nothing_and_clears(self):
        client = _make_client()
        client.record_success("resend", "POST /emails", latency_ms=100.0)
        assert client.flush() == 0
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("calendly", "GET /event_types", latency_ms=100.0)

        assert client.flush() == 2
        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE == "Konsul"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")

        client.record_usage("gpt-4o-mini", tokens=1, credits=1)

        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert _make_client(enabled=True).flush() == 0
