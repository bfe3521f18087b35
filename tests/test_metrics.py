"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from booking_assistant.services.metrics import MAX_BATCH_SIZE, NAMESPACE, MetricsClient, _datum


def _client(enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        with patch.object(MetricsClient, "_start_flush_thread"):
            return MetricsClient()


def _dims(datum: dict) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in datum.get("Dimensions", [])}


def _by_name(client: MetricsClient) -> dict[str, dict]:
    return {m["MetricName"]: m for m in client._buffer}


class TestDatum:
    def test_dimensions_become_name_value_pairs(self):
        datum = _datum("ExternalCall/Latency", 12.5, "Milliseconds", {"Service": "calendly", "Operation": "GET /x"})
        assert datum["Dimensions"] == [
            {"Name": "Service", "Value": "calendly"},
            {"Name": "Operation", "Value": "GET /x"},
        ]
        assert datum["Value"] == 12.5
        assert datum["Unit"] == "Milliseconds"

    def test_no_dimensions_key_when_none_given(self):
        datum = _datum("Lifecycle/SessionsOpened", 1, "Count")
        assert "Dimensions" not in datum
        assert datum["Timestamp"].tzinfo is not None


class TestExternalCalls:
    def test_success_records_count_and_latency(self):
        client = _client()
        client.record_success("automation", "opentable book_appointment", latency_ms=8200.0)

        data = _by_name(client)
        assert set(data) == {"ExternalCall/RequestCount", "ExternalCall/Latency"}
        assert _dims(data["ExternalCall/RequestCount"]) == {"Service": "automation", "Status": "success"}
        assert _dims(data["ExternalCall/Latency"]) == {
            "Service": "automation",
            "Operation": "opentable book_appointment",
        }
        assert data["ExternalCall/Latency"]["Value"] == 8200.0

    def test_data_points_of_one_call_share_a_timestamp(self):
        client = _client()
        client.record_success("calendly", "GET /users/me", latency_ms=40.0)
        first, second = client._buffer
        assert first["Timestamp"] == second["Timestamp"]

    def test_failure_without_latency(self):
        client = _client()
        client.record_failure("anthropic", "stream_turn", error_type="RateLimitError")

        data = _by_name(client)
        assert set(data) == {"ExternalCall/RequestCount", "ExternalCall/ErrorCount"}
        assert _dims(data["ExternalCall/RequestCount"])["Status"] == "failure"
        assert _dims(data["ExternalCall/ErrorCount"])["ErrorType"] == "RateLimitError"

    def test_failure_with_latency_adds_latency_point(self):
        client = _client()
        client.record_failure("calendly", "POST /invitees", error_type="4xx", latency_ms=310.0)
        assert "ExternalCall/Latency" in _by_name(client)
        assert len(client._buffer) == 3


class TestLifecycleCounters:
    def test_increment_updates_counter_and_buffer(self):
        client = _client()
        client.increment("ResourcesAcquired")
        client.increment("ResourcesAcquired")
        assert client.counter("ResourcesAcquired") == 2
        assert [m["MetricName"] for m in client._buffer] == ["Lifecycle/ResourcesAcquired"] * 2

    def test_increment_by_more_than_one(self):
        client = _client()
        client.increment("SessionsClosed", 3)
        assert client.counter("SessionsClosed") == 3
        assert client._buffer[0]["Value"] == 3

    def test_unknown_counter_reads_zero(self):
        assert _client().counter("SessionsOpened") == 0

    def test_counters_survive_flush(self):
        client = _client()
        client.increment("ResourcesReleased")
        client.flush()
        assert client.counter("ResourcesReleased") == 1
        assert client._buffer == []

    def test_local_buffer_keeps_newest_points(self):
        client = _client()
        for _ in range(MAX_BATCH_SIZE):
            client.increment("SessionsOpened")
        client.record_success("calendly", "GET /event_types", latency_ms=5.0)

        assert len(client._buffer) == MAX_BATCH_SIZE
        assert client._buffer[-1]["MetricName"] == "ExternalCall/Latency"
        assert client.counter("SessionsOpened") == MAX_BATCH_SIZE


class TestFlush:
    def test_disabled_flush_drops_batch_without_boto3(self):
        client = _client()
        client.record_success("calendly", "GET /event_types", latency_ms=100.0)
        with patch.object(client, "_get_cw_client") as mock_get:
            assert client.flush() == 0
        mock_get.assert_not_called()
        assert client._buffer == []

    def test_empty_buffer_sends_nothing(self):
        assert _client(enabled=True).flush() == 0

    def test_enabled_flush_publishes_to_namespace(self):
        client = _client(enabled=True)
        client._cw_client = MagicMock()
        client.record_success("calendly", "GET /event_types", latency_ms=100.0)

        assert client.flush() == 2
        kwargs = client._cw_client.put_metric_data.call_args[1]
        assert kwargs["Namespace"] == NAMESPACE == "BookingAssistant"
        assert len(kwargs["MetricData"]) == 2

    def test_large_buffers_are_split_into_batches(self):
        client = _client(enabled=True)
        client._cw_client = MagicMock()
        for _ in range(MAX_BATCH_SIZE + 1):
            client.increment("SessionsOpened")

        assert client.flush() == MAX_BATCH_SIZE + 1
        sizes = [len(c[1]["MetricData"]) for c in client._cw_client.put_metric_data.call_args_list]
        assert sizes == [MAX_BATCH_SIZE, 1]

    @pytest.mark.parametrize("fail_on_call, expected_sent", [(1, 0), (2, MAX_BATCH_SIZE)])
    def test_publish_error_is_logged_not_raised(self, fail_on_call, expected_sent):
        client = _client(enabled=True)
        client._cw_client = MagicMock()
        outcomes = [None, None]
        outcomes[fail_on_call - 1] = RuntimeError("throttled")
        client._cw_client.put_metric_data.side_effect = outcomes
        for _ in range(MAX_BATCH_SIZE + 1):
            client.increment("SessionsOpened")

        assert client.flush() == expected_sent
