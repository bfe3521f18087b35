"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
collaborator the orchestrator talks to (``anthropic``, ``calendly``,
``automation``) and process-wide lifecycle counters (sessions opened and
closed, browsers acquired and released).

Design
------
* Data points are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), data points are
  logged at DEBUG level but **not** pushed to CloudWatch, and the buffer
  keeps only the newest ``MAX_BATCH_SIZE`` of them.
* Lifecycle counters are also kept in memory so tests and the CLI can
  read them back with :meth:`MetricsClient.counter`.

Usage
-----
>>> from booking_assistant.services.metrics import metrics
>>> metrics.record_success("calendly", "GET /event_types", latency_ms=123.4)
>>> metrics.increment("ResourcesAcquired")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections import Counter
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "BookingAssistant"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call

_CALL_PREFIX = "ExternalCall"


def _datum(
    name: str,
    value: float,
    unit: str,
    dimensions: dict[str, str] | None = None,
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Build one ``MetricData`` entry in the shape ``put_metric_data`` takes."""
    datum: dict[str, Any] = {
        "MetricName": name,
        "Timestamp": timestamp or datetime.now(UTC),
        "Value": value,
        "Unit": unit,
    }
    if dimensions:
        datum["Dimensions"] = [{"Name": key, "Value": val} for key, val in dimensions.items()]
    return datum


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._counters: Counter[str] = Counter()
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External calls ───────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external call."""
        now = datetime.now(UTC)
        self._append(
            _datum(f"{_CALL_PREFIX}/RequestCount", 1, "Count", {"Service": service, "Status": "success"}, now),
            _datum(f"{_CALL_PREFIX}/Latency", latency_ms, "Milliseconds", {"Service": service, "Operation": operation}, now),
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external call.

        Latency is only published when the caller measured it; failures
        raised before any I/O pass the default of 0.
        """
        now = datetime.now(UTC)
        points = [
            _datum(f"{_CALL_PREFIX}/RequestCount", 1, "Count", {"Service": service, "Status": "failure"}, now),
            _datum(f"{_CALL_PREFIX}/ErrorCount", 1, "Count", {"Service": service, "ErrorType": error_type}, now),
        ]
        if latency_ms > 0:
            points.append(
                _datum(f"{_CALL_PREFIX}/Latency", latency_ms, "Milliseconds", {"Service": service, "Operation": operation}, now)
            )
        self._append(*points)
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Lifecycle counters ───────────────────────────────────────────

    def increment(self, name: str, value: int = 1) -> None:
        """Bump a process-wide lifecycle counter."""
        with self._lock:
            self._counters[name] += value
        self._append(_datum(f"Lifecycle/{name}", value, "Count"))

    def counter(self, name: str) -> int:
        """Current value of a lifecycle counter since process start."""
        with self._lock:
            return self._counters[name]

    # ── Publishing ───────────────────────────────────────────────────

    def flush(self) -> int:
        """Push buffered data points to CloudWatch.  Returns how many were sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []

        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            while sent < len(batch):
                chunk = batch[sent : sent + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch (%d of %d sent)", sent, len(batch))
        return sent

    def _append(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)
            overflow = len(self._buffer) - MAX_BATCH_SIZE
            # Nothing drains the buffer locally.
            if not self._enabled and overflow > 0:
                del self._buffer[:overflow]

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
