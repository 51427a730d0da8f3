"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
service the webhook talks to: the WhatsApp Graph API, Anthropic and the
knowledge-document hosts.

* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS``.
* When ``METRICS_ENABLED != "true"`` metrics are only logged at DEBUG level.

Usage
-----
>>> from carebot.services.metrics import metrics
>>> metrics.record_success("whatsapp", "POST /messages", latency_ms=84.2)
>>> async with metrics.timed("anthropic", "route_intent"):
...     await llm.ainvoke(messages)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "CareBot"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None
        self._stopped = threading.Event()

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external call."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._append(
            _datum("External/Calls", [service_dim, {"Name": "Outcome", "Value": "ok"}], now, 1, "Count")
        )
        self._append(
            _datum(
                "External/Latency",
                [service_dim, {"Name": "Operation", "Value": operation}],
                now,
                latency_ms,
                "Milliseconds",
            )
        )
        logger.debug("Metric: %s %s ok latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external call."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._append(
            _datum("External/Calls", [service_dim, {"Name": "Outcome", "Value": "error"}], now, 1, "Count")
        )
        self._append(
            _datum(
                "External/Errors",
                [service_dim, {"Name": "ErrorType", "Value": error_type}],
                now,
                1,
                "Count",
            )
        )
        if latency_ms > 0:
            self._append(
                _datum(
                    "External/Latency",
                    [service_dim, {"Name": "Operation", "Value": operation}],
                    now,
                    latency_ms,
                    "Milliseconds",
                )
            )
        logger.debug(
            "Metric: %s %s error=%s latency=%.1fms", service, operation, error_type, latency_ms,
        )

    @asynccontextmanager
    async def timed(self, service: str, operation: str) -> AsyncIterator[None]:
        """Time the wrapped block; failures are recorded by exception class name."""
        start = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_failure(
                service, operation, type(exc).__name__, (time.perf_counter() - start) * 1000,
            )
            raise
        self.record_success(service, operation, (time.perf_counter() - start) * 1000)

    def flush(self) -> int:
        """Publish buffered data points.  Returns how many CloudWatch accepted.

        Each ``MAX_BATCH_SIZE`` chunk is sent separately; a rejected chunk is
        logged and dropped without affecting the others.
        """
        batch = self._drain()
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled; discarded %d data points", len(batch))
            return 0

        sent = 0
        for start in range(0, len(batch), MAX_BATCH_SIZE):
            chunk = batch[start : start + MAX_BATCH_SIZE]
            try:
                self._get_cw_client().put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
            except Exception:
                logger.exception("PutMetricData rejected %d data points", len(chunk))
                continue
            sent += len(chunk)
        if sent:
            logger.info("Published %d/%d data points to CloudWatch", sent, len(batch))
        return sent

    def close(self) -> None:
        """Stop the background flusher and publish what is left."""
        self._stopped.set()
        self.flush()

    # ── Internal ──────────────────────────────────────────────────────

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _drain(self) -> list[dict[str, Any]]:
        with self._lock:
            batch, self._buffer = self._buffer, []
        return batch

    def _start_flush_thread(self) -> None:
        def _run() -> None:
            while not self._stopped.wait(FLUSH_INTERVAL_SECONDS):
                self.flush()

        threading.Thread(target=_run, daemon=True, name="cloudwatch-flush").start()
        atexit.register(self.close)
        logger.info("CloudWatch flusher running every %ds", FLUSH_INTERVAL_SECONDS)

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


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
