"""Buffered CloudWatch metrics for the assistant.

``ExternalAPI/*`` metrics cover calls to the model provider (``llm``) and the
messaging gateway (``delivery``); ``Pipeline/EventCount`` counts message
outcomes and security events by name.  Data points are buffered in memory
and pushed by a background thread when ``METRICS_ENABLED=true``; otherwise
they are dropped on flush.
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

NAMESPACE = "LumoAssistant"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _datum(name: str, dimensions: dict[str, str], value: float, unit: str) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
        "Timestamp": datetime.now(UTC),
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    def __init__(self, *, enabled: bool | None = None, namespace: str = NAMESPACE) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._namespace = namespace
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Count a completed ``llm`` or ``delivery`` call and its latency."""
        self._append(
            _datum("ExternalAPI/RequestCount", {"Service": service, "Status": "success"}, 1, "Count"),
            _datum("ExternalAPI/Latency", {"Service": service, "Operation": operation},
                   latency_ms, "Milliseconds"),
        )
        logger.debug("Metric: %s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Count a failed call by exception name; latency only when measured."""
        points = [
            _datum("ExternalAPI/RequestCount", {"Service": service, "Status": "failure"}, 1, "Count"),
            _datum("ExternalAPI/ErrorCount", {"Service": service, "ErrorType": error_type}, 1, "Count"),
        ]
        if latency_ms > 0:
            points.append(
                _datum("ExternalAPI/Latency", {"Service": service, "Operation": operation},
                       latency_ms, "Milliseconds")
            )
        self._append(*points)
        logger.debug("Metric: %s %s failed (%s)", service, operation, error_type)

    def record_event(self, event: str, value: float = 1) -> None:
        """Count a pipeline outcome such as ``replied`` or ``auto_block``."""
        self._append(_datum("Pipeline/EventCount", {"Event": event}, value, "Count"))
        logger.debug("Metric: pipeline event %s", event)

    # ── Publishing ───────────────────────────────────────────────────

    def flush(self) -> int:
        """Drain the buffer; returns how many points reached CloudWatch."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Dropped %d metrics (publishing disabled)", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start : start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=self._namespace, MetricData=chunk)
                sent += len(chunk)
            logger.info("Published %d metrics to %s", sent, self._namespace)
        except Exception:
            logger.exception("Failed to publish metrics")
        return sent

    def _append(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)

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
        logger.info("Publishing metrics every %ds", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()
