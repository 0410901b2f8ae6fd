"""
Metrics for the Ingest Pipeline.

Per-message transitions are emitted as CloudWatch Embedded Metric Format
records through Powertools and also counted in-process, so a monitor (or a
test) can read the aggregate counters without parsing log output.
"""

import threading
from collections import Counter
from typing import Dict, Optional

from aws_lambda_powertools import Metrics
from aws_lambda_powertools.metrics import MetricUnit

# Observability label -> EMF metric name.
_METRIC_NAMES = {
    "stored": "Stored",
    "notified": "Notified",
    "acknowledged": "Acknowledged",
    "failed:transient": "FailedTransient",
    "failed:permanent": "FailedPermanent",
    "failed:receipt_expired": "FailedReceiptExpired",
    "failed:unexpected": "FailedUnexpected",
    "abandoned": "Abandoned",
    "redelivered": "Redelivered",
    "duplicate_write": "DuplicateWriteSkipped",
}


class PipelineMetrics:
    """
    Thread-safe facade over the Powertools Metrics buffer.

    Powertools accumulates metrics in a buffer shared by every Metrics
    instance, which is not safe for concurrent writers, so every access goes
    through one lock.
    """

    def __init__(self, namespace: str, service: str, environment: str):
        self._metrics = Metrics(namespace=namespace, service=service)
        self._metrics.set_default_dimensions(environment=environment)
        self._lock = threading.Lock()
        self._counts: Counter = Counter()

    def record(self, label: str, value: int = 1) -> None:
        """Counts one occurrence of an observability label, e.g. 'failed:permanent'."""
        name = _METRIC_NAMES.get(label)
        with self._lock:
            self._counts[label] += value
            if name:
                self._metrics.add_metric(name=name, unit=MetricUnit.Count, value=value)

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._metrics.add_metric(name=name, unit=MetricUnit.Count, value=value)

    def count(self, label: str) -> int:
        with self._lock:
            return self._counts[label]

    @property
    def failure_count(self) -> int:
        with self._lock:
            return sum(v for k, v in self._counts.items() if k.startswith("failed:"))

    def snapshot(self, extra: Optional[Dict[str, int]] = None) -> Dict[str, int]:
        """Returns the counters, merged with any caller-provided gauges."""
        with self._lock:
            data = dict(self._counts)
        data["failures"] = sum(v for k, v in data.items() if k.startswith("failed:"))
        if extra:
            data.update(extra)
        return data

    def flush(self) -> None:
        """Writes buffered metrics to stdout as an EMF record."""
        with self._lock:
            self._metrics.flush_metrics(raise_on_empty_metrics=False)
