"""Telemetry and metrics for the memory subsystem."""
import threading
import time
from typing import Dict, Any
from dataclasses import dataclass
from datetime import datetime, timezone
from contextlib import contextmanager

from .errors import OperationCancelled


@dataclass
class MetricSnapshot:
    """Point-in-time snapshot of metrics."""
    timestamp: datetime
    counters: Dict[str, int]
    histograms: Dict[str, list]
    gauges: Dict[str, float]


class SimpleMetrics:
    """Lightweight in-process metrics (no external deps)."""

    HISTOGRAM_LIMIT = 1000

    def __init__(self):
        self._counters: Dict[str, int] = {}
        self._histograms: Dict[str, list] = {}
        self._gauges: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._start_time = time.time()

    def increment(self, name: str, value: int = 1, labels: Dict[str, str] = None):
        """Increment a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def record(self, name: str, value: float, labels: Dict[str, str] = None):
        """Record a value in a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            values = self._histograms.setdefault(key, [])
            values.append(value)
            if len(values) > self.HISTOGRAM_LIMIT:
                self._histograms[key] = values[-self.HISTOGRAM_LIMIT:]

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        """Set a gauge value."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def _make_key(self, name: str, labels: Dict[str, str] = None) -> str:
        """Create a unique key for a metric with labels."""
        if not labels:
            return name
        label_str = ','.join(f'{k}={v}' for k, v in sorted(labels.items()))
        return f'{name}{{{label_str}}}'

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        """Get current counter value."""
        key = self._make_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def get_gauge(self, name: str, labels: Dict[str, str] = None) -> float:
        key = self._make_key(name, labels)
        with self._lock:
            return self._gauges.get(key, 0.0)

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None) -> Dict[str, float]:
        """Get histogram statistics for an exact metric key."""
        key = self._make_key(name, labels)
        with self._lock:
            values = list(self._histograms.get(key, []))
        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'avg': 0, 'p50': 0, 'p95': 0, 'p99': 0}

        sorted_vals = sorted(values)
        count = len(sorted_vals)

        return {
            'count': count,
            'min': sorted_vals[0],
            'max': sorted_vals[-1],
            'avg': sum(sorted_vals) / count,
            'p50': sorted_vals[int(count * 0.5)],
            'p95': sorted_vals[int(count * 0.95)] if count > 20 else sorted_vals[-1],
            'p99': sorted_vals[int(count * 0.99)] if count > 100 else sorted_vals[-1],
        }

    def snapshot(self) -> MetricSnapshot:
        """Get a snapshot of all metrics."""
        with self._lock:
            return MetricSnapshot(
                timestamp=datetime.now(timezone.utc),
                counters=dict(self._counters),
                histograms={k: list(v) for k, v in self._histograms.items()},
                gauges=dict(self._gauges)
            )

    def uptime(self) -> float:
        return time.time() - self._start_time

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()
            self._start_time = time.time()


class MemoryMetrics:
    """Metrics collector for one memory coordinator."""

    OPERATIONS = 'memory.operations'
    OPERATION_ERRORS = 'memory.operations.errors'
    OPERATION_LATENCY = 'memory.operations.latency_ms'
    CANCELLATIONS = 'memory.operations.cancelled'

    KNOWLEDGE_POLICY_DROPS = 'memory.knowledge.policy_drops'
    KNOWLEDGE_STORED = 'memory.knowledge.stored'
    CONTEXTS_SHARED = 'memory.contexts.shared'
    CONTEXTS_SUMMARIZED = 'memory.contexts.summarized'
    KNOWLEDGE_PRUNED = 'memory.knowledge.pruned'

    INDEX_SIZE = 'memory.index.size'

    def __init__(self, service_name: str = 'fleet-memory'):
        self._service_name = service_name
        self._metrics = SimpleMetrics()

    @property
    def metrics(self) -> SimpleMetrics:
        return self._metrics

    def record_operation(self, operation: str, success: bool, latency_ms: float):
        """Record one coordinator operation."""
        labels = {'operation': operation, 'success': str(success).lower()}
        self._metrics.increment(self.OPERATIONS, labels=labels)
        if success:
            self._metrics.record(self.OPERATION_LATENCY, latency_ms, labels={'operation': operation})
        else:
            self._metrics.increment(self.OPERATION_ERRORS, labels={'operation': operation})

    def record_cancellation(self, operation: str):
        self._metrics.increment(self.CANCELLATIONS, labels={'operation': operation})

    def record_policy_drop(self, domain: str):
        """Record a knowledge write dropped for low confidence."""
        self._metrics.increment(self.KNOWLEDGE_POLICY_DROPS, labels={'domain': domain})

    def record_knowledge_stored(self, domain: str):
        self._metrics.increment(self.KNOWLEDGE_STORED, labels={'domain': domain})

    def record_share(self, from_agent: str, to_agent: str):
        self._metrics.increment(self.CONTEXTS_SHARED, labels={'from': from_agent, 'to': to_agent})

    def record_summarized(self, count: int = 1):
        self._metrics.increment(self.CONTEXTS_SUMMARIZED, value=count)

    def record_pruned(self, count: int):
        self._metrics.increment(self.KNOWLEDGE_PRUNED, value=count)

    def set_index_size(self, size: int):
        self._metrics.set_gauge(self.INDEX_SIZE, size)

    def policy_drops(self, domain: str) -> int:
        return self._metrics.get_counter(self.KNOWLEDGE_POLICY_DROPS, labels={'domain': domain})

    def operation_count(self, operation: str, success: bool = True) -> int:
        labels = {'operation': operation, 'success': str(success).lower()}
        return self._metrics.get_counter(self.OPERATIONS, labels=labels)

    @contextmanager
    def measure_operation(self, operation_name: str):
        """Context manager to measure operation duration."""
        start = time.time()
        success = True
        try:
            yield
        except OperationCancelled:
            success = False
            self.record_cancellation(operation_name)
            raise
        except Exception:
            success = False
            raise
        finally:
            latency_ms = (time.time() - start) * 1000
            self.record_operation(operation_name, success, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        snapshot = self._metrics.snapshot()

        return {
            'timestamp': snapshot.timestamp.isoformat(),
            'service': self._service_name,
            'uptime_seconds': self._metrics.uptime(),
            'counters': snapshot.counters,
            'gauges': snapshot.gauges,
            'histograms': {
                name: self._metrics.get_histogram_stats(name)
                for name in snapshot.histograms.keys()
            }
        }

    def reset(self):
        """Reset all metrics."""
        self._metrics.reset()
