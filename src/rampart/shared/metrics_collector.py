"""
In-process metrics for the defense and resilience layer.

Counters for admissions, lockouts, security events, retries and recoveries;
a retry delay histogram, and process memory readings used by
resource-cleanup recovery.
"""

import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import psutil

from .logging_config import get_logger

LabelKey = Tuple[Tuple[str, str], ...]


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class Counter:
    """Counter metric that only increases, tracked per label set."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[LabelKey, Union[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def get_value(self, **labels) -> Union[int, float]:
        """Value for one label set, or the total across all when no labels are given."""
        with self._lock:
            if labels:
                return self._values.get(_label_key(labels), 0)
            return sum(self._values.values())

    def reset(self):
        with self._lock:
            self._values.clear()

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'name': self.name,
                'type': 'counter',
                'total': sum(self._values.values()),
                'series': [
                    {'labels': dict(key), 'value': value}
                    for key, value in self._values.items()
                ]
            }


class Gauge:
    """Gauge metric that can increase or decrease."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        self.name = name
        self.description = description
        self.unit = unit
        self._value: Union[int, float] = 0
        self._lock = threading.Lock()

    def set(self, value: Union[int, float]):
        with self._lock:
            self._value = value

    def increment(self, amount: Union[int, float] = 1):
        with self._lock:
            self._value += amount

    def decrement(self, amount: Union[int, float] = 1):
        with self._lock:
            self._value -= amount

    def get_value(self) -> Union[int, float]:
        with self._lock:
            return self._value

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'type': 'gauge', 'unit': self.unit.value, 'value': self.get_value()}


class Histogram:
    """Histogram metric for tracking distributions."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                 buckets: List[float] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.buckets = buckets or [0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float]):
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': {str(k): v for k, v in self._bucket_counts.items()}
            }


class MetricsCollector:
    """Central registry of named metrics."""

    _instance: Optional['MetricsCollector'] = None
    _lock = threading.Lock()

    def __init__(self):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        if name not in self.counters:
            self.counters[name] = Counter(name, description)
        return self.counters[name]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        """Get or create a gauge."""
        if name not in self.gauges:
            self.gauges[name] = Gauge(name, description, unit)
        return self.gauges[name]

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                      buckets: List[float] = None) -> Histogram:
        """Get or create a histogram."""
        if name not in self.histograms:
            self.histograms[name] = Histogram(name, description, unit, buckets)
        return self.histograms[name]

    def record_process_memory(self) -> Dict[str, float]:
        """Sample resident memory of this process into the memory gauges."""
        process = psutil.Process()
        memory_info = process.memory_info()
        memory_percent = process.memory_percent()
        self.get_gauge('process_memory_rss', 'Resident set size', MetricUnit.BYTES).set(memory_info.rss)
        self.get_gauge('process_memory_percent', 'Share of system memory', MetricUnit.PERCENT).set(memory_percent)
        return {'rss_bytes': float(memory_info.rss), 'percent': float(memory_percent)}

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            'counters': {name: c.to_dict() for name, c in self.counters.items()},
            'gauges': {name: g.to_dict() for name, g in self.gauges.items()},
            'histograms': {name: h.get_statistics() for name, h in self.histograms.items()},
        }

    def reset(self):
        """Drop every registered metric."""
        self.counters.clear()
        self.gauges.clear()
        self.histograms.clear()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()
