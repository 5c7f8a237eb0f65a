"""
Observability and metrics hooks for monitoring parse requests.

The parser service owns an ObservabilityManager (injectable) and reports request
lifecycle events, a ``records_parsed`` counter and a ``parse_duration`` timer
through the registered hooks.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics that can be emitted."""
    COUNTER = "counter"  # Monotonically increasing count
    GAUGE = "gauge"  # Point-in-time value
    HISTOGRAM = "histogram"  # Distribution of values
    TIMER = "timer"  # Duration measurement (ms)


class EventType(Enum):
    """Types of events that can be emitted."""
    PARSE_START = "parse_start"
    PARSE_COMPLETE = "parse_complete"
    PARSE_ERROR = "parse_error"
    PARSE_CANCELLED = "parse_cancelled"
    WORKER_READY = "worker_ready"
    WORKER_FAILED = "worker_failed"


@dataclass
class MetricEvent:
    """Represents a metric event."""
    metric_type: MetricType
    name: str
    value: float
    timestamp: float = field(default_factory=time.time)
    tags: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        tags_str = ",".join(f"{k}={v}" for k, v in self.tags.items())
        return f"{self.name}:{self.value}|{self.metric_type.value}|{tags_str}"


@dataclass
class Event:
    """Represents a parse request or worker event."""
    event_type: EventType
    timestamp: float = field(default_factory=time.time)
    request_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        parts = [self.event_type.value]
        if self.request_id:
            parts.append(f"request={self.request_id}")
        if self.details:
            parts.append(",".join(f"{k}={v}" for k, v in self.details.items()))
        return " ".join(parts)


ERROR_EVENTS = (EventType.PARSE_ERROR, EventType.WORKER_FAILED)


class ObservabilityHook:
    """Base class for observability hooks."""

    def on_metric(self, metric: MetricEvent) -> None:
        """Called when a metric is emitted."""
        pass

    def on_event(self, event: Event) -> None:
        """Called when an event occurs."""
        pass


class LoggingHook(ObservabilityHook):
    """Hook that logs metrics and events to Python logging."""

    def __init__(self, log_metrics: bool = True, log_events: bool = True):
        self.log_metrics = log_metrics
        self.log_events = log_events

    def on_metric(self, metric: MetricEvent) -> None:
        if self.log_metrics:
            logger.debug(f"METRIC: {metric}")

    def on_event(self, event: Event) -> None:
        if self.log_events:
            level = logging.WARNING if event.event_type in ERROR_EVENTS else logging.INFO
            logger.log(level, f"EVENT: {event}")


class PrometheusHook(ObservabilityHook):
    """Hook that exports metrics to Prometheus.

    Requires prometheus_client library:
        pip install prometheus-client

    Args:
        registry: Prometheus collector registry (the default registry when None)
        namespace: Metric name prefix
    """

    def __init__(self, registry=None, namespace: str = "financial_parser"):
        try:
            from prometheus_client import Counter, Gauge, Histogram
        except ImportError:
            raise ImportError(
                "prometheus_client is required for PrometheusHook. "
                "Install with: pip install prometheus-client"
            )
        self.Counter = Counter
        self.Gauge = Gauge
        self.Histogram = Histogram
        self.registry = registry
        self.namespace = namespace
        self._metrics: Dict[str, Any] = {}

    def _get_or_create_metric(self, metric: MetricEvent):
        """Get or create a Prometheus metric."""
        key = f"{metric.name}_{metric.metric_type.value}"

        if key not in self._metrics:
            labels = sorted(metric.tags)
            kwargs = {"namespace": self.namespace}
            if self.registry is not None:
                kwargs["registry"] = self.registry

            if metric.metric_type == MetricType.COUNTER:
                factory = self.Counter
            elif metric.metric_type == MetricType.GAUGE:
                factory = self.Gauge
            else:
                # Histograms and timers
                factory = self.Histogram
            self._metrics[key] = factory(metric.name, f"Parser {metric.name}", labels, **kwargs)

        return self._metrics[key]

    def on_metric(self, metric: MetricEvent) -> None:
        prom_metric = self._get_or_create_metric(metric)

        if metric.tags:
            prom_metric = prom_metric.labels(**metric.tags)

        if metric.metric_type == MetricType.COUNTER:
            prom_metric.inc(metric.value)
        elif metric.metric_type == MetricType.GAUGE:
            prom_metric.set(metric.value)
        else:
            prom_metric.observe(metric.value)


class ObservabilityManager:
    """Manages observability hooks and emits metrics/events."""

    def __init__(self, hooks: Optional[List[ObservabilityHook]] = None):
        self.hooks: List[ObservabilityHook] = list(hooks or [])
        self._timers: Dict[str, float] = {}

    def register_hook(self, hook: ObservabilityHook) -> None:
        """Register an observability hook."""
        self.hooks.append(hook)

    def emit_metric(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Emit a metric to all registered hooks."""
        metric = MetricEvent(
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {}
        )

        for hook in self.hooks:
            try:
                hook.on_metric(metric)
            except Exception as e:
                logger.error(f"Error in observability hook: {e}")

    def emit_event(
        self,
        event_type: EventType,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Emit an event to all registered hooks."""
        event = Event(
            event_type=event_type,
            request_id=request_id,
            details=details or {}
        )

        for hook in self.hooks:
            try:
                hook.on_event(event)
            except Exception as e:
                logger.error(f"Error in observability hook: {e}")

    def start_timer(self, name: str, key: Optional[str] = None) -> None:
        """Start a named timer, optionally scoped to ``key`` (e.g. a request id)."""
        self._timers[f"{name}:{key}"] = time.perf_counter()

    def cancel_timer(self, name: str, key: Optional[str] = None) -> None:
        self._timers.pop(f"{name}:{key}", None)

    def end_timer(self, name: str, key: Optional[str] = None,
                  tags: Optional[Dict[str, str]] = None) -> float:
        """End a named timer and emit the duration in milliseconds.

        Returns:
            Duration in seconds (0.0 if the timer was not started)
        """
        started = self._timers.pop(f"{name}:{key}", None)
        if started is None:
            logger.warning(f"Timer '{name}' was not started")
            return 0.0

        duration = time.perf_counter() - started
        self.emit_metric(
            metric_type=MetricType.TIMER,
            name=name,
            value=duration * 1000,
            tags=tags
        )
        return duration

    # Convenience methods

    def counter(self, name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None) -> None:
        """Emit a counter metric."""
        self.emit_metric(MetricType.COUNTER, name, value, tags)

    def gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Emit a gauge metric."""
        self.emit_metric(MetricType.GAUGE, name, value, tags)

    def histogram(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Emit a histogram metric."""
        self.emit_metric(MetricType.HISTOGRAM, name, value, tags)
