"""Release lifecycle event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Emits events as Prometheus metrics
- NullEventEmitter: Discards events (for testing)

Metrics:
- ReleaseMetrics: Container for all Prometheus metrics
- push_metrics: Push a run's metrics to a Pushgateway

Factory:
- create_event_emitter: Creates emitters based on configuration
- EventSinkType: Enum of supported event sink types
"""

from .emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from .metrics import MetricsEventEmitter, ReleaseMetrics, push_metrics
from .models import EventType, ReleaseEvent

__all__ = [
    # Event models
    "EventType",
    "ReleaseEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    # Metrics
    "ReleaseMetrics",
    "push_metrics",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
]
