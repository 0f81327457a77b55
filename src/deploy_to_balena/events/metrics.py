"""Prometheus metrics for release lifecycle observability.

A run is a short-lived process, so metrics live on a per-run
CollectorRegistry and are pushed to a Prometheus Pushgateway when the
run ends (if one is configured) instead of being scraped.

Metrics Defined:
- deploy_releases_built_total: Counter of releases built, by fleet and draft
- deploy_releases_reused_total: Counter of builds skipped by reusing a release
- deploy_releases_finalized_total: Counter of drafts finalized
- deploy_lifecycle_failures_total: Counter of failed runs, by error kind
- deploy_build_duration_seconds: Histogram of build duration

Source:
- events/models.py (ReleaseEvent, EventType)
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, push_to_gateway

from deploy_to_balena.events.emitter import EventEmitter
from deploy_to_balena.events.models import EventType, ReleaseEvent


logger = logging.getLogger(__name__)


# Covers range from 30 seconds to 2 hours
DEFAULT_DURATION_BUCKETS = (
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
    1800.0,
    3600.0,
    7200.0,
)

PUSHGATEWAY_JOB = "deploy_to_balena"


class ReleaseMetrics:
    """Container for all release lifecycle Prometheus metrics.

    Metrics:
        releases_built_total: Labels fleet, draft ("true"/"false").
        releases_reused_total: Labels fleet.
        releases_finalized_total: Labels fleet.
        lifecycle_failures_total: Labels fleet, kind (error class name
            or "timeout").
        build_duration_seconds: Labels fleet.

    Attributes:
        registry: The Prometheus registry for these metrics. A fresh
                  registry is created when none is given.

    Example:
        >>> metrics = ReleaseMetrics()
        >>> metrics.record_build("org/fleet", draft=False, duration_seconds=312.0)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.releases_built_total = Counter(
            "deploy_releases_built_total",
            "Total number of releases built",
            labelnames=["fleet", "draft"],
            registry=self.registry,
        )

        self.releases_reused_total = Counter(
            "deploy_releases_reused_total",
            "Total number of builds skipped by reusing an existing release",
            labelnames=["fleet"],
            registry=self.registry,
        )

        self.releases_finalized_total = Counter(
            "deploy_releases_finalized_total",
            "Total number of draft releases finalized",
            labelnames=["fleet"],
            registry=self.registry,
        )

        self.lifecycle_failures_total = Counter(
            "deploy_lifecycle_failures_total",
            "Total number of failed runs",
            labelnames=["fleet", "kind"],
            registry=self.registry,
        )

        self.build_duration_seconds = Histogram(
            "deploy_build_duration_seconds",
            "Time spent building releases in seconds",
            labelnames=["fleet"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

    def record_build(
        self,
        fleet: str,
        draft: bool,
        duration_seconds: Optional[float] = None,
    ) -> None:
        self.releases_built_total.labels(
            fleet=fleet,
            draft="true" if draft else "false",
        ).inc()
        if duration_seconds is not None:
            self.build_duration_seconds.labels(fleet=fleet).observe(duration_seconds)

    def record_reuse(self, fleet: str) -> None:
        self.releases_reused_total.labels(fleet=fleet).inc()

    def record_finalize(self, fleet: str) -> None:
        self.releases_finalized_total.labels(fleet=fleet).inc()

    def record_failure(self, fleet: str, kind: str) -> None:
        self.lifecycle_failures_total.labels(fleet=fleet, kind=kind).inc()


def push_metrics(
    gateway_url: str,
    registry: CollectorRegistry,
    grouping_key: Optional[Dict[str, str]] = None,
) -> None:
    """Push a registry to a Prometheus Pushgateway.

    Failures are logged and swallowed; metrics never fail a run.

    Args:
        gateway_url: Pushgateway address.
        registry: Registry holding the run's metrics.
        grouping_key: Extra grouping labels (e.g. fleet).
    """
    try:
        push_to_gateway(
            gateway_url,
            job=PUSHGATEWAY_JOB,
            registry=registry,
            grouping_key=grouping_key or {},
        )
        logger.debug("Pushed metrics", extra={"gateway": gateway_url})
    except Exception as e:
        logger.warning(
            "Failed to push metrics to %s: %s",
            gateway_url,
            str(e),
            extra={"gateway": gateway_url, "error": str(e)},
        )


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - BUILD: Increments releases_built_total, records duration
    - CACHE_HIT: Increments releases_reused_total
    - FINALIZE: Increments releases_finalized_total
    - ERROR: Increments lifecycle_failures_total with the error type
    - TIMEOUT: Increments lifecycle_failures_total with kind "timeout"

    Attributes:
        metrics: The ReleaseMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[ReleaseMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else ReleaseMetrics(registry)

    @property
    def metrics(self) -> ReleaseMetrics:
        return self._metrics

    async def emit(self, event: ReleaseEvent) -> None:
        try:
            if event.event_type == EventType.BUILD:
                duration = event.details.get("duration_seconds")
                self._metrics.record_build(
                    event.fleet,
                    draft=bool(event.details.get("draft")),
                    duration_seconds=float(duration) if duration is not None else None,
                )
            elif event.event_type == EventType.CACHE_HIT:
                self._metrics.record_reuse(event.fleet)
            elif event.event_type == EventType.FINALIZE:
                self._metrics.record_finalize(event.fleet)
            elif event.event_type == EventType.ERROR:
                self._metrics.record_failure(
                    event.fleet, event.details.get("error_type", "unknown")
                )
            elif event.event_type == EventType.TIMEOUT:
                self._metrics.record_failure(event.fleet, "timeout")
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "error": str(e)},
            )
