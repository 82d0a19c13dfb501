"""
Prometheus metrics for the controller.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    push_to_gateway,
)

from ..models import HealthClassification

logger = logging.getLogger(__name__)

HEALTH_VALUES = {
    HealthClassification.HEALTHY: 1,
    HealthClassification.UNHEALTHY: 0,
    HealthClassification.UNKNOWN: -1,
}


class ControllerMetrics:
    """
    Prometheus metrics for the availability and release controller.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize controller metrics.

        Args:
            registry: Prometheus registry to use (default: a private registry)
        """
        self.registry = registry if registry is not None else CollectorRegistry()

        self.region_health = Gauge(
            'regionctl_region_health',
            'Region health (1=healthy, 0=unhealthy, -1=unknown)',
            ['region'],
            registry=self.registry
        )

        self.probe_latency = Histogram(
            'regionctl_probe_latency_seconds',
            'Readiness probe latency in seconds',
            ['region', 'result'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )

        self.dns_changes = Counter(
            'regionctl_dns_changes_total',
            'DNS change batches by result',
            ['result'],
            registry=self.registry
        )

        self.failovers = Counter(
            'regionctl_failovers_total',
            'Routing mode transitions',
            ['from_mode', 'to_mode'],
            registry=self.registry
        )

        self.deployments = Counter(
            'regionctl_deployments_total',
            'Deployment attempts by kind and final state',
            ['kind', 'state'],
            registry=self.registry
        )

        self.convergence_duration = Histogram(
            'regionctl_convergence_duration_seconds',
            'Time spent waiting for the platform to converge',
            ['kind'],
            buckets=[5, 15, 30, 60, 120, 300, 600, 1200],
            registry=self.registry
        )

    def record_health(self, region: str, classification: HealthClassification):
        self.region_health.labels(region=region).set(HEALTH_VALUES[classification])

    def record_probe(self, region: str, ok: bool, latency_ms: float):
        self.probe_latency.labels(
            region=region, result='ok' if ok else 'failed'
        ).observe(latency_ms / 1000.0)

    def record_dns_change(self, result: str):
        self.dns_changes.labels(result=result).inc()

    def record_failover(self, from_mode: str, to_mode: str):
        self.failovers.labels(from_mode=from_mode, to_mode=to_mode).inc()

    def record_deployment(self, kind: str, state: str):
        self.deployments.labels(kind=kind, state=state).inc()

    def record_convergence(self, kind: str, seconds: float):
        self.convergence_duration.labels(kind=kind).observe(seconds)

    def push(self, gateway_url: str, job: str = 'regionctl') -> bool:
        """Push metrics to a Prometheus Pushgateway"""
        try:
            push_to_gateway(gateway_url, job=job, registry=self.registry)
            logger.info(f"Pushed metrics to {gateway_url}")
            return True
        except OSError as e:
            logger.error(f"Failed to push metrics to {gateway_url}: {e}")
            return False
