"""
Region Health Monitor

Owns per-region probe history and derives each region's classification from
it. Failures are debounced on the way down (a configurable number of
consecutive failures is required to flip a healthy region); a single
successful probe restores a region to healthy.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from ..models import HealthClassification, ProbeResult, Region
from ..monitoring.metrics import ControllerMetrics
from ..utils.logger import ControllerLoggerAdapter
from .probe import HealthProbeClient

logger = logging.getLogger(__name__)


def classify_region(region: Region, failure_threshold: int) -> HealthClassification:
    """Classification implied by a region's probe history"""
    if region.last_result is None:
        return HealthClassification.UNKNOWN
    if region.last_result.ok:
        return HealthClassification.HEALTHY

    streak = region.consecutive_failures
    if streak >= failure_threshold:
        return HealthClassification.UNHEALTHY

    # Debounce window: stay healthy only if a success precedes the failure streak
    if streak < len(region.history) and region.history[-streak - 1].ok:
        return HealthClassification.HEALTHY
    return HealthClassification.UNKNOWN


class RegionHealthMonitor:
    """
    Aggregates probe results per region

    The monitor is the only writer of region health state; `classify` and
    `snapshot` are pure reads.
    """

    def __init__(
        self,
        regions: Iterable[Region],
        probe_client: HealthProbeClient,
        failure_threshold: int = 1,
        metrics: Optional[ControllerMetrics] = None
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.regions: Dict[str, Region] = {r.region_id: r for r in regions}
        self.probe_client = probe_client
        self.failure_threshold = failure_threshold
        self.metrics = metrics

    def region(self, region_id: str) -> Region:
        try:
            return self.regions[region_id]
        except KeyError:
            raise KeyError(f"Unknown region: {region_id}")

    def classify(self, region_id: str) -> HealthClassification:
        return classify_region(self.region(region_id), self.failure_threshold)

    def snapshot(self) -> Dict[str, HealthClassification]:
        return {region_id: self.classify(region_id) for region_id in self.regions}

    def record(self, region_id: str, result: ProbeResult) -> HealthClassification:
        """Append a probe result to a region's history"""
        region = self.region(region_id)
        before = self.classify(region_id)
        region.record(result)
        after = self.classify(region_id)

        log = ControllerLoggerAdapter(logger, {'region': region_id})
        if before != after:
            log.info(
                f"Region {region_id}: {before.value} -> {after.value} "
                f"(failures={region.consecutive_failures})"
            )
        elif not result.ok:
            log.warning(
                f"Region {region_id} probe failed: {result.error} "
                f"(failures={region.consecutive_failures}, still {after.value})"
            )

        if self.metrics:
            self.metrics.record_probe(region_id, result.ok, result.latency_ms)
            self.metrics.record_health(region_id, after)
        return after

    async def evaluate_region(self, region_id: str) -> HealthClassification:
        """Probe one region and update its history"""
        result = await self.probe_client.probe(self.region(region_id))
        return self.record(region_id, result)

    async def evaluate(self, region_ids: Optional[List[str]] = None) -> Dict[str, HealthClassification]:
        """Probe regions concurrently, then return a consistent snapshot"""
        region_ids = region_ids or list(self.regions)
        results = await asyncio.gather(
            *(self.probe_client.probe(self.region(region_id)) for region_id in region_ids)
        )
        for region_id, result in zip(region_ids, results):
            self.record(region_id, result)
        return self.snapshot()

    def get_region_status(self) -> Dict[str, Dict]:
        """Per-region status for operator output"""
        status = {}
        for region_id, region in self.regions.items():
            last = region.last_result
            status[region_id] = {
                'label': region.label,
                'endpoint': region.endpoint,
                'health': self.classify(region_id).value,
                'consecutive_failures': region.consecutive_failures,
                'last_probe_at': region.last_probe_at.isoformat() if region.last_probe_at else None,
                'last_status_code': last.status_code if last else None,
                'last_error': last.error if last else None,
                'last_latency_ms': round(last.latency_ms, 2) if last else None,
            }
        return status
