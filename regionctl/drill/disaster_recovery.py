"""
Disaster Recovery Drill

Exercises the failure path end to end: both regions' readiness, public DNS
resolution, cross-region replication and consistency of the data store,
and (outside dry-run) a simulated primary failure with routing sampled
while the primary is down. The drill passes when enough steps pass.
"""

import asyncio
import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import ControllerConfig
from ..errors import ControllerError
from ..health.monitor import RegionHealthMonitor
from ..health.probe import HealthProbeClient
from ..models import HealthClassification
from .datastore import ReplicatedDataStore
from .fault_injection import TargetGroupFaultInjector

logger = logging.getLogger(__name__)

StepOutcome = Tuple[bool, str, Dict[str, Any]]


@dataclass
class DrillStep:
    """Result of one drill step"""
    name: str
    passed: bool
    message: str
    duration_seconds: float
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'passed': self.passed,
            'message': self.message,
            'duration_seconds': round(self.duration_seconds, 2),
            'details': self.details,
        }


@dataclass
class DrillReport:
    """All step results and the overall verdict"""
    pass_threshold: float
    dry_run: bool = False
    steps: List[DrillStep] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def success_rate(self) -> float:
        if not self.steps:
            return 0.0
        return sum(1 for s in self.steps if s.passed) / len(self.steps)

    @property
    def passed(self) -> bool:
        return bool(self.steps) and self.success_rate >= self.pass_threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': self.passed,
            'success_rate': round(self.success_rate * 100, 1),
            'pass_threshold': round(self.pass_threshold * 100, 1),
            'dry_run': self.dry_run,
            'started_at': self.started_at,
            'steps': [s.to_dict() for s in self.steps],
        }


async def resolve_host(hostname: str) -> List[str]:
    """Resolve a hostname through the system resolver"""
    _, _, addresses = await asyncio.to_thread(socket.gethostbyname_ex, hostname)
    return addresses


class DisasterRecoveryDrill:
    """
    Disaster-recovery drill runner

    `reconcile` is the controller's evaluate-and-reconcile cycle; when given,
    it is run after the failure is injected and again after recovery so the
    drill also exercises the controller's own failover and failback.
    """

    def __init__(
        self,
        config: ControllerConfig,
        monitor: RegionHealthMonitor,
        probe_client: HealthProbeClient,
        datastore: ReplicatedDataStore,
        injector: TargetGroupFaultInjector,
        reconcile: Optional[Callable[[], Awaitable[Any]]] = None,
        resolver: Callable[[str], Awaitable[List[str]]] = resolve_host
    ):
        self.config = config
        self.drill = config.drill
        self.monitor = monitor
        self.probe_client = probe_client
        self.datastore = datastore
        self.injector = injector
        self.reconcile = reconcile
        self.resolver = resolver
        self.fault_injected = False

    async def _run_step(self, report: DrillReport, name: str, step: Callable[[], Awaitable[StepOutcome]]) -> DrillStep:
        logger.info(f"Running {name}...")
        start = time.monotonic()
        try:
            passed, message, details = await step()
        except (ControllerError, OSError) as e:
            passed, message, details = False, str(e), {}
        result = DrillStep(name, passed, message, time.monotonic() - start, details)
        report.steps.append(result)

        if passed:
            logger.info(f"{name}: PASSED - {message}")
        else:
            logger.error(f"{name}: FAILED - {message}")
        return result

    # ── Steps ──

    async def check_region_health(self, region_id: str) -> StepOutcome:
        classification = await self.monitor.evaluate_region(region_id)
        region = self.monitor.region(region_id)
        result = region.last_result
        details = {'endpoint': region.endpoint, 'status_code': result.status_code if result else None}
        if classification == HealthClassification.HEALTHY:
            return True, f"{region.label} region {region_id} is healthy", details
        error = result.error if result else 'no probe result'
        return False, f"{region.label} region {region_id} health check failed ({error})", details

    async def check_dns_resolution(self) -> StepOutcome:
        domain = self.config.dns.domain_name
        addresses = await self.resolver(domain)
        if not addresses:
            return False, f"{domain} did not resolve", {}
        return True, f"{domain} resolved to {', '.join(addresses)}", {'addresses': addresses}

    async def _cleanup(self, key: str, region_ids: List[str]):
        for region_id in region_ids:
            try:
                await self.datastore.delete(region_id, key)
            except ControllerError as e:
                logger.warning(f"Could not clean up {key} in {region_id}: {e}")

    async def check_replication(self) -> StepOutcome:
        primary, secondary = self.config.primary.id, self.config.secondary.id
        key = f"dr-test-{int(time.time())}"
        marker = 'disaster-recovery-test'

        await self.datastore.put(primary, {
            'id': key,
            'testData': marker,
            'timestamp': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
        })
        try:
            logger.info(f"Waiting for replication ({self.drill.replication_wait_seconds:.0f} seconds)...")
            await asyncio.sleep(self.drill.replication_wait_seconds)
            item = await self.datastore.get(secondary, key)
        finally:
            await self._cleanup(key, [primary, secondary])

        if item and item.get('testData') == marker:
            return True, f"Data replicated from {primary} to {secondary}", {'key': key}
        return False, f"Data written in {primary} not readable in {secondary}", {'key': key}

    async def check_consistency(self) -> StepOutcome:
        primary, secondary = self.config.primary.id, self.config.secondary.id
        key = f"consistency-test-{int(time.time())}"
        marker = 'consistency-check'

        await self.datastore.put(primary, {
            'id': key,
            'email': 'test@example.com',
            'testField': marker,
        })
        try:
            immediate = await self.datastore.get(secondary, key, consistent=True)
            await asyncio.sleep(self.drill.consistency_wait_seconds)
            delayed = await self.datastore.get(secondary, key)
        finally:
            await self._cleanup(key, [primary])

        details = {
            'key': key,
            'immediately_visible': bool(immediate and immediate.get('testField') == marker),
        }
        if delayed and delayed.get('testField') == marker:
            return True, "Data consistency verified", details
        return False, "Data consistency check failed", details

    async def simulate_primary_failure(self) -> StepOutcome:
        arn = await self.injector.inject_failure(self.config.primary, self.drill.failure_health_path)
        self.fault_injected = True
        logger.info(
            f"Waiting for health checks to detect failure "
            f"({self.drill.failure_wait_seconds:.0f} seconds)..."
        )
        await asyncio.sleep(self.drill.failure_wait_seconds)
        return True, f"Primary target group health check set to {self.drill.failure_health_path}", {
            'target_group': arn,
        }

    async def run_reconcile(self) -> StepOutcome:
        result = await self.reconcile()
        details = result.to_dict() if hasattr(result, 'to_dict') else {}
        succeeded = getattr(result, 'succeeded', True)
        return succeeded, getattr(result, 'message', 'reconciled'), details

    async def check_failover_routing(self) -> StepOutcome:
        await asyncio.sleep(self.drill.settle_seconds)
        domain = self.config.dns.domain_name
        samples = self.drill.routing_samples
        successes = 0
        for i in range(1, samples + 1):
            result = await self.probe_client.probe(domain)
            if result.ok:
                successes += 1
            else:
                logger.warning(f"Request {i}/{samples} failed ({result.error})")
            if i < samples:
                await asyncio.sleep(self.drill.routing_sample_interval_seconds)

        rate = successes / samples if samples else 0.0
        details = {'successes': successes, 'samples': samples, 'success_rate': round(rate * 100, 1)}
        message = f"Failover success rate {rate * 100:.0f}% ({successes}/{samples})"
        return rate >= self.drill.routing_success_threshold, message, details

    async def restore_primary(self) -> StepOutcome:
        arn = await self.injector.restore(self.config.primary, self.config.health_check.path)
        self.fault_injected = False
        logger.info(
            f"Waiting for health checks to recover "
            f"({self.drill.recovery_wait_seconds:.0f} seconds)..."
        )
        await asyncio.sleep(self.drill.recovery_wait_seconds)
        return True, f"Primary target group health check restored to {self.config.health_check.path}", {
            'target_group': arn,
        }

    # ── Runner ──

    async def _ensure_restored(self):
        """Put the primary health check back after an interrupted simulation"""
        path = self.config.health_check.path
        logger.warning(f"Drill interrupted with the primary failure injected; restoring {path}")
        try:
            await self.injector.restore(self.config.primary, path)
        except (ControllerError, OSError) as e:
            logger.error(
                f"Could not restore primary health check to {path}: {e}; "
                f"restore the target group manually"
            )
            return
        self.fault_injected = False

    async def run(self, dry_run: bool = False) -> DrillReport:
        """Run every drill step and return the report"""
        report = DrillReport(pass_threshold=self.drill.pass_threshold, dry_run=dry_run)
        primary, secondary = self.config.primary.id, self.config.secondary.id

        await self._run_step(report, 'primary_region_health', lambda: self.check_region_health(primary))
        await self._run_step(report, 'secondary_region_health', lambda: self.check_region_health(secondary))
        await self._run_step(report, 'dns_resolution', self.check_dns_resolution)
        await self._run_step(report, 'data_replication', self.check_replication)
        await self._run_step(report, 'data_consistency', self.check_consistency)

        if dry_run:
            logger.info("Skipping failure simulation (dry run)")
        else:
            logger.warning("Running failure simulation tests...")
            try:
                simulated = await self._run_step(report, 'simulate_primary_failure', self.simulate_primary_failure)
                if simulated.passed:
                    if self.reconcile is not None:
                        await self._run_step(report, 'controller_failover', self.run_reconcile)
                    await self._run_step(report, 'failover_routing', self.check_failover_routing)
                    await self._run_step(report, 'restore_primary', self.restore_primary)
                    if self.reconcile is not None:
                        await self._run_step(report, 'controller_failback', self.run_reconcile)
            finally:
                if self.fault_injected:
                    await self._ensure_restored()

        level = logging.INFO if report.passed else logging.ERROR
        logger.log(
            level,
            f"Overall success rate: {report.success_rate * 100:.0f}% "
            f"({sum(1 for s in report.steps if s.passed)}/{len(report.steps)})"
        )
        return report
