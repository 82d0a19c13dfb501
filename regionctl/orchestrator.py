"""
Orchestration Facade

Sequences the health monitor, routing engine, DNS reconciler, release
manager and drill for the operator commands. It owns the dry-run flag, the
routing intent in force, and a single-operation lock: a mutating command
issued while another runs is rejected rather than queued. Every failure is
mapped to an Outcome here; nothing escapes as a raw exception.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import ControllerConfig
from .deployment.platform import ComputePlatform, create_platform
from .deployment.release import ReleaseManager, ReleaseResult
from .deployment.verifier import PostDeployVerifier
from .drill.datastore import DynamoDBDataStore, ReplicatedDataStore
from .drill.disaster_recovery import DisasterRecoveryDrill, resolve_host
from .drill.fault_injection import TargetGroupFaultInjector
from .errors import ConfigurationError, ConflictError, ControllerError, Outcome, UnsafeStateError
from .health.endpoints import LoadBalancerResolver
from .health.monitor import RegionHealthMonitor
from .health.probe import HealthProbeClient
from .models import DeploymentState, Region, RoutingIntent, RoutingMode, RoutingRecordSet
from .monitoring.alerting import Alert, AlertManager
from .monitoring.metrics import ControllerMetrics
from .routing.dns import DNSProvider, DNSReconciler, Route53Provider
from .routing.engine import FailbackPolicy, ManualOverride, RegionPair, decide
from .utils.logger import ControllerLoggerAdapter

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Structured result of an operator command"""
    command: str
    outcome: Outcome
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'command': self.command,
            'outcome': self.outcome.value,
            'exit_code': self.exit_code,
            'message': self.message,
            'dry_run': self.dry_run,
            'details': self.details,
        }


class Orchestrator:
    """
    Multi-region availability and release controller

    Collaborators default to the AWS-backed implementations and can be
    replaced for testing.
    """

    def __init__(
        self,
        config: ControllerConfig,
        probe_client: Optional[HealthProbeClient] = None,
        dns_provider: Optional[DNSProvider] = None,
        platform: Optional[ComputePlatform] = None,
        datastore: Optional[ReplicatedDataStore] = None,
        injector: Optional[TargetGroupFaultInjector] = None,
        endpoint_resolver: Optional[LoadBalancerResolver] = None,
        metrics: Optional[ControllerMetrics] = None,
        alerts: Optional[AlertManager] = None,
        host_resolver: Callable[[str], Awaitable[list]] = resolve_host
    ):
        self.config = config
        self.dry_run = config.dry_run
        self.regions = RegionPair(config.primary.id, config.secondary.id)
        self.failback = FailbackPolicy(config.failback_policy)
        self.metrics = metrics or ControllerMetrics()
        self.alerts = alerts or AlertManager(config.alertmanager_url)
        self.probe_client = probe_client or HealthProbeClient(config.health_check)
        self.host_resolver = host_resolver

        self._dns_provider = dns_provider
        self._platform = platform
        self._datastore = datastore
        self._injector = injector
        self._endpoint_resolver = endpoint_resolver

        self.monitor: Optional[RegionHealthMonitor] = None
        self.reconciler: Optional[DNSReconciler] = None
        self._release: Optional[ReleaseManager] = None
        self.current_intent: Optional[RoutingIntent] = None
        self._operation: Optional[str] = None

    # ── Wiring ──

    async def setup(self):
        """Resolve region endpoints and build the health and DNS components"""
        if self.monitor is not None:
            return

        resolver = self._endpoint_resolver or LoadBalancerResolver()
        regions = []
        for region_config in (self.config.primary, self.config.secondary):
            endpoint = await resolver.resolve(region_config)
            regions.append(Region(region_config.id, region_config.label, endpoint))

        self.monitor = RegionHealthMonitor(
            regions,
            self.probe_client,
            failure_threshold=self.config.health_check.failure_threshold,
            metrics=self.metrics,
        )
        provider = self._dns_provider or Route53Provider(
            self.config.dns.domain_name,
            self.config.dns.hosted_zone_id,
            self.config.dns.record_type,
        )
        self.reconciler = DNSReconciler(
            provider,
            self.config.dns,
            targets={r.region_id: r.endpoint for r in regions},
            alias_zones={
                self.config.primary.id: self.config.primary.alias_hosted_zone_id,
                self.config.secondary.id: self.config.secondary.alias_hosted_zone_id,
            },
            metrics=self.metrics,
        )

    @property
    def platform(self) -> ComputePlatform:
        if self._platform is None:
            self._platform = create_platform(self.config.deployment)
        return self._platform

    @property
    def release(self) -> ReleaseManager:
        if self._release is None:
            self._release = ReleaseManager(
                self.platform,
                PostDeployVerifier(self.probe_client),
                self.config.deployment,
                self.config.health_check,
                verify_endpoint=self._deployment_endpoint(),
                metrics=self.metrics,
            )
        return self._release

    def _deployment_endpoint(self) -> str:
        """Endpoint of the region hosting the deployed service"""
        for region_config in (self.config.primary, self.config.secondary):
            if region_config.aws_region == self.config.deployment.region:
                return self.monitor.region(region_config.id).endpoint
        return self.monitor.region(self.regions.primary).endpoint

    # ── Execution ──

    async def _execute(
        self,
        command: str,
        operation: Callable[[], Awaitable[OperationResult]],
        exclusive: bool = True
    ) -> OperationResult:
        if exclusive:
            if self._operation is not None:
                error = ConflictError(f"Cannot run {command}: {self._operation} is in progress")
                return self._failure(command, error)
            self._operation = command

        log = ControllerLoggerAdapter(logger, {'operation': command})
        try:
            await self.setup()
            result = await operation()
        except ControllerError as e:
            log.error(f"{command} failed: {e.message}")
            result = self._failure(command, e)
            if e.outcome == Outcome.MANUAL_INTERVENTION:
                await self.alerts.send_alert(Alert(
                    name='RegionctlManualInterventionRequired',
                    severity='critical',
                    message=f"{command}: {e.message}",
                    labels={'command': command, 'error': type(e).__name__},
                ))
        finally:
            if exclusive:
                self._operation = None

        result.dry_run = self.dry_run
        log.info(f"{command} finished: {result.outcome.value}")
        return result

    def _failure(self, command: str, error: ControllerError) -> OperationResult:
        return OperationResult(
            command,
            error.outcome,
            error.message,
            {'error': type(error).__name__, **error.details},
        )

    # ── Routing ──

    def _intent_from_records(self, records: Optional[RoutingRecordSet]) -> Optional[RoutingIntent]:
        """Routing intent implied by the live record set"""
        if records is None or records.primary is None:
            return None
        primary = records.primary.set_identifier
        if primary == self.regions.primary:
            return RoutingIntent(RoutingMode.NOMINAL, primary, self.regions.secondary, "observed")
        if primary == self.regions.secondary:
            return RoutingIntent(
                RoutingMode.FAILED_OVER_TO_SECONDARY, primary, self.regions.primary, "observed"
            )
        return None

    async def _reconcile(self, command: str, override: Optional[ManualOverride] = None) -> OperationResult:
        health = await self.monitor.evaluate()
        current = self.current_intent
        if current is None and self.failback == FailbackPolicy.STICKY:
            current = self._intent_from_records(await self.reconciler.current_records())

        intent = decide(
            health[self.regions.primary],
            health[self.regions.secondary],
            current,
            regions=self.regions,
            override=override,
            failback=self.failback,
        )
        health_view = {region_id: h.value for region_id, h in health.items()}
        logger.info(f"Routing decision: {intent.mode.value} ({intent.reason})")

        if not intent.is_actionable:
            await self.alerts.send_alert(Alert(
                name='RegionctlBothRegionsDown',
                severity='critical',
                message=intent.reason,
                labels={'command': command},
            ))
            raise UnsafeStateError(
                f"Both regions unhealthy; no safe routing target ({intent.reason})",
                health=health_view,
                intent=intent.to_dict(),
            )

        applied = await self.reconciler.apply(
            intent,
            health,
            force=override.force if override else False,
            dry_run=self.dry_run,
        )

        if not self.dry_run:
            previous_mode = current.mode.value if current else 'unknown'
            if applied.changed:
                self.metrics.record_failover(previous_mode, intent.mode.value)
                if intent.primary_target != self.regions.primary:
                    await self.alerts.send_alert(Alert(
                        name='RegionctlFailover',
                        severity='warning',
                        message=f"Traffic routed to {intent.primary_target}: {intent.reason}",
                        region=intent.primary_target,
                        labels={'command': command, 'mode': intent.mode.value},
                    ))
            self.current_intent = intent

        if applied.dry_run and applied.changed:
            message = f"DRY RUN: would route traffic to {intent.primary_target} ({intent.mode.value})"
        elif applied.changed:
            message = f"Traffic routed to {intent.primary_target} ({intent.mode.value})"
        else:
            message = f"Routing already {intent.mode.value}; primary is {intent.primary_target}"

        return OperationResult(command, Outcome.SUCCEEDED, message, {
            'health': health_view,
            'result': applied.to_dict(),
        })

    async def _status(self) -> Dict[str, Any]:
        health = await self.monitor.evaluate()
        status: Dict[str, Any] = {
            'regions': self.monitor.get_region_status(),
            'failback_policy': self.failback.value,
        }

        try:
            records = await self.reconciler.current_records()
        except ControllerError as e:
            records = None
            status['dns'] = {'error': e.message}
        else:
            observed = self._intent_from_records(records)
            status['dns'] = {
                'records': records.to_dict() if records else None,
                'active_region': observed.primary_target if observed else None,
                'mode': observed.mode.value if observed else None,
            }

        try:
            status['dns']['resolved_addresses'] = await self.host_resolver(self.config.dns.domain_name)
        except OSError as e:
            status['dns']['resolved_addresses'] = []
            status['dns']['resolution_error'] = str(e)

        desired = decide(
            health[self.regions.primary],
            health[self.regions.secondary],
            self.current_intent or self._intent_from_records(records),
            regions=self.regions,
            failback=self.failback,
        )
        status['desired_intent'] = desired.to_dict()

        try:
            snapshot = await self.platform.describe_service()
            status['service'] = snapshot.to_dict()
        except ControllerError as e:
            status['service'] = {'error': e.message}
        return status

    async def status(self) -> OperationResult:
        """Region health, live DNS records, desired routing and service state"""
        async def operation():
            details = await self._status()
            desired = details['desired_intent']
            return OperationResult('status', Outcome.SUCCEEDED, f"Desired routing: {desired['mode']}", details)
        return await self._execute('status', operation, exclusive=False)

    async def evaluate_and_reconcile(self) -> OperationResult:
        """One health evaluation, routing decision and DNS reconciliation"""
        return await self._execute('health-failover', lambda: self._reconcile('health-failover'))

    async def force_failover(self, target: str, force: bool = False, command: str = 'failover') -> OperationResult:
        """Route traffic to an explicit region, subject to the DNS safety checks"""
        if target not in (self.regions.primary, self.regions.secondary):
            return self._failure(command, ConfigurationError(f"Unknown region: {target}"))
        override = ManualOverride(target, force=force, reason=f"manual {command} to {target}")
        return await self._execute(command, lambda: self._reconcile(command, override))

    async def failover_to_secondary(self, force: bool = False) -> OperationResult:
        return await self.force_failover(self.regions.secondary, force, 'failover-to-secondary')

    async def failback_to_primary(self, force: bool = False) -> OperationResult:
        return await self.force_failover(self.regions.primary, force, 'failback-to-primary')

    async def failover_test(self) -> OperationResult:
        """Status, one reconcile cycle, then status again"""
        async def operation():
            before = await self._status()
            reconciled = await self._reconcile('test')
            after = await self._status()
            return OperationResult('test', reconciled.outcome, reconciled.message, {
                'before': before,
                'reconcile': reconciled.details,
                'after': after,
            })
        return await self._execute('test', operation)

    # ── Deployment ──

    def _release_result(self, command: str, result: ReleaseResult) -> OperationResult:
        attempt = result.attempt
        if result.dry_run:
            message = f"DRY RUN: {command} plan computed"
        elif attempt is not None:
            message = f"{command} {attempt.attempt_id} {attempt.state.value}"
            if attempt.error_message:
                message = f"{message}: {attempt.error_message}"
        else:
            message = command
        outcome = Outcome.SUCCEEDED if result.succeeded else Outcome.FAILED
        return OperationResult(command, outcome, message, result.to_dict())

    async def deploy(self, artifact: Optional[str] = None, image_tag: Optional[str] = None) -> OperationResult:
        """Roll out an artifact (or an image tag of the configured repository)"""
        async def operation():
            target = artifact or await self.platform.resolve_artifact(
                image_tag or self.config.deployment.image_tag
            )
            result = await self.release.deploy(target, dry_run=self.dry_run)
            if result.attempt is not None and result.attempt.state == DeploymentState.ROLLED_BACK:
                await self.alerts.send_alert(Alert(
                    name='RegionctlDeploymentRolledBack',
                    severity='warning',
                    message=f"Deployment of {target} rolled back: {result.attempt.error_message}",
                    labels={'attempt_id': result.attempt.attempt_id},
                ))
            return self._release_result('deploy', result)
        return await self._execute('deploy', operation)

    async def rollback(self, revision: str) -> OperationResult:
        async def operation():
            return self._release_result('rollback', await self.release.rollback(revision, dry_run=self.dry_run))
        return await self._execute('rollback', operation)

    async def scale(self, desired_count: int) -> OperationResult:
        if desired_count < 0:
            return self._failure('scale', ConfigurationError("desired count must not be negative"))

        async def operation():
            return self._release_result('scale', await self.release.scale(desired_count, dry_run=self.dry_run))
        return await self._execute('scale', operation)

    async def history(self, limit: int = 10) -> OperationResult:
        async def operation():
            details = await self.release.describe_history(limit)
            return OperationResult('history', Outcome.SUCCEEDED, f"Stable revision: {details['stable']}", details)
        return await self._execute('history', operation, exclusive=False)

    # ── Disaster recovery ──

    def _drill(self) -> DisasterRecoveryDrill:
        datastore = self._datastore or DynamoDBDataStore(
            self.config.drill.table_name,
            {r.id: r.aws_region for r in (self.config.primary, self.config.secondary)},
        )
        return DisasterRecoveryDrill(
            self.config,
            self.monitor,
            self.probe_client,
            datastore,
            self._injector or TargetGroupFaultInjector(),
            reconcile=lambda: self._reconcile('dr-drill'),
            resolver=self.host_resolver,
        )

    async def run_disaster_recovery_drill(self) -> OperationResult:
        async def operation():
            report = await self._drill().run(dry_run=self.dry_run)
            outcome = Outcome.SUCCEEDED if report.passed else Outcome.FAILED
            message = (
                f"Disaster recovery drill {'passed' if report.passed else 'failed'}: "
                f"{report.success_rate * 100:.0f}% of steps passed"
            )
            return OperationResult('dr-drill', outcome, message, report.to_dict())
        return await self._execute('dr-drill', operation)
