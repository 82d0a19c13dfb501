"""
DNS Reconciler

Applies a routing intent to the authoritative DNS system. The record set is
compared with what is live and only a differing set is written; both
failover records are upserted in a single change batch, keyed by each
region's stable set identifier, so no observer sees zero or two primaries.
Route53 is the production provider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import boto3

from ..config import DNSConfig
from ..errors import (
    DNSSubmissionError,
    PlatformError,
    TransientError,
    UnsafeStateError,
)
from ..models import (
    HealthClassification,
    PriorityClass,
    RoutingIntent,
    RoutingMode,
    RoutingRecord,
    RoutingRecordSet,
)
from ..monitoring.metrics import ControllerMetrics
from ..utils.aws import call_aws
from ..utils.retry import call_with_backoff, poll_until

logger = logging.getLogger(__name__)


def dns_target(endpoint: str) -> str:
    """Normalise an endpoint (host or URL) into a DNS record value"""
    target = endpoint.strip().lower()
    for scheme in ("https://", "http://"):
        if target.startswith(scheme):
            target = target[len(scheme):]
    return target.split('/')[0].rstrip('.')


def _normalise_name(name: str) -> str:
    return name.rstrip('.').lower()


class DNSProvider(ABC):
    """Authoritative DNS system"""

    @abstractmethod
    async def list_record_set(self, name: str) -> Optional[RoutingRecordSet]:
        """Live failover records for `name`, or None when absent"""

    @abstractmethod
    async def upsert_record_set(self, record_set: RoutingRecordSet) -> str:
        """Submit all records as one change; returns the change id"""

    @abstractmethod
    async def get_change_status(self, change_id: str) -> str:
        """PENDING or INSYNC"""


class Route53Provider(DNSProvider):
    """Route53 failover records for a hosted zone"""

    def __init__(
        self,
        domain_name: str,
        hosted_zone_id: Optional[str] = None,
        record_type: str = "CNAME",
        client=None
    ):
        self.route53 = client or boto3.client('route53')
        self.domain_name = domain_name
        self.hosted_zone_id = hosted_zone_id
        self.record_type = record_type

    async def get_hosted_zone_id(self) -> str:
        """Get hosted zone ID from domain name"""
        if self.hosted_zone_id:
            return self.hosted_zone_id

        response = await call_aws(
            self.route53.list_hosted_zones_by_name,
            DNSName=self.domain_name
        )

        # The zone may be the domain itself or any parent of it
        candidates = _normalise_name(self.domain_name).split('.')
        suffixes = ['.'.join(candidates[i:]) for i in range(len(candidates) - 1)]
        zones = {
            _normalise_name(zone['Name']): zone['Id'].split('/')[-1]
            for zone in response.get('HostedZones', [])
        }
        for suffix in suffixes:
            if suffix in zones:
                self.hosted_zone_id = zones[suffix]
                logger.info(f"Found hosted zone: {self.hosted_zone_id}")
                return self.hosted_zone_id

        raise PlatformError(f"Hosted zone not found for {self.domain_name}")

    async def list_record_set(self, name: str) -> Optional[RoutingRecordSet]:
        zone_id = await self.get_hosted_zone_id()
        response = await call_aws(
            self.route53.list_resource_record_sets,
            HostedZoneId=zone_id,
            StartRecordName=name,
            StartRecordType=self.record_type,
        )

        records = []
        for record in response.get('ResourceRecordSets', []):
            if _normalise_name(record['Name']) != _normalise_name(name):
                continue
            if 'Failover' not in record or 'SetIdentifier' not in record:
                continue

            alias = record.get('AliasTarget')
            if alias:
                target = alias['DNSName']
                alias_zone_id = alias.get('HostedZoneId')
                ttl = 0
            else:
                values = record.get('ResourceRecords') or [{}]
                target = values[0].get('Value', '')
                alias_zone_id = None
                ttl = record.get('TTL', 0)

            records.append(RoutingRecord(
                set_identifier=record['SetIdentifier'],
                target=dns_target(target),
                priority=PriorityClass(record['Failover']),
                ttl=ttl,
                alias_zone_id=alias_zone_id,
            ))

        if not records:
            return None
        return RoutingRecordSet(name=name, records=tuple(records))

    def _change(self, name: str, record: RoutingRecord) -> Dict:
        resource = {
            'Name': name,
            'Type': self.record_type,
            'SetIdentifier': record.set_identifier,
            'Failover': record.priority.value,
        }
        if record.alias_zone_id:
            resource['AliasTarget'] = {
                'DNSName': record.target,
                'EvaluateTargetHealth': True,
                'HostedZoneId': record.alias_zone_id,
            }
        else:
            resource['TTL'] = record.ttl
            resource['ResourceRecords'] = [{'Value': record.target}]
        return {'Action': 'UPSERT', 'ResourceRecordSet': resource}

    async def upsert_record_set(self, record_set: RoutingRecordSet) -> str:
        zone_id = await self.get_hosted_zone_id()
        changes = [self._change(record_set.name, r) for r in record_set.records]

        response = await call_aws(
            self.route53.change_resource_record_sets,
            HostedZoneId=zone_id,
            ChangeBatch={
                'Comment': 'regionctl failover reconciliation',
                'Changes': changes,
            }
        )
        return response['ChangeInfo']['Id'].split('/')[-1]

    async def get_change_status(self, change_id: str) -> str:
        response = await call_aws(self.route53.get_change, Id=change_id)
        return response['ChangeInfo']['Status']


@dataclass
class ApplyResult:
    """Outcome of reconciling one routing intent"""
    intent: RoutingIntent
    records: RoutingRecordSet
    changed: bool
    dry_run: bool = False
    change_id: Optional[str] = None
    propagated: Optional[bool] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'intent': self.intent.to_dict(),
            'records': self.records.to_dict(),
            'changed': self.changed,
            'dry_run': self.dry_run,
            'change_id': self.change_id,
            'propagated': self.propagated,
            'warnings': list(self.warnings),
        }


class DNSReconciler:
    """
    Converges the live failover record set onto a routing intent.

    Only the reconciler writes DNS. Submission failures are retried with
    exponential backoff; a propagation timeout is reported as a warning and
    never undoes the write.
    """

    def __init__(
        self,
        provider: DNSProvider,
        config: DNSConfig,
        targets: Mapping[str, str],
        alias_zones: Optional[Mapping[str, Optional[str]]] = None,
        metrics: Optional[ControllerMetrics] = None
    ):
        self.provider = provider
        self.config = config
        self.targets = {region_id: dns_target(t) for region_id, t in targets.items()}
        self.alias_zones = dict(alias_zones or {})
        self.metrics = metrics
        self.record_name = config.domain_name

    def plan(self, intent: RoutingIntent) -> RoutingRecordSet:
        """Concrete record set for an actionable intent"""
        if not intent.is_actionable:
            raise UnsafeStateError(
                f"No safe routing intent ({intent.reason}); manual intervention required",
                mode=intent.mode.value,
            )

        records = []
        for region_id, priority in (
            (intent.primary_target, PriorityClass.PRIMARY),
            (intent.secondary_target, PriorityClass.SECONDARY),
        ):
            if region_id not in self.targets:
                raise UnsafeStateError(f"No DNS target configured for region {region_id}")
            alias_zone_id = self.alias_zones.get(region_id)
            records.append(RoutingRecord(
                set_identifier=region_id,
                target=self.targets[region_id],
                priority=priority,
                ttl=0 if alias_zone_id else self.config.ttl,
                alias_zone_id=alias_zone_id,
            ))

        record_set = RoutingRecordSet(name=self.record_name, records=tuple(records))
        try:
            record_set.validate()
        except ValueError as e:
            raise UnsafeStateError(f"Refusing to apply record set: {e}")
        return record_set

    def check_safety(
        self,
        intent: RoutingIntent,
        health: Mapping[str, HealthClassification],
        force: bool = False
    ) -> List[str]:
        """Refuse to promote a target not known to be healthy unless forced"""
        warnings = []
        target_health = health.get(intent.primary_target, HealthClassification.UNKNOWN)
        if target_health != HealthClassification.HEALTHY:
            message = (
                f"Target {intent.primary_target} is {target_health.value}; "
                f"refusing to promote it to PRIMARY"
            )
            if not (force and intent.mode == RoutingMode.MANUAL_OVERRIDE):
                raise UnsafeStateError(message, target=intent.primary_target)
            warnings.append(f"{message} (overridden by force flag)")
            logger.warning(warnings[-1])
        return warnings

    async def current_records(self) -> Optional[RoutingRecordSet]:
        """Live record set, read with the same bounded retry as writes"""
        try:
            return await call_with_backoff(
                self.provider.list_record_set,
                self.record_name,
                attempts=self.config.submit_attempts,
                multiplier=self.config.backoff_multiplier,
                max_wait=self.config.backoff_max_seconds,
            )
        except (TransientError, PlatformError) as e:
            raise DNSSubmissionError(f"Could not read current DNS records: {e}")

    async def wait_for_change(self, change_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a change to reach INSYNC; False on timeout"""
        try:
            result = await poll_until(
                lambda: self.provider.get_change_status(change_id),
                lambda status: status == 'INSYNC',
                timeout=timeout if timeout is not None else self.config.propagation_timeout_seconds,
                interval=self.config.propagation_poll_seconds,
                description=f"DNS change {change_id}",
            )
        except PlatformError as e:
            logger.warning(f"Could not check status of DNS change {change_id}: {e}")
            return False
        return result.satisfied

    async def apply(
        self,
        intent: RoutingIntent,
        health: Mapping[str, HealthClassification],
        force: bool = False,
        dry_run: bool = False
    ) -> ApplyResult:
        """
        Apply a routing intent idempotently.

        Raises:
            UnsafeStateError: No safe intent, or an unforced promotion of a
                target that is not healthy
            DNSSubmissionError: The change could not be submitted
        """
        desired = self.plan(intent)
        warnings = self.check_safety(intent, health, force=force)

        current = await self.current_records()
        if current is not None and current.by_identifier() == desired.by_identifier():
            logger.info(
                f"DNS already matches intent {intent.mode.value} "
                f"(primary={intent.primary_target}); no change"
            )
            if self.metrics:
                self.metrics.record_dns_change('unchanged')
            return ApplyResult(intent, desired, changed=False, dry_run=dry_run, warnings=warnings)

        if dry_run:
            logger.info(
                f"DRY RUN: would upsert {self.record_name} "
                f"primary={desired.primary.target} secondary={desired.secondary.target}"
            )
            return ApplyResult(intent, desired, changed=True, dry_run=True, warnings=warnings)

        try:
            change_id = await call_with_backoff(
                self.provider.upsert_record_set,
                desired,
                attempts=self.config.submit_attempts,
                multiplier=self.config.backoff_multiplier,
                max_wait=self.config.backoff_max_seconds,
            )
        except (TransientError, PlatformError) as e:
            if self.metrics:
                self.metrics.record_dns_change('failed')
            raise DNSSubmissionError(
                f"Failed to submit DNS change for {self.record_name}: {e}",
                intent=intent.to_dict(),
            )

        logger.info(f"DNS change submitted: {change_id}")
        if self.metrics:
            self.metrics.record_dns_change('submitted')

        propagated = await self.wait_for_change(change_id)
        if propagated:
            logger.info(f"DNS change {change_id} propagated")
        else:
            warnings.append(
                f"DNS change {change_id} not propagated within "
                f"{self.config.propagation_timeout_seconds}s; it remains applied"
            )
            logger.warning(warnings[-1])

        return ApplyResult(
            intent,
            desired,
            changed=True,
            change_id=change_id,
            propagated=propagated,
            warnings=warnings,
        )
