"""
Shared fixtures and in-memory collaborators for the controller tests.

The fakes stand in for the compute platform, the DNS system, the readiness
endpoints and the replicated data store, so every test runs without cloud
credentials and with near-zero timeouts.
"""

import asyncio
import os
import sys
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from regionctl.config import config_from_dict
from regionctl.deployment.platform import ComputePlatform
from regionctl.drill.datastore import ReplicatedDataStore
from regionctl.errors import TransientError
from regionctl.models import (
    PlatformDeployment,
    ProbeResult,
    Region,
    RoutingRecordSet,
    ServiceSnapshot,
)
from regionctl.monitoring.alerting import AlertManager
from regionctl.monitoring.metrics import ControllerMetrics
from regionctl.orchestrator import Orchestrator
from regionctl.routing.dns import DNSProvider

PRIMARY = 'us-east-1'
SECONDARY = 'us-west-2'
PRIMARY_ENDPOINT = 'primary.example.com'
SECONDARY_ENDPOINT = 'secondary.example.com'
DOMAIN = 'api.example.com'


def _merge(base: Dict, override: Dict) -> Dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def make_config(**overrides):
    values = {
        'primary': {'id': PRIMARY, 'endpoint': PRIMARY_ENDPOINT},
        'secondary': {'id': SECONDARY, 'endpoint': SECONDARY_ENDPOINT},
        'health_check': {
            'timeout_seconds': 0.5,
            'retries': 3,
            'interval_seconds': 0,
        },
        'dns': {
            'domain_name': DOMAIN,
            'hosted_zone_id': 'Z123',
            'propagation_timeout_seconds': 0.05,
            'propagation_poll_seconds': 0.01,
            'submit_attempts': 3,
            'backoff_multiplier': 0,
            'backoff_max_seconds': 0,
        },
        'deployment': {
            'timeout_seconds': 0.2,
            'rollback_timeout_seconds': 0.2,
            'poll_interval_seconds': 0.01,
        },
        'drill': {
            'replication_wait_seconds': 0,
            'consistency_wait_seconds': 0,
            'failure_wait_seconds': 0,
            'recovery_wait_seconds': 0,
            'settle_seconds': 0,
            'routing_sample_interval_seconds': 0,
        },
    }
    config = config_from_dict(_merge(values, overrides))
    config.validate()
    return config


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeProbe:
    """Probe client returning scripted results per endpoint; the last result repeats"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.scripts: Dict[str, List[bool]] = {}
        self.calls: List[str] = []

    def set(self, endpoint: str, *results: bool):
        self.scripts[endpoint] = list(results)

    async def probe(self, target) -> ProbeResult:
        endpoint = target.endpoint if isinstance(target, Region) else target
        self.calls.append(endpoint)
        if self.delay:
            await asyncio.sleep(self.delay)
        script = self.scripts.get(endpoint, [True])
        ok = script.pop(0) if len(script) > 1 else script[0]
        if ok:
            return ProbeResult(ok=True, latency_ms=5.0, status_code=200)
        return ProbeResult(ok=False, latency_ms=5.0, status_code=503, error='HTTP 503')


class FakeDNSProvider(DNSProvider):
    """In-memory failover record store"""

    def __init__(self, records: Optional[RoutingRecordSet] = None):
        self.records = records
        self.upserts: List[RoutingRecordSet] = []
        self.fail_upserts = 0
        self.change_status = 'INSYNC'

    async def list_record_set(self, name: str) -> Optional[RoutingRecordSet]:
        return self.records

    async def upsert_record_set(self, record_set: RoutingRecordSet) -> str:
        if self.fail_upserts > 0:
            self.fail_upserts -= 1
            raise TransientError('Throttling')
        self.records = record_set
        self.upserts.append(record_set)
        return f"C{len(self.upserts)}"

    async def get_change_status(self, change_id: str) -> str:
        return self.change_status


class FakePlatform(ComputePlatform):
    """
    Compute platform converging instantly, except on revisions listed in
    `stuck_revisions` (never converge) or `failed_revisions` (rollout fails).
    """

    def __init__(self, revision: str = 'rev-1', desired: int = 2):
        self.revision = revision
        self.desired = desired
        self.running = desired
        self.deployments = [PlatformDeployment('d-1', 'PRIMARY', revision, desired, desired)]
        self.stuck_revisions = set()
        self.failed_revisions = set()
        self.stuck_scale = False
        self.missing_artifacts = set()
        self.registered: Dict[str, str] = {}
        self.updates: List[Dict] = []
        self.describe_calls = 0

    async def describe_service(self) -> ServiceSnapshot:
        self.describe_calls += 1
        return ServiceSnapshot(
            service_name='api-service',
            revision=self.revision,
            running_count=self.running,
            desired_count=self.desired,
            deployments=list(self.deployments),
        )

    async def update_service(self, revision=None, desired_count=None,
                             max_percent=None, min_healthy_percent=None) -> None:
        self.updates.append({
            'revision': revision,
            'desired_count': desired_count,
            'max_percent': max_percent,
            'min_healthy_percent': min_healthy_percent,
        })
        old = self.revision
        if desired_count is not None:
            self.desired = desired_count
        if revision is not None:
            self.revision = revision

        deployment_id = f"d-{len(self.updates) + 1}"
        if self.revision in self.stuck_revisions or self.revision in self.failed_revisions:
            state = 'FAILED' if self.revision in self.failed_revisions else 'IN_PROGRESS'
            self.running = self.desired
            self.deployments = [
                PlatformDeployment(deployment_id, 'PRIMARY', self.revision, 0, self.desired, state),
                PlatformDeployment('d-old', 'ACTIVE', old, self.desired, self.desired),
            ]
        elif revision is None and self.stuck_scale:
            self.running = 0
            self.deployments = [
                PlatformDeployment(deployment_id, 'PRIMARY', self.revision, 0, self.desired),
            ]
        else:
            self.running = self.desired
            self.deployments = [
                PlatformDeployment(deployment_id, 'PRIMARY', self.revision, self.desired, self.desired),
            ]

    async def register_revision(self, artifact: str) -> str:
        revision_id = f"rev-{len(self.registered) + 2}"
        self.registered[revision_id] = artifact
        return revision_id

    async def resolve_artifact(self, tag: str) -> str:
        return f"123456789012.dkr.ecr.us-east-1.amazonaws.com/api-service:{tag}"

    async def artifact_exists(self, artifact: str) -> bool:
        return artifact not in self.missing_artifacts

    async def list_revisions(self, limit: int = 10) -> List[str]:
        return list(reversed(['rev-1', *self.registered]))[:limit]


class FakeDataStore(ReplicatedDataStore):
    """Per-region dictionaries; writes replicate when `replicate` is set"""

    def __init__(self, regions=(PRIMARY, SECONDARY), replicate: bool = True):
        self.tables: Dict[str, Dict[str, Dict]] = {r: {} for r in regions}
        self.replicate = replicate
        self.deleted: List = []

    async def put(self, region_id, item):
        targets = self.tables if self.replicate else {region_id: self.tables[region_id]}
        for table in targets.values():
            table[item['id']] = dict(item)

    async def get(self, region_id, key, consistent=False):
        return self.tables[region_id].get(key)

    async def delete(self, region_id, key):
        self.deleted.append((region_id, key))
        self.tables[region_id].pop(key, None)


class FakeInjector:
    def __init__(self):
        self.calls: List = []

    async def inject_failure(self, region, path='/health/fail'):
        self.calls.append(('fail', region.id, path))
        return 'arn:aws:elasticloadbalancing:tg/api-tg-staging'

    async def restore(self, region, path='/health/readiness'):
        self.calls.append(('restore', region.id, path))
        return 'arn:aws:elasticloadbalancing:tg/api-tg-staging'


class FakeEndpointResolver:
    async def resolve(self, region):
        return region.endpoint or f"{region.id}.elb.example.com"


async def fake_host_resolver(hostname):
    return ['192.0.2.10']


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def dns_provider():
    return FakeDNSProvider()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def datastore():
    return FakeDataStore()


@pytest.fixture
def injector():
    return FakeInjector()


@pytest.fixture
def metrics():
    return ControllerMetrics()


@pytest.fixture
def orchestrator_factory(probe, dns_provider, platform, datastore, injector, metrics):
    def build(config=None, **kwargs):
        return Orchestrator(
            config or make_config(),
            probe_client=kwargs.get('probe_client', probe),
            dns_provider=kwargs.get('dns_provider', dns_provider),
            platform=kwargs.get('platform', platform),
            datastore=kwargs.get('datastore', datastore),
            injector=kwargs.get('injector', injector),
            endpoint_resolver=FakeEndpointResolver(),
            metrics=metrics,
            alerts=AlertManager(),
            host_resolver=fake_host_resolver,
        )
    return build
