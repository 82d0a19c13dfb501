"""
Tests for the Disaster Recovery Drill

Covers step sequencing in dry-run and full mode, replication failures,
the routing success threshold, test data cleanup, and the AWS-backed
fault injector and data store against mocked boto3 clients.
"""

from unittest.mock import MagicMock

import pytest

from conftest import (
    DOMAIN,
    PRIMARY,
    PRIMARY_ENDPOINT,
    SECONDARY,
    SECONDARY_ENDPOINT,
    FakeDataStore,
    FakeInjector,
    FakeProbe,
    fake_host_resolver,
    make_config,
)

from regionctl.drill.datastore import DynamoDBDataStore
from regionctl.drill.disaster_recovery import DisasterRecoveryDrill, DrillReport, DrillStep
from regionctl.drill.fault_injection import TargetGroupFaultInjector
from regionctl.errors import PlatformError, UnsafeStateError
from regionctl.health.monitor import RegionHealthMonitor
from regionctl.models import Region


def make_drill(probe=None, datastore=None, injector=None, reconcile=None, resolver=fake_host_resolver, **overrides):
    config = make_config(**overrides)
    probe = probe or FakeProbe()
    monitor = RegionHealthMonitor(
        [Region(PRIMARY, 'primary', PRIMARY_ENDPOINT), Region(SECONDARY, 'secondary', SECONDARY_ENDPOINT)],
        probe,
    )
    return DisasterRecoveryDrill(
        config,
        monitor,
        probe,
        datastore or FakeDataStore(),
        injector or FakeInjector(),
        reconcile=reconcile,
        resolver=resolver,
    )


def step_names(report):
    return [s.name for s in report.steps]


def failed_steps(report):
    return [s.name for s in report.steps if not s.passed]


# ── Report ────────────────────────────────────────────────────────────────────

class TestDrillReport:

    def test_empty_report_does_not_pass(self):
        report = DrillReport(pass_threshold=0.9)
        assert report.success_rate == 0.0
        assert not report.passed

    def test_threshold(self):
        report = DrillReport(pass_threshold=0.9, steps=[
            DrillStep(f"step-{i}", i != 0, '', 0.0) for i in range(10)
        ])
        assert report.success_rate == pytest.approx(0.9)
        assert report.passed
        assert report.to_dict()['success_rate'] == 90.0


# ── Runner ────────────────────────────────────────────────────────────────────

class TestDrillRun:

    @pytest.mark.asyncio
    async def test_dry_run_skips_failure_simulation(self):
        injector = FakeInjector()
        report = await make_drill(injector=injector).run(dry_run=True)

        assert step_names(report) == [
            'primary_region_health',
            'secondary_region_health',
            'dns_resolution',
            'data_replication',
            'data_consistency',
        ]
        assert report.passed
        assert report.dry_run is True
        assert injector.calls == []

    @pytest.mark.asyncio
    async def test_full_run_injects_and_restores(self):
        injector = FakeInjector()
        report = await make_drill(injector=injector).run()

        assert report.passed
        assert step_names(report)[5:] == ['simulate_primary_failure', 'failover_routing', 'restore_primary']
        assert injector.calls == [
            ('fail', PRIMARY, '/health/fail'),
            ('restore', PRIMARY, '/health/readiness'),
        ]

    @pytest.mark.asyncio
    async def test_interrupted_simulation_restores_primary(self):
        injector = FakeInjector()

        async def reconcile():
            raise RuntimeError('controller crashed')

        with pytest.raises(RuntimeError):
            await make_drill(injector=injector, reconcile=reconcile).run()

        assert injector.calls == [
            ('fail', PRIMARY, '/health/fail'),
            ('restore', PRIMARY, '/health/readiness'),
        ]

    @pytest.mark.asyncio
    async def test_failed_restore_step_is_retried(self):
        class FlakyRestoreInjector(FakeInjector):
            failures = 1

            async def restore(self, region, path='/health/readiness'):
                if self.failures:
                    self.failures -= 1
                    raise PlatformError('ModifyTargetGroup throttled')
                return await super().restore(region, path)

        injector = FlakyRestoreInjector()
        drill = make_drill(injector=injector)

        report = await drill.run()

        assert 'restore_primary' in failed_steps(report)
        assert injector.calls[-1] == ('restore', PRIMARY, '/health/readiness')
        assert drill.fault_injected is False

    @pytest.mark.asyncio
    async def test_reconcile_runs_after_failure_and_after_restore(self):
        calls = []

        async def reconcile():
            calls.append('reconcile')

        report = await make_drill(reconcile=reconcile).run()

        names = step_names(report)
        assert names.index('controller_failover') == names.index('simulate_primary_failure') + 1
        assert names[-1] == 'controller_failback'
        assert calls == ['reconcile', 'reconcile']
        assert report.passed

    @pytest.mark.asyncio
    async def test_reconcile_error_fails_step_without_aborting(self):
        async def reconcile():
            raise UnsafeStateError('both regions down')

        report = await make_drill(reconcile=reconcile).run()

        assert failed_steps(report) == ['controller_failover', 'controller_failback']
        assert 'restore_primary' in step_names(report)
        assert not report.passed

    @pytest.mark.asyncio
    async def test_missing_replication_fails(self):
        report = await make_drill(datastore=FakeDataStore(replicate=False)).run(dry_run=True)

        assert failed_steps(report) == ['data_replication', 'data_consistency']
        assert not report.passed

    @pytest.mark.asyncio
    async def test_unhealthy_region_fails_its_step(self):
        probe = FakeProbe()
        probe.set(SECONDARY_ENDPOINT, False)

        report = await make_drill(probe=probe).run(dry_run=True)

        assert failed_steps(report) == ['secondary_region_health']
        assert report.success_rate == pytest.approx(0.8)
        assert not report.passed

    @pytest.mark.asyncio
    async def test_unresolvable_domain(self):
        async def resolver(hostname):
            raise OSError('Name or service not known')

        report = await make_drill(resolver=resolver).run(dry_run=True)

        assert failed_steps(report) == ['dns_resolution']

    @pytest.mark.asyncio
    async def test_failover_routing_below_threshold(self):
        probe = FakeProbe()
        probe.set(DOMAIN, True, True, True, False, False)

        report = await make_drill(probe=probe).run()

        routing = next(s for s in report.steps if s.name == 'failover_routing')
        assert not routing.passed
        assert routing.details == {'successes': 3, 'samples': 5, 'success_rate': 60.0}

    @pytest.mark.asyncio
    async def test_failed_injection_skips_dependent_steps(self):
        class BrokenInjector(FakeInjector):
            async def inject_failure(self, region, path='/health/fail'):
                raise PlatformError('target group not found')

        report = await make_drill(injector=BrokenInjector()).run()

        assert step_names(report)[-1] == 'simulate_primary_failure'
        assert failed_steps(report) == ['simulate_primary_failure']

    @pytest.mark.asyncio
    async def test_test_data_is_cleaned_up(self):
        datastore = FakeDataStore()
        await make_drill(datastore=datastore).run(dry_run=True)

        replication_keys = [key for _, key in datastore.deleted if key.startswith('dr-test-')]
        consistency = [(r, key) for r, key in datastore.deleted if key.startswith('consistency-test-')]
        assert len(replication_keys) == 2
        assert [r for r, _ in consistency] == [PRIMARY]
        assert datastore.tables[PRIMARY] == {}


# ── AWS Backends ──────────────────────────────────────────────────────────────

class TestTargetGroupFaultInjector:

    def make_injector(self, groups):
        client = MagicMock()
        client.describe_target_groups.return_value = {'TargetGroups': groups}
        session = MagicMock()
        session.client.return_value = client
        return TargetGroupFaultInjector(session=session), client

    @pytest.mark.asyncio
    async def test_inject_failure(self):
        injector, client = self.make_injector([{'TargetGroupArn': 'arn:tg/api'}])
        region = make_config().primary

        arn = await injector.inject_failure(region)

        assert arn == 'arn:tg/api'
        client.describe_target_groups.assert_called_once_with(Names=['api-tg-staging'])
        client.modify_target_group.assert_called_once_with(
            TargetGroupArn='arn:tg/api',
            HealthCheckPath='/health/fail',
            HealthCheckIntervalSeconds=15,
            HealthyThresholdCount=2,
            UnhealthyThresholdCount=2,
        )

    @pytest.mark.asyncio
    async def test_restore(self):
        injector, client = self.make_injector([{'TargetGroupArn': 'arn:tg/api'}])

        await injector.restore(make_config().primary)

        kwargs = client.modify_target_group.call_args[1]
        assert kwargs['HealthCheckPath'] == '/health/readiness'
        assert kwargs['HealthCheckIntervalSeconds'] == 30
        assert kwargs['UnhealthyThresholdCount'] == 3

    @pytest.mark.asyncio
    async def test_missing_target_group(self):
        injector, client = self.make_injector([])

        with pytest.raises(PlatformError):
            await injector.inject_failure(make_config().primary)
        client.modify_target_group.assert_not_called()


class TestDynamoDBDataStore:

    def make_store(self):
        clients = {PRIMARY: MagicMock(), SECONDARY: MagicMock()}
        session = MagicMock()
        session.client.side_effect = lambda service, region_name: clients[region_name]
        return DynamoDBDataStore('users-staging', {PRIMARY: PRIMARY, SECONDARY: SECONDARY}, session), clients

    @pytest.mark.asyncio
    async def test_put_uses_string_attributes(self):
        store, clients = self.make_store()

        await store.put(PRIMARY, {'id': 'k1', 'count': 3})

        clients[PRIMARY].put_item.assert_called_once_with(
            TableName='users-staging',
            Item={'id': {'S': 'k1'}, 'count': {'S': '3'}},
        )

    @pytest.mark.asyncio
    async def test_get(self):
        store, clients = self.make_store()
        clients[SECONDARY].get_item.return_value = {'Item': {'id': {'S': 'k1'}, 'testData': {'S': 'x'}}}
        clients[PRIMARY].get_item.return_value = {}

        assert await store.get(SECONDARY, 'k1', consistent=True) == {'id': 'k1', 'testData': 'x'}
        assert await store.get(PRIMARY, 'k1') is None
        assert clients[SECONDARY].get_item.call_args[1]['ConsistentRead'] is True

    @pytest.mark.asyncio
    async def test_unknown_region(self):
        store, _ = self.make_store()
        with pytest.raises(PlatformError):
            await store.delete('eu-west-1', 'k1')
