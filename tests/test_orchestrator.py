"""
Tests for the Orchestration Facade

End-to-end operator commands against in-memory collaborators: failover
cycles, manual overrides, dry-run, deployments, conflicts and the exit
code mapping of every outcome.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import (
    PRIMARY,
    PRIMARY_ENDPOINT,
    SECONDARY,
    SECONDARY_ENDPOINT,
    FakeDNSProvider,
    FakeProbe,
    make_config,
)

from regionctl.errors import Outcome, TransientError
from regionctl.models import PriorityClass, RoutingRecord, RoutingRecordSet


def failed_over_records():
    return RoutingRecordSet('api.example.com', (
        RoutingRecord(SECONDARY, SECONDARY_ENDPOINT, PriorityClass.PRIMARY, 60),
        RoutingRecord(PRIMARY, PRIMARY_ENDPOINT, PriorityClass.SECONDARY, 60),
    ))


# ── Failover ──────────────────────────────────────────────────────────────────

class TestEvaluateAndReconcile:

    @pytest.mark.asyncio
    async def test_both_healthy_routes_to_primary(self, orchestrator_factory, dns_provider):
        orchestrator = orchestrator_factory()

        result = await orchestrator.evaluate_and_reconcile()

        assert result.outcome == Outcome.SUCCEEDED
        assert result.exit_code == 0
        assert dns_provider.records.primary.set_identifier == PRIMARY
        assert result.details['result']['intent']['mode'] == 'nominal'

    @pytest.mark.asyncio
    async def test_second_cycle_makes_no_change(self, orchestrator_factory, dns_provider):
        orchestrator = orchestrator_factory()

        await orchestrator.evaluate_and_reconcile()
        result = await orchestrator.evaluate_and_reconcile()

        assert result.details['result']['changed'] is False
        assert len(dns_provider.upserts) == 1

    @pytest.mark.asyncio
    async def test_primary_down_fails_over(self, orchestrator_factory, probe, dns_provider, metrics):
        probe.set(PRIMARY_ENDPOINT, False)
        orchestrator = orchestrator_factory()

        result = await orchestrator.evaluate_and_reconcile()

        assert result.outcome == Outcome.SUCCEEDED
        assert dns_provider.records.primary.set_identifier == SECONDARY
        assert [a.name for a in orchestrator.alerts.alert_history] == ['RegionctlFailover']
        assert metrics.registry.get_sample_value(
            'regionctl_failovers_total',
            {'from_mode': 'unknown', 'to_mode': 'failed_over_to_secondary'},
        ) == 1

    @pytest.mark.asyncio
    async def test_automatic_failback(self, orchestrator_factory, probe, dns_provider):
        probe.set(PRIMARY_ENDPOINT, False, True)
        orchestrator = orchestrator_factory()

        await orchestrator.evaluate_and_reconcile()
        assert dns_provider.records.primary.set_identifier == SECONDARY

        await orchestrator.evaluate_and_reconcile()
        assert dns_provider.records.primary.set_identifier == PRIMARY

    @pytest.mark.asyncio
    async def test_sticky_failback_reads_live_records(self, orchestrator_factory, probe):
        provider = FakeDNSProvider(failed_over_records())
        orchestrator = orchestrator_factory(make_config(failback_policy='sticky'), dns_provider=provider)

        result = await orchestrator.evaluate_and_reconcile()

        assert result.details['result']['changed'] is False
        assert orchestrator.current_intent.primary_target == SECONDARY
        assert provider.upserts == []

    @pytest.mark.asyncio
    async def test_both_down_requires_manual_intervention(self, orchestrator_factory, probe, dns_provider):
        probe.set(PRIMARY_ENDPOINT, False)
        probe.set(SECONDARY_ENDPOINT, False)
        orchestrator = orchestrator_factory()

        result = await orchestrator.evaluate_and_reconcile()

        assert result.outcome == Outcome.MANUAL_INTERVENTION
        assert result.exit_code == 2
        assert result.details['error'] == 'UnsafeStateError'
        assert dns_provider.upserts == []
        assert orchestrator.alerts.get_active_alerts('critical')

    @pytest.mark.asyncio
    async def test_dns_submission_failure_is_recoverable(self, orchestrator_factory, dns_provider):
        dns_provider.fail_upserts = 10
        orchestrator = orchestrator_factory()

        result = await orchestrator.evaluate_and_reconcile()

        assert result.outcome == Outcome.FAILED
        assert result.exit_code == 1
        assert result.details['error'] == 'DNSSubmissionError'

    @pytest.mark.asyncio
    async def test_dry_run(self, orchestrator_factory, probe, dns_provider):
        probe.set(PRIMARY_ENDPOINT, False)
        orchestrator = orchestrator_factory(make_config(dry_run=True))

        result = await orchestrator.evaluate_and_reconcile()

        assert result.dry_run is True
        assert result.message.startswith('DRY RUN')
        assert result.details['result']['records']['records'][0]['set_identifier'] == SECONDARY
        assert dns_provider.upserts == []
        assert orchestrator.current_intent is None

    @pytest.mark.asyncio
    async def test_concurrent_operation_is_rejected(self, orchestrator_factory):
        orchestrator = orchestrator_factory(probe_client=FakeProbe(delay=0.05))

        first, second = await asyncio.gather(
            orchestrator.evaluate_and_reconcile(),
            orchestrator.failover_to_secondary(),
        )

        assert first.outcome == Outcome.SUCCEEDED
        assert second.outcome == Outcome.FAILED
        assert second.details['error'] == 'ConflictError'


class TestManualFailover:

    @pytest.mark.asyncio
    async def test_failover_to_secondary(self, orchestrator_factory, dns_provider):
        result = await orchestrator_factory().failover_to_secondary()

        assert result.outcome == Outcome.SUCCEEDED
        assert result.details['result']['intent']['mode'] == 'manual_override'
        assert dns_provider.records.primary.set_identifier == SECONDARY

    @pytest.mark.asyncio
    async def test_refuses_unhealthy_secondary(self, orchestrator_factory, probe, dns_provider):
        probe.set(SECONDARY_ENDPOINT, False)

        result = await orchestrator_factory().failover_to_secondary()

        assert result.outcome == Outcome.MANUAL_INTERVENTION
        assert dns_provider.upserts == []

    @pytest.mark.asyncio
    async def test_force_promotes_unhealthy_secondary(self, orchestrator_factory, probe, dns_provider):
        probe.set(SECONDARY_ENDPOINT, False)

        result = await orchestrator_factory().failover_to_secondary(force=True)

        assert result.outcome == Outcome.SUCCEEDED
        assert result.details['result']['warnings']
        assert dns_provider.records.primary.set_identifier == SECONDARY

    @pytest.mark.asyncio
    async def test_failback_to_primary(self, orchestrator_factory, dns_provider):
        orchestrator = orchestrator_factory()
        await orchestrator.failover_to_secondary()

        result = await orchestrator.failback_to_primary()

        assert result.outcome == Outcome.SUCCEEDED
        assert dns_provider.records.primary.set_identifier == PRIMARY

    @pytest.mark.asyncio
    async def test_unknown_target(self, orchestrator_factory):
        result = await orchestrator_factory().force_failover('eu-west-1')
        assert result.outcome == Outcome.FAILED
        assert result.details['error'] == 'ConfigurationError'


# ── Status and Test ───────────────────────────────────────────────────────────

class TestStatus:

    @pytest.mark.asyncio
    async def test_status_reports_everything(self, orchestrator_factory):
        provider = FakeDNSProvider(failed_over_records())
        result = await orchestrator_factory(dns_provider=provider).status()

        details = result.details
        assert result.outcome == Outcome.SUCCEEDED
        assert details['regions'][PRIMARY]['health'] == 'healthy'
        assert details['dns']['active_region'] == SECONDARY
        assert details['dns']['resolved_addresses'] == ['192.0.2.10']
        assert details['desired_intent']['mode'] == 'nominal'
        assert details['service']['revision'] == 'rev-1'
        assert provider.upserts == []

    @pytest.mark.asyncio
    async def test_failover_test_command(self, orchestrator_factory, dns_provider):
        result = await orchestrator_factory().failover_test()

        assert result.outcome == Outcome.SUCCEEDED
        assert result.details['before']['dns']['records'] is None
        assert result.details['after']['dns']['active_region'] == PRIMARY
        assert len(dns_provider.upserts) == 1


# ── Deployment ────────────────────────────────────────────────────────────────

class TestDeploymentCommands:

    @pytest.mark.asyncio
    async def test_deploy_by_image_tag(self, orchestrator_factory, platform):
        result = await orchestrator_factory().deploy(image_tag='v2')

        assert result.outcome == Outcome.SUCCEEDED
        assert platform.registered['rev-2'].endswith('api-service:v2')
        assert result.details['attempt']['state'] == 'succeeded'

    @pytest.mark.asyncio
    async def test_rolled_back_deploy_is_recoverable_failure(self, orchestrator_factory, platform):
        platform.stuck_revisions.add('rev-2')
        orchestrator = orchestrator_factory()

        result = await orchestrator.deploy(image_tag='v2')

        assert result.outcome == Outcome.FAILED
        assert result.details['attempt']['state'] == 'rolled_back'
        assert 'RegionctlDeploymentRolledBack' in [a.name for a in orchestrator.alerts.alert_history]

        history = await orchestrator.history()
        assert history.details['stable'] == 'rev-1'

    @pytest.mark.asyncio
    async def test_fatal_rollback_requires_manual_intervention(self, orchestrator_factory, platform):
        platform.stuck_revisions.update({'rev-1', 'rev-2'})

        result = await orchestrator_factory().deploy(image_tag='v2')

        assert result.outcome == Outcome.MANUAL_INTERVENTION
        assert result.details['error'] == 'FatalError'

    @pytest.mark.asyncio
    async def test_unreachable_registry_is_recoverable_failure(self, orchestrator_factory, platform):
        platform.artifact_exists = AsyncMock(side_effect=TransientError('describe_images failed: could not connect'))

        result = await orchestrator_factory().deploy(image_tag='v2')

        assert result.outcome == Outcome.FAILED
        assert result.details['error'] == 'TransientError'
        assert platform.updates == []

    @pytest.mark.asyncio
    async def test_history_reports_running_revision_as_stable(self, orchestrator_factory):
        result = await orchestrator_factory().history()

        assert result.outcome == Outcome.SUCCEEDED
        assert result.message == 'Stable revision: rev-1'
        assert result.details['stable'] == 'rev-1'

    @pytest.mark.asyncio
    async def test_deploy_dry_run(self, orchestrator_factory, platform):
        result = await orchestrator_factory(make_config(dry_run=True)).deploy(image_tag='v2')

        assert result.outcome == Outcome.SUCCEEDED
        assert result.dry_run is True
        assert platform.updates == []

    @pytest.mark.asyncio
    async def test_scale_and_rollback(self, orchestrator_factory, platform):
        orchestrator = orchestrator_factory()

        scaled = await orchestrator.scale(4)
        rolled = await orchestrator.rollback('rev-1')

        assert scaled.outcome == Outcome.SUCCEEDED
        assert platform.desired == 4
        assert rolled.outcome == Outcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_negative_scale(self, orchestrator_factory, platform):
        result = await orchestrator_factory().scale(-1)

        assert result.outcome == Outcome.FAILED
        assert platform.updates == []


# ── Disaster Recovery ─────────────────────────────────────────────────────────

class TestDisasterRecoveryCommand:

    @pytest.mark.asyncio
    async def test_drill_passes(self, orchestrator_factory, injector):
        result = await orchestrator_factory().run_disaster_recovery_drill()

        names = [s['name'] for s in result.details['steps']]
        assert result.outcome == Outcome.SUCCEEDED
        assert 'controller_failover' in names
        assert 'controller_failback' in names
        assert [c[0] for c in injector.calls] == ['fail', 'restore']

    @pytest.mark.asyncio
    async def test_drill_dry_run_skips_failure_simulation(self, orchestrator_factory, injector):
        result = await orchestrator_factory(make_config(dry_run=True)).run_disaster_recovery_drill()

        assert result.outcome == Outcome.SUCCEEDED
        assert len(result.details['steps']) == 5
        assert injector.calls == []
