"""
Tests for the Routing Decision Engine

Covers the decision table, fail-safe handling of unknown health,
idempotence, manual overrides and both failback policies.
"""

import itertools

import pytest

from conftest import PRIMARY, SECONDARY

from regionctl.models import HealthClassification, RoutingIntent, RoutingMode
from regionctl.routing.engine import FailbackPolicy, ManualOverride, RegionPair, decide

H = HealthClassification.HEALTHY
U = HealthClassification.UNHEALTHY
K = HealthClassification.UNKNOWN

REGIONS = RegionPair(PRIMARY, SECONDARY)

PRIOR_INTENTS = [
    None,
    RoutingIntent(RoutingMode.NOMINAL, PRIMARY, SECONDARY),
    RoutingIntent(RoutingMode.FAILED_OVER_TO_SECONDARY, SECONDARY, PRIMARY),
    RoutingIntent(RoutingMode.MANUAL_OVERRIDE, SECONDARY, PRIMARY),
    RoutingIntent(RoutingMode.BOTH_DOWN),
]


# ── Decision Table ────────────────────────────────────────────────────────────

class TestDecisionTable:

    @pytest.mark.parametrize('primary,secondary,mode,target', [
        (H, H, RoutingMode.NOMINAL, PRIMARY),
        (U, H, RoutingMode.FAILED_OVER_TO_SECONDARY, SECONDARY),
        (H, U, RoutingMode.NOMINAL, PRIMARY),
        (U, U, RoutingMode.BOTH_DOWN, None),
        (K, H, RoutingMode.FAILED_OVER_TO_SECONDARY, SECONDARY),
        (H, K, RoutingMode.NOMINAL, PRIMARY),
        (K, K, RoutingMode.BOTH_DOWN, None),
        (K, U, RoutingMode.BOTH_DOWN, None),
    ])
    def test_decide(self, primary, secondary, mode, target):
        intent = decide(primary, secondary, regions=REGIONS)
        assert intent.mode == mode
        assert intent.primary_target == target

    def test_nominal_assigns_both_targets(self):
        intent = decide(H, H, regions=REGIONS)
        assert (intent.primary_target, intent.secondary_target) == (PRIMARY, SECONDARY)

    def test_both_down_never_promotes(self):
        for primary, secondary in itertools.product([U, K], repeat=2):
            for prior in PRIOR_INTENTS:
                intent = decide(primary, secondary, prior, regions=REGIONS)
                assert intent.mode == RoutingMode.BOTH_DOWN
                assert intent.primary_target is None
                assert not intent.is_actionable

    def test_nominal_is_reasserted_regardless_of_prior(self):
        prior = RoutingIntent(RoutingMode.FAILED_OVER_TO_SECONDARY, SECONDARY, PRIMARY)
        assert decide(H, H, prior, regions=REGIONS).mode == RoutingMode.NOMINAL


# ── Properties ────────────────────────────────────────────────────────────────

class TestDecisionProperties:

    @pytest.mark.parametrize('policy', list(FailbackPolicy))
    def test_idempotent(self, policy):
        for primary, secondary in itertools.product([H, U, K], repeat=2):
            for prior in PRIOR_INTENTS:
                first = decide(primary, secondary, prior, regions=REGIONS, failback=policy)
                second = decide(primary, secondary, first, regions=REGIONS, failback=policy)
                assert second == first

    def test_intent_equality_ignores_reason(self):
        a = RoutingIntent(RoutingMode.NOMINAL, PRIMARY, SECONDARY, 'one')
        b = RoutingIntent(RoutingMode.NOMINAL, PRIMARY, SECONDARY, 'two')
        assert a == b

    def test_automatic_failover_and_failback_scenario(self):
        intent = decide(H, H, None, regions=REGIONS)
        assert intent.mode == RoutingMode.NOMINAL and intent.primary_target == PRIMARY

        intent = decide(U, H, intent, regions=REGIONS)
        assert intent.mode == RoutingMode.FAILED_OVER_TO_SECONDARY
        assert intent.primary_target == SECONDARY

        intent = decide(H, H, intent, regions=REGIONS)
        assert intent.mode == RoutingMode.NOMINAL and intent.primary_target == PRIMARY

    def test_sticky_failback_holds_secondary(self):
        intent = decide(U, H, None, regions=REGIONS, failback=FailbackPolicy.STICKY)
        intent = decide(H, H, intent, regions=REGIONS, failback=FailbackPolicy.STICKY)

        assert intent.mode == RoutingMode.FAILED_OVER_TO_SECONDARY
        assert intent.primary_target == SECONDARY

    def test_sticky_returns_to_primary_when_secondary_fails(self):
        prior = RoutingIntent(RoutingMode.FAILED_OVER_TO_SECONDARY, SECONDARY, PRIMARY)
        intent = decide(H, U, prior, regions=REGIONS, failback=FailbackPolicy.STICKY)
        assert intent.mode == RoutingMode.NOMINAL


# ── Manual Override ───────────────────────────────────────────────────────────

class TestManualOverride:

    def test_override_bypasses_health(self):
        intent = decide(H, U, regions=REGIONS, override=ManualOverride(SECONDARY))

        assert intent.mode == RoutingMode.MANUAL_OVERRIDE
        assert intent.primary_target == SECONDARY
        assert intent.secondary_target == PRIMARY

    def test_override_unknown_region(self):
        with pytest.raises(ValueError):
            decide(H, H, regions=REGIONS, override=ManualOverride('eu-west-1'))
