"""
Routing Decision Engine

Pure mapping from the two regions' health (plus an optional manual override)
to the desired routing intent. The same inputs always produce the same
intent, so the steady state is re-asserted on every cycle.

    primary  secondary  ->  intent
    healthy  healthy        NOMINAL (primary serves)
    down     healthy        FAILED_OVER_TO_SECONDARY
    healthy  down           NOMINAL (never promote a known-bad secondary)
    down     down           BOTH_DOWN (no safe intent)

UNKNOWN is treated as down.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..models import HealthClassification, RoutingIntent, RoutingMode


class FailbackPolicy(Enum):
    """What happens when the primary recovers while failed over"""
    AUTOMATIC = "automatic"  # route back to the primary immediately
    STICKY = "sticky"  # stay on the secondary until a manual failback


@dataclass(frozen=True)
class RegionPair:
    """Configured primary and secondary region identifiers"""
    primary: str
    secondary: str

    def other(self, region_id: str) -> str:
        if region_id == self.primary:
            return self.secondary
        if region_id == self.secondary:
            return self.primary
        raise ValueError(f"Unknown region: {region_id}")


@dataclass(frozen=True)
class ManualOverride:
    """Operator request to route to an explicit target"""
    target: str
    force: bool = False
    reason: str = "manual override"


def _is_up(health: HealthClassification) -> bool:
    return health == HealthClassification.HEALTHY


def nominal(regions: RegionPair, reason: str) -> RoutingIntent:
    return RoutingIntent(RoutingMode.NOMINAL, regions.primary, regions.secondary, reason)


def failed_over(regions: RegionPair, reason: str) -> RoutingIntent:
    return RoutingIntent(
        RoutingMode.FAILED_OVER_TO_SECONDARY, regions.secondary, regions.primary, reason
    )


def decide(
    primary_health: HealthClassification,
    secondary_health: HealthClassification,
    current_intent: Optional[RoutingIntent] = None,
    *,
    regions: RegionPair,
    override: Optional[ManualOverride] = None,
    failback: FailbackPolicy = FailbackPolicy.AUTOMATIC
) -> RoutingIntent:
    """
    Compute the desired routing intent.

    Args:
        primary_health: Classification of the configured primary region
        secondary_health: Classification of the configured secondary region
        current_intent: Intent currently in force (only used by STICKY failback)
        regions: Primary/secondary identifiers
        override: Manual override; bypasses health evaluation
        failback: Failback policy

    Returns:
        RoutingIntent; BOTH_DOWN carries no targets
    """
    if override is not None:
        return RoutingIntent(
            RoutingMode.MANUAL_OVERRIDE,
            override.target,
            regions.other(override.target),
            override.reason,
        )

    primary_up = _is_up(primary_health)
    secondary_up = _is_up(secondary_health)

    if primary_up and secondary_up:
        if (
            failback == FailbackPolicy.STICKY
            and current_intent is not None
            and current_intent.primary_target == regions.secondary
            and current_intent.mode in (
                RoutingMode.FAILED_OVER_TO_SECONDARY, RoutingMode.MANUAL_OVERRIDE
            )
        ):
            return failed_over(regions, "primary recovered; sticky failback holds secondary")
        return nominal(regions, "both regions healthy")

    if not primary_up and secondary_up:
        return failed_over(regions, f"primary {primary_health.value}, secondary healthy")

    if primary_up and not secondary_up:
        return nominal(regions, f"secondary {secondary_health.value}, primary healthy")

    return RoutingIntent(
        RoutingMode.BOTH_DOWN,
        reason=(
            f"primary {primary_health.value}, secondary {secondary_health.value}: "
            "no safe routing target"
        ),
    )
