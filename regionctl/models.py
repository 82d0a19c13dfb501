"""
Controller Data Models

Regions and their probe history, routing intents and DNS record sets,
deployment revisions and attempts, and typed snapshots of the compute
platform. Wire formats of external APIs are converted into these types at
the collaborator boundary.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthClassification(Enum):
    """Health classification of a region"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single readiness probe"""
    ok: bool
    latency_ms: float
    status_code: Optional[int] = None
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)


@dataclass
class Region:
    """A deployable service instance plus its public entry point"""
    region_id: str
    label: str
    endpoint: str
    last_result: Optional[ProbeResult] = None
    last_probe_at: Optional[datetime] = None
    consecutive_failures: int = 0
    history: Deque[ProbeResult] = field(
        default_factory=lambda: deque(maxlen=50), repr=False
    )

    def record(self, result: ProbeResult):
        self.history.append(result)
        self.last_result = result
        self.last_probe_at = result.checked_at
        if result.ok:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1


class RoutingMode(Enum):
    """Global routing modes"""
    NOMINAL = "nominal"
    FAILED_OVER_TO_SECONDARY = "failed_over_to_secondary"
    MANUAL_OVERRIDE = "manual_override"
    BOTH_DOWN = "both_down"


@dataclass(frozen=True)
class RoutingIntent:
    """Desired routing state; BOTH_DOWN carries no targets"""
    mode: RoutingMode
    primary_target: Optional[str] = None
    secondary_target: Optional[str] = None
    reason: str = field(default="", compare=False)

    @property
    def is_actionable(self) -> bool:
        return self.mode != RoutingMode.BOTH_DOWN and self.primary_target is not None

    def to_dict(self) -> Dict:
        return {
            'mode': self.mode.value,
            'primary_target': self.primary_target,
            'secondary_target': self.secondary_target,
            'reason': self.reason,
        }


class PriorityClass(Enum):
    """Failover priority of a DNS record"""
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


@dataclass(frozen=True)
class RoutingRecord:
    """One failover record; keyed by the target's stable set identifier"""
    set_identifier: str
    target: str
    priority: PriorityClass
    ttl: int
    alias_zone_id: Optional[str] = None


@dataclass(frozen=True)
class RoutingRecordSet:
    """The primary/secondary pair applied to the DNS system"""
    name: str
    records: Tuple[RoutingRecord, ...]

    def with_priority(self, priority: PriorityClass) -> List[RoutingRecord]:
        return [r for r in self.records if r.priority == priority]

    @property
    def primary(self) -> Optional[RoutingRecord]:
        records = self.with_priority(PriorityClass.PRIMARY)
        return records[0] if len(records) == 1 else None

    @property
    def secondary(self) -> Optional[RoutingRecord]:
        records = self.with_priority(PriorityClass.SECONDARY)
        return records[0] if len(records) == 1 else None

    def by_identifier(self) -> Dict[str, RoutingRecord]:
        return {r.set_identifier: r for r in self.records}

    def validate(self):
        """Raise ValueError unless there is exactly one PRIMARY on a distinct target"""
        if len(self.with_priority(PriorityClass.PRIMARY)) != 1:
            raise ValueError("record set must contain exactly one PRIMARY entry")
        targets = [r.target for r in self.records]
        if len(set(targets)) != len(targets):
            raise ValueError("record set entries must point at distinct targets")

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'records': [
                {
                    'set_identifier': r.set_identifier,
                    'target': r.target,
                    'priority': r.priority.value,
                    'ttl': r.ttl,
                }
                for r in self.records
            ],
        }


@dataclass(frozen=True)
class DeploymentRevision:
    """Immutable service revision; predecessor links form the rollback chain"""
    revision_id: str
    artifact: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    predecessor_id: Optional[str] = None


class DeploymentState(Enum):
    """States of a deployment attempt"""
    IN_PROGRESS = "in_progress"
    CONVERGING = "converging"
    HEALTH_CHECKING = "health_checking"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentState.SUCCEEDED,
            DeploymentState.ROLLED_BACK,
            DeploymentState.FAILED,
        )


@dataclass
class DeploymentAttempt:
    """One rollout, scale or manual rollback owned by the release manager"""
    attempt_id: str
    kind: str  # deploy, scale, rollback
    candidate: DeploymentRevision
    previous: Optional[DeploymentRevision]
    deadline: datetime
    desired_count: Optional[int] = None
    started_at: datetime = field(default_factory=utcnow)
    state: DeploymentState = DeploymentState.IN_PROGRESS
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    transitions: List[Tuple[DeploymentState, datetime]] = field(default_factory=list)

    def transition(self, state: DeploymentState):
        self.state = state
        now = utcnow()
        self.transitions.append((state, now))
        if state.is_terminal:
            self.finished_at = now

    def to_dict(self) -> Dict:
        return {
            'attempt_id': self.attempt_id,
            'kind': self.kind,
            'candidate': self.candidate.revision_id,
            'previous': self.previous.revision_id if self.previous else None,
            'state': self.state.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'deadline': self.deadline.isoformat(),
            'error': self.error_message,
        }


@dataclass
class PlatformDeployment:
    """A deployment as reported by the compute platform"""
    deployment_id: str
    status: str  # PRIMARY, ACTIVE, INACTIVE
    revision: str
    running_count: int
    desired_count: int
    rollout_state: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class ServiceSnapshot:
    """Fresh view of the service as reported by describeService"""
    service_name: str
    revision: str
    running_count: int
    desired_count: int
    deployments: List[PlatformDeployment] = field(default_factory=list)
    status: str = "ACTIVE"

    def is_converged_on(self, revision: str, desired_count: Optional[int] = None) -> bool:
        """Sole PRIMARY deployment on `revision` with running == desired"""
        if len(self.deployments) != 1:
            return False
        deployment = self.deployments[0]
        if deployment.status != "PRIMARY" or deployment.revision != revision:
            return False
        if desired_count is not None and self.desired_count != desired_count:
            return False
        return (
            self.running_count == self.desired_count
            and deployment.running_count == deployment.desired_count
        )

    def rollout_failed(self, revision: str) -> bool:
        return any(
            d.revision == revision and (d.rollout_state or "").upper() == "FAILED"
            for d in self.deployments
        )

    def to_dict(self) -> Dict:
        return {
            'service': self.service_name,
            'status': self.status,
            'revision': self.revision,
            'running_count': self.running_count,
            'desired_count': self.desired_count,
            'deployments': [
                {
                    'id': d.deployment_id,
                    'status': d.status,
                    'revision': d.revision,
                    'running': d.running_count,
                    'desired': d.desired_count,
                    'rollout_state': d.rollout_state,
                    'created_at': d.created_at,
                }
                for d in self.deployments
            ],
        }
