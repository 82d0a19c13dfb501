"""
Release Manager

Owns deployment revisions and drives one deployment attempt at a time
through the compute platform:

    IN_PROGRESS -> CONVERGING -> HEALTH_CHECKING -> SUCCEEDED
                              \\                 \\-> ROLLED_BACK (verification failed)
                               \\-> FAILED -> ROLLED_BACK (convergence timed out)

A second mutating operation while an attempt is active is rejected with a
ConflictError. A rollback that itself does not converge raises FatalError;
there is no second automatic remediation.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import DeploymentConfig, HealthCheckConfig
from ..errors import (
    ArtifactNotFoundError,
    ConflictError,
    ControllerError,
    ConvergenceError,
    FatalError,
)
from ..models import (
    DeploymentAttempt,
    DeploymentRevision,
    DeploymentState,
    ServiceSnapshot,
    utcnow,
)
from ..monitoring.metrics import ControllerMetrics
from ..utils.logger import ControllerLoggerAdapter
from ..utils.retry import PollStatus, poll_until
from .platform import ComputePlatform
from .verifier import PostDeployVerifier

logger = logging.getLogger(__name__)


class RevisionHistory:
    """
    Known revisions and the stable pointer.

    A revision's predecessor is fixed when it is first registered and always
    refers to an earlier registration, so the chain can never be cyclic.
    """

    def __init__(self, max_attempts: int = 50):
        self._revisions: Dict[str, DeploymentRevision] = {}
        self.stable_id: Optional[str] = None
        self.attempts: List[DeploymentAttempt] = []
        self.max_attempts = max_attempts

    def get(self, revision_id: str) -> Optional[DeploymentRevision]:
        return self._revisions.get(revision_id)

    def register(
        self,
        revision_id: str,
        artifact: Optional[str] = None,
        predecessor_id: Optional[str] = None
    ) -> DeploymentRevision:
        """Return the known revision, or record a new one"""
        existing = self._revisions.get(revision_id)
        if existing is not None:
            return existing
        if predecessor_id == revision_id or (
            predecessor_id is not None and predecessor_id not in self._revisions
        ):
            predecessor_id = None
        revision = DeploymentRevision(
            revision_id=revision_id,
            artifact=artifact,
            predecessor_id=predecessor_id,
        )
        self._revisions[revision_id] = revision
        return revision

    @property
    def stable(self) -> Optional[DeploymentRevision]:
        return self._revisions.get(self.stable_id) if self.stable_id else None

    def promote(self, revision: DeploymentRevision):
        self.register(revision.revision_id, revision.artifact, revision.predecessor_id)
        self.stable_id = revision.revision_id

    def record_attempt(self, attempt: DeploymentAttempt):
        self.attempts.append(attempt)
        del self.attempts[:-self.max_attempts]

    def chain(self) -> List[DeploymentRevision]:
        """Stable revision followed by its predecessors"""
        chain = []
        seen = set()
        revision = self.stable
        while revision is not None and revision.revision_id not in seen:
            chain.append(revision)
            seen.add(revision.revision_id)
            revision = self._revisions.get(revision.predecessor_id) if revision.predecessor_id else None
        return chain

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stable': self.stable_id,
            'chain': [
                {
                    'revision': r.revision_id,
                    'artifact': r.artifact,
                    'created_at': r.created_at.isoformat(),
                    'predecessor': r.predecessor_id,
                }
                for r in self.chain()
            ],
            'attempts': [a.to_dict() for a in reversed(self.attempts)],
        }


@dataclass
class ReleaseResult:
    """Outcome of a deploy, rollback or scale operation"""
    kind: str
    attempt: Optional[DeploymentAttempt] = None
    dry_run: bool = False
    plan: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        if self.dry_run:
            return True
        return self.attempt is not None and self.attempt.state == DeploymentState.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'dry_run': self.dry_run,
            'attempt': self.attempt.to_dict() if self.attempt else None,
            'plan': dict(self.plan),
            'warnings': list(self.warnings),
        }


class ReleaseManager:
    """
    Drives rolling updates, convergence polling, verification and rollback.
    """

    def __init__(
        self,
        platform: ComputePlatform,
        verifier: PostDeployVerifier,
        config: DeploymentConfig,
        health_config: HealthCheckConfig,
        verify_endpoint: str,
        metrics: Optional[ControllerMetrics] = None,
        history: Optional[RevisionHistory] = None
    ):
        self.platform = platform
        self.verifier = verifier
        self.config = config
        self.health_config = health_config
        self.verify_endpoint = verify_endpoint
        self.metrics = metrics
        self.history = history or RevisionHistory()
        self.active: Optional[DeploymentAttempt] = None
        self._claimed_by: Optional[str] = None

    # ── Mutual exclusion ──

    @property
    def busy(self) -> bool:
        return self._claimed_by is not None or (
            self.active is not None and not self.active.state.is_terminal
        )

    def _claim(self, operation: str):
        """Fail fast when another mutating operation holds the service"""
        if self.busy:
            holder = self.active.attempt_id if self.active and not self.active.state.is_terminal else self._claimed_by
            raise ConflictError(
                f"Cannot {operation}: {holder} is in progress",
                active=holder,
            )
        self._claimed_by = operation

    def _release(self):
        self._claimed_by = None

    def _log(self, attempt: DeploymentAttempt) -> ControllerLoggerAdapter:
        return ControllerLoggerAdapter(logger, {
            'operation': attempt.kind,
            'revision': attempt.candidate.revision_id,
            'attempt_id': attempt.attempt_id,
        })

    def _new_attempt(
        self,
        kind: str,
        candidate: DeploymentRevision,
        previous: Optional[DeploymentRevision],
        timeout: float,
        desired_count: Optional[int] = None
    ) -> DeploymentAttempt:
        attempt = DeploymentAttempt(
            attempt_id=f"{kind}-{uuid.uuid4().hex[:8]}",
            kind=kind,
            candidate=candidate,
            previous=previous,
            deadline=utcnow() + timedelta(seconds=timeout),
            desired_count=desired_count,
        )
        attempt.transition(DeploymentState.IN_PROGRESS)
        self.active = attempt
        self.history.record_attempt(attempt)
        return attempt

    def _finish(
        self,
        attempt: DeploymentAttempt,
        state: DeploymentState,
        error: Optional[str] = None,
        final: bool = True
    ):
        """Move `attempt` to a terminal state; `final=False` defers the outcome metric to a rollback"""
        attempt.transition(state)
        if error:
            attempt.error_message = error
        log = self._log(attempt)
        if state == DeploymentState.SUCCEEDED:
            log.info(f"{attempt.kind} {attempt.attempt_id} succeeded")
        else:
            log.error(f"{attempt.kind} {attempt.attempt_id} ended {state.value}: {error or ''}")
        if final:
            self._record_outcome(attempt)

    def _record_outcome(self, attempt: DeploymentAttempt):
        if self.metrics:
            self.metrics.record_deployment(attempt.kind, attempt.state.value)

    async def _stable_revision(self) -> DeploymentRevision:
        """Current stable revision, adopting the platform's on first use"""
        if self.history.stable is not None:
            return self.history.stable
        snapshot = await self.platform.describe_service()
        revision = self.history.register(snapshot.revision)
        self.history.promote(revision)
        logger.info(f"Adopted running revision {revision.revision_id} as stable")
        return revision

    # ── Deploy ──

    async def start(self, artifact: str) -> DeploymentAttempt:
        """
        Register a revision for `artifact` and start the rolling update.

        Raises:
            ConflictError: Another attempt is active
            ArtifactNotFoundError: The artifact does not exist
        """
        self._claim('deploy')
        attempt = None
        try:
            if not await self.platform.artifact_exists(artifact):
                raise ArtifactNotFoundError(f"Image not found: {artifact}", artifact=artifact)

            previous = await self._stable_revision()
            revision_id = await self.platform.register_revision(artifact)
            candidate = self.history.register(revision_id, artifact, previous.revision_id)
            attempt = self._new_attempt('deploy', candidate, previous, self.config.timeout_seconds)

            self._log(attempt).info(
                f"Starting deployment of {artifact} (previous={previous.revision_id})"
            )
            await self.platform.update_service(
                revision=candidate.revision_id,
                max_percent=self.config.max_percent,
                min_healthy_percent=self.config.min_healthy_percent,
            )
            return attempt
        except ControllerError as e:
            if attempt is not None:
                self._finish(attempt, DeploymentState.FAILED, e.message)
            raise
        finally:
            self._release()

    def _remaining(self, attempt: DeploymentAttempt, timeout: Optional[float]) -> float:
        remaining = (attempt.deadline - utcnow()).total_seconds()
        if timeout is not None:
            remaining = min(remaining, timeout)
        return max(remaining, 0.0)

    async def _converge(
        self,
        attempt: DeploymentAttempt,
        revision: str,
        timeout: float,
        desired_count: Optional[int] = None
    ):
        """Poll until `revision` is the sole converged deployment; raises ConvergenceError otherwise"""
        result = await poll_until(
            self.platform.describe_service,
            lambda snapshot: snapshot.is_converged_on(revision, desired_count),
            timeout=timeout,
            interval=self.config.poll_interval_seconds,
            abort=lambda snapshot: snapshot.rollout_failed(revision),
            description=f"{attempt.kind} {attempt.attempt_id} convergence on {revision}",
        )
        if self.metrics:
            self.metrics.record_convergence(attempt.kind, result.elapsed_seconds)
        if result.status == PollStatus.ABORTED:
            raise ConvergenceError(f"platform reported the rollout of {revision} as failed", revision=revision)
        if not result.satisfied:
            raise ConvergenceError(
                f"{revision} did not converge within {result.elapsed_seconds:.0f}s", revision=revision
            )
        return result

    async def await_convergence(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the candidate is the sole primary deployment with
        running == desired.

        On timeout (or a rollout the platform reports as failed) the attempt
        moves to FAILED and a deployment rolls back to the previous revision.

        Raises:
            FatalError: The rollback did not converge either
        """
        attempt = self._require_active(DeploymentState.IN_PROGRESS)
        attempt.transition(DeploymentState.CONVERGING)
        log = self._log(attempt)

        try:
            result = await self._converge(
                attempt,
                attempt.candidate.revision_id,
                self._remaining(attempt, timeout),
                attempt.desired_count,
            )
        except ConvergenceError as e:
            reason = e.message
        except ControllerError as e:
            reason = f"convergence of {attempt.candidate.revision_id} could not be observed: {e.message}"
        else:
            log.info(
                f"Converged on {attempt.candidate.revision_id} "
                f"after {result.elapsed_seconds:.1f}s"
            )
            if attempt.kind == 'deploy':
                attempt.transition(DeploymentState.HEALTH_CHECKING)
            else:
                self._finish(attempt, DeploymentState.SUCCEEDED)
            return True

        rolling_back = attempt.kind == 'deploy' and self.config.rollback_enabled
        self._finish(attempt, DeploymentState.FAILED, reason, final=not rolling_back)
        if rolling_back:
            await self._roll_back(attempt)
        return False

    async def verify(self, deadline: Optional[float] = None) -> bool:
        """
        Health-gate the converged candidate.

        Success makes the candidate the new stable revision; failure rolls
        back to the previous one. Verification never runs past the attempt
        deadline.

        Raises:
            FatalError: The rollback did not converge
        """
        attempt = self._require_active(DeploymentState.HEALTH_CHECKING)
        attempt_deadline = time.monotonic() + self._remaining(attempt, None)
        deadline = attempt_deadline if deadline is None else min(deadline, attempt_deadline)
        healthy = await self.verifier.verify(
            self.verify_endpoint,
            retries=self.health_config.retries,
            interval=self.health_config.interval_seconds,
            deadline=deadline,
        )
        if healthy:
            self.history.promote(attempt.candidate)
            self._finish(attempt, DeploymentState.SUCCEEDED)
            return True

        if time.monotonic() >= deadline:
            message = f"deadline passed during health verification of {attempt.candidate.revision_id}"
        else:
            message = f"health checks failed after {self.health_config.retries} attempts"
        if not self.config.rollback_enabled:
            self._finish(attempt, DeploymentState.FAILED, message)
            return False

        attempt.error_message = message
        await self._roll_back(attempt)
        return False

    async def _roll_back(self, attempt: DeploymentAttempt):
        """Re-issue the previous revision and wait for it to converge"""
        log = self._log(attempt)
        previous = attempt.previous

        def fail(reason: str) -> FatalError:
            if attempt.state == DeploymentState.FAILED:
                attempt.error_message = reason
                self._record_outcome(attempt)
            else:
                self._finish(attempt, DeploymentState.FAILED, reason)
            return FatalError(
                f"{attempt.attempt_id}: {reason}; manual intervention required",
                attempt=attempt.to_dict(),
            )

        if previous is None:
            raise fail("no previous revision to roll back to")

        log.warning(f"Rolling back to {previous.revision_id}")
        self._claimed_by = f"rollback of {attempt.attempt_id}"
        try:
            await self.platform.update_service(revision=previous.revision_id)
            await self._converge(attempt, previous.revision_id, self.config.rollback_timeout_seconds)
        except ControllerError as e:
            raise fail(f"rollback to {previous.revision_id} failed: {e.message}")
        finally:
            self._release()

        self.history.promote(previous)
        self._finish(attempt, DeploymentState.ROLLED_BACK, attempt.error_message)

    def _require_active(self, state: DeploymentState) -> DeploymentAttempt:
        attempt = self.active
        if attempt is None or attempt.state != state:
            current = attempt.state.value if attempt else 'none'
            raise ConflictError(f"No attempt in state {state.value} (current: {current})")
        return attempt

    async def deploy(self, artifact: str, dry_run: bool = False) -> ReleaseResult:
        """Start, converge and verify a deployment of `artifact`"""
        if dry_run:
            self._claim('deploy')
            try:
                previous = await self._stable_revision()
                exists = await self.platform.artifact_exists(artifact)
            finally:
                self._release()
            logger.info(f"DRY RUN: would deploy {artifact} over {previous.revision_id}")
            result = ReleaseResult('deploy', dry_run=True, plan={
                'artifact': artifact,
                'previous': previous.revision_id,
                'max_percent': self.config.max_percent,
                'min_healthy_percent': self.config.min_healthy_percent,
                'rollback_enabled': self.config.rollback_enabled,
            })
            if not exists:
                result.warnings.append(f"Image not found: {artifact}")
            return result

        attempt = await self.start(artifact)
        if await self.await_convergence():
            await self.verify()
        return ReleaseResult('deploy', attempt)

    # ── Rollback and scale ──

    async def rollback(self, revision: str, dry_run: bool = False) -> ReleaseResult:
        """
        Roll the service to an explicit revision.

        Raises:
            ConflictError: Another attempt is active
            FatalError: The rollback did not converge
        """
        self._claim('rollback')
        try:
            revision_id = await self.platform.resolve_revision(revision)
            previous = await self._stable_revision()
            if dry_run:
                logger.info(f"DRY RUN: would roll back to {revision_id}")
                return ReleaseResult('rollback', dry_run=True, plan={
                    'revision': revision_id,
                    'previous': previous.revision_id,
                })

            candidate = self.history.register(revision_id, predecessor_id=previous.revision_id)
            attempt = self._new_attempt(
                'rollback', candidate, previous, self.config.rollback_timeout_seconds
            )
            log = self._log(attempt)
            log.info(f"Rolling back to {revision_id}")
            try:
                await self.platform.update_service(revision=revision_id)
                attempt.transition(DeploymentState.CONVERGING)
                await self._converge(attempt, revision_id, self._remaining(attempt, None))
            except ControllerError as e:
                self._finish(attempt, DeploymentState.FAILED, e.message)
                raise FatalError(f"Rollback to {revision_id} failed: {e.message}", attempt=attempt.to_dict())

            self.history.promote(candidate)
            self._finish(attempt, DeploymentState.SUCCEEDED)
            return ReleaseResult('rollback', attempt)
        finally:
            self._release()

    async def scale(self, desired_count: int, dry_run: bool = False) -> ReleaseResult:
        """Change the desired instance count and wait for convergence"""
        if desired_count < 0:
            raise ValueError("desired_count must not be negative")

        self._claim('scale')
        try:
            snapshot: ServiceSnapshot = await self.platform.describe_service()
            if dry_run:
                logger.info(f"DRY RUN: would scale {snapshot.service_name} to {desired_count} tasks")
                return ReleaseResult('scale', dry_run=True, plan={
                    'service': snapshot.service_name,
                    'current_count': snapshot.desired_count,
                    'desired_count': desired_count,
                })

            revision = self.history.register(snapshot.revision)
            attempt = self._new_attempt(
                'scale', revision, revision,
                self.config.rollback_timeout_seconds,
                desired_count=desired_count,
            )
            self._log(attempt).info(
                f"Scaling {snapshot.service_name} from {snapshot.desired_count} to {desired_count}"
            )
            try:
                await self.platform.update_service(desired_count=desired_count)
            except ControllerError as e:
                self._finish(attempt, DeploymentState.FAILED, e.message)
                raise
        finally:
            self._release()

        await self.await_convergence()
        return ReleaseResult('scale', attempt)

    # ── History ──

    async def describe_history(self, limit: int = 10) -> Dict[str, Any]:
        """Revision chain, recent attempts and the platform's view"""
        await self._stable_revision()
        history = self.history.to_dict()
        snapshot = await self.platform.describe_service()
        history['service'] = snapshot.to_dict()
        history['registered_revisions'] = await self.platform.list_revisions(limit)
        return history
