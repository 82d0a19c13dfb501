"""
Fault injection for the disaster-recovery drill: a region is failed by
pointing its load balancer target group health check at a path that does
not answer, and restored by pointing it back at the readiness path.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import boto3

from ..config import RegionConfig
from ..errors import PlatformError
from ..utils.aws import call_aws

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetGroupHealthCheck:
    """Target group health check settings"""
    path: str
    interval_seconds: int
    healthy_threshold: int
    unhealthy_threshold: int


FAILING_HEALTH_CHECK = TargetGroupHealthCheck('/health/fail', 15, 2, 2)
NORMAL_HEALTH_CHECK = TargetGroupHealthCheck('/health/readiness', 30, 3, 3)


class TargetGroupFaultInjector:
    """Rewrites a region's target group health check through ELBv2"""

    def __init__(self, session: Optional[boto3.session.Session] = None):
        self.session = session or boto3.session.Session()
        self._clients: Dict[str, object] = {}

    def _client(self, aws_region: str):
        if aws_region not in self._clients:
            self._clients[aws_region] = self.session.client('elbv2', region_name=aws_region)
        return self._clients[aws_region]

    async def find_target_group(self, region: RegionConfig) -> str:
        response = await call_aws(
            self._client(region.aws_region).describe_target_groups,
            Names=[region.target_group_name]
        )
        groups = response.get('TargetGroups', [])
        if not groups:
            raise PlatformError(
                f"Cannot find target group {region.target_group_name} in {region.id}",
                region=region.id,
            )
        return groups[0]['TargetGroupArn']

    async def apply(self, region: RegionConfig, health_check: TargetGroupHealthCheck) -> str:
        """Set the target group health check; returns the target group ARN"""
        arn = await self.find_target_group(region)
        await call_aws(
            self._client(region.aws_region).modify_target_group,
            TargetGroupArn=arn,
            HealthCheckPath=health_check.path,
            HealthCheckIntervalSeconds=health_check.interval_seconds,
            HealthyThresholdCount=health_check.healthy_threshold,
            UnhealthyThresholdCount=health_check.unhealthy_threshold
        )
        logger.info(f"Set health check path of {arn} to {health_check.path}")
        return arn

    async def inject_failure(self, region: RegionConfig, path: str = FAILING_HEALTH_CHECK.path) -> str:
        return await self.apply(region, TargetGroupHealthCheck(
            path,
            FAILING_HEALTH_CHECK.interval_seconds,
            FAILING_HEALTH_CHECK.healthy_threshold,
            FAILING_HEALTH_CHECK.unhealthy_threshold,
        ))

    async def restore(self, region: RegionConfig, path: str = NORMAL_HEALTH_CHECK.path) -> str:
        return await self.apply(region, TargetGroupHealthCheck(
            path,
            NORMAL_HEALTH_CHECK.interval_seconds,
            NORMAL_HEALTH_CHECK.healthy_threshold,
            NORMAL_HEALTH_CHECK.unhealthy_threshold,
        ))
