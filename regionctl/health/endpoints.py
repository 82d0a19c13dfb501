"""
Endpoint resolution for regions configured by load balancer name.
"""

import asyncio
import logging
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import RegionConfig
from ..errors import PlatformError

logger = logging.getLogger(__name__)


class LoadBalancerResolver:
    """Looks up a region's public DNS name through the ELBv2 API"""

    def __init__(self, session: Optional[boto3.session.Session] = None):
        self.session = session or boto3.session.Session()
        self._clients: Dict[str, object] = {}

    def _client(self, aws_region: str):
        if aws_region not in self._clients:
            self._clients[aws_region] = self.session.client('elbv2', region_name=aws_region)
        return self._clients[aws_region]

    async def resolve(self, region: RegionConfig) -> str:
        """Return the configured endpoint, or the load balancer's DNS name"""
        if region.endpoint:
            return region.endpoint

        client = self._client(region.aws_region)
        try:
            response = await asyncio.to_thread(
                client.describe_load_balancers,
                Names=[region.load_balancer_name]
            )
        except (ClientError, BotoCoreError) as e:
            raise PlatformError(
                f"Could not find load balancer {region.load_balancer_name} "
                f"in region {region.id}: {e}",
                region=region.id,
            )

        balancers = response.get('LoadBalancers', [])
        if not balancers or not balancers[0].get('DNSName'):
            raise PlatformError(
                f"Load balancer {region.load_balancer_name} has no DNS name in {region.id}",
                region=region.id,
            )

        dns_name = balancers[0]['DNSName']
        logger.info(f"Resolved {region.id} endpoint to {dns_name}")
        return dns_name
