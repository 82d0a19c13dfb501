"""
Post-Deploy Verifier

Repeated readiness probes after a rollout. Succeeds on the first healthy
probe and fails only once every retry is exhausted, so brief warm-up after
a deployment is tolerated.
"""

import asyncio
import logging
import time
from typing import Optional

from ..health.probe import HealthProbeClient

logger = logging.getLogger(__name__)


class PostDeployVerifier:
    """Health-gated acceptance check for a rollout"""

    def __init__(self, probe_client: HealthProbeClient):
        self.probe_client = probe_client

    async def verify(
        self,
        endpoint: str,
        retries: int,
        interval: float,
        deadline: Optional[float] = None
    ) -> bool:
        """
        Probe `endpoint` up to `retries` times, `interval` seconds apart.

        Args:
            endpoint: Endpoint to probe
            retries: Maximum number of probes
            interval: Delay between probes in seconds
            deadline: Optional `time.monotonic()` deadline; expiry fails the check,
                including a probe that completes after it

        Returns:
            True on the first successful probe
        """
        for attempt in range(1, retries + 1):
            if deadline is not None and time.monotonic() >= deadline:
                logger.error(f"Health verification deadline passed after {attempt - 1} attempts")
                return False

            logger.info(f"Health check attempt {attempt}/{retries} for {endpoint}")
            result = await self.probe_client.probe(endpoint)
            if deadline is not None and time.monotonic() >= deadline:
                logger.error(f"Health verification deadline passed during attempt {attempt}")
                return False
            if result.ok:
                logger.info(f"Health check passed for {endpoint}")
                return True

            logger.warning(f"Health check failed for {endpoint}: {result.error}")
            if attempt < retries:
                delay = interval
                if deadline is not None:
                    delay = min(delay, max(deadline - time.monotonic(), 0))
                await asyncio.sleep(delay)

        logger.error(f"Health checks failed after {retries} attempts")
        return False
