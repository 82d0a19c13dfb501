"""
Health Probe Client

Issues a single bounded-timeout readiness check against a region endpoint.
Failures of any kind are reported as `ok=False`; retry policy belongs to the
caller.
"""

import asyncio
import logging
import time
from typing import Union

import requests

from ..config import HealthCheckConfig
from ..models import ProbeResult, Region

logger = logging.getLogger(__name__)


def build_health_url(endpoint: str, path: str) -> str:
    """Join an endpoint (bare host or URL) with the readiness path"""
    if endpoint.startswith(("http://", "https://")):
        base = endpoint.rstrip('/')
    else:
        base = f"https://{endpoint.rstrip('/')}"
    if not path:
        return base
    return f"{base}/{path.lstrip('/')}"


class HealthProbeClient:
    """Performs readiness probes on regional endpoints"""

    def __init__(self, config: HealthCheckConfig):
        self.config = config

    async def probe(self, target: Union[Region, str]) -> ProbeResult:
        """Probe a region (or raw endpoint) once"""
        endpoint = target.endpoint if isinstance(target, Region) else target
        url = build_health_url(endpoint, self.config.path)
        timeout = self.config.timeout_seconds
        start = time.monotonic()

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    requests.get,
                    url,
                    timeout=timeout,
                    verify=self.config.verify_tls,
                ),
                timeout=timeout,
            )
            latency_ms = (time.monotonic() - start) * 1000
            ok = response.status_code == self.config.expected_status_code

            if not ok:
                logger.debug(f"Probe {url} returned HTTP {response.status_code}")

            return ProbeResult(
                ok=ok,
                latency_ms=latency_ms,
                status_code=response.status_code,
                error=None if ok else f"HTTP {response.status_code}",
            )

        except (asyncio.TimeoutError, requests.exceptions.Timeout):
            return ProbeResult(ok=False, latency_ms=timeout * 1000, error='timeout')
        except requests.exceptions.RequestException as e:
            latency_ms = (time.monotonic() - start) * 1000
            return ProbeResult(ok=False, latency_ms=latency_ms, error=str(e))
        except Exception as e:
            latency_ms = (time.monotonic() - start) * 1000
            logger.warning(f"Unexpected probe failure for {url}: {e}")
            return ProbeResult(ok=False, latency_ms=latency_ms, error=str(e))
