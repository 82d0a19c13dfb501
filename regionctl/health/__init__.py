"""
Region health: readiness probes, endpoint resolution and classification.
"""

from .endpoints import LoadBalancerResolver
from .monitor import RegionHealthMonitor, classify_region
from .probe import HealthProbeClient, build_health_url

__all__ = [
    'HealthProbeClient',
    'LoadBalancerResolver',
    'RegionHealthMonitor',
    'build_health_url',
    'classify_region',
]
