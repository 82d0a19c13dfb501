"""
Routing: failover decisions and DNS reconciliation.
"""

from .dns import ApplyResult, DNSProvider, DNSReconciler, Route53Provider, dns_target
from .engine import FailbackPolicy, ManualOverride, RegionPair, decide

__all__ = [
    'ApplyResult',
    'DNSProvider',
    'DNSReconciler',
    'FailbackPolicy',
    'ManualOverride',
    'RegionPair',
    'Route53Provider',
    'decide',
    'dns_target',
]
