"""
Disaster-recovery drill.
"""

from .datastore import DynamoDBDataStore, ReplicatedDataStore
from .disaster_recovery import DisasterRecoveryDrill, DrillReport, DrillStep
from .fault_injection import TargetGroupFaultInjector

__all__ = [
    'DisasterRecoveryDrill',
    'DrillReport',
    'DrillStep',
    'DynamoDBDataStore',
    'ReplicatedDataStore',
    'TargetGroupFaultInjector',
]
