"""
regionctl: multi-region availability and release controller.

Decides from live health which of two regions receives traffic, applies
that decision to DNS, and drives rolling deployments with automatic
rollback.
"""

from .config import ControllerConfig, load_config
from .errors import ControllerError, Outcome
from .orchestrator import OperationResult, Orchestrator

__version__ = '1.0.0'

__all__ = [
    'ControllerConfig',
    'ControllerError',
    'OperationResult',
    'Orchestrator',
    'Outcome',
    'load_config',
]
