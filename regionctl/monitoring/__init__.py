"""
Metrics and alerting for the controller.
"""

from .alerting import Alert, AlertManager
from .metrics import ControllerMetrics

__all__ = ['Alert', 'AlertManager', 'ControllerMetrics']
