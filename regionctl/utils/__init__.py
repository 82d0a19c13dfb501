"""
Utility modules for the controller.
"""

from .logger import ControllerLoggerAdapter, setup_logging
from .retry import PollResult, PollStatus, call_with_backoff, poll_until

__all__ = [
    'ControllerLoggerAdapter',
    'setup_logging',
    'PollResult',
    'PollStatus',
    'call_with_backoff',
    'poll_until',
]
