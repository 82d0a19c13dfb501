"""
Controller Errors

Exception taxonomy for the availability and release controller, and the
operator-facing outcome each class of failure maps to.
"""

from enum import Enum


class Outcome(Enum):
    """Result classification reported to the operator"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"  # recoverable, safe to retry later
    MANUAL_INTERVENTION = "manual_intervention"  # fatal, needs an operator decision

    @property
    def exit_code(self) -> int:
        return {
            Outcome.SUCCEEDED: 0,
            Outcome.FAILED: 1,
            Outcome.MANUAL_INTERVENTION: 2,
        }[self]


class ControllerError(Exception):
    """Base class for all controller errors"""
    outcome = Outcome.FAILED

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(ControllerError):
    """Invalid or incomplete controller configuration"""


class TransientError(ControllerError):
    """Network timeout or throttled API call; retryable"""


class PlatformError(ControllerError):
    """Non-retryable error returned by an external collaborator"""


class DNSSubmissionError(ControllerError):
    """DNS change could not be submitted after bounded retries"""


class ConvergenceError(ControllerError):
    """Deployment or scaling did not stabilise before its deadline"""


class ArtifactNotFoundError(ControllerError):
    """Candidate artifact does not exist in the image registry"""


class ConflictError(ControllerError):
    """Mutating operation requested while another is in progress"""


class UnsafeStateError(ControllerError):
    """Both regions down, or promotion of a known-bad target without force"""
    outcome = Outcome.MANUAL_INTERVENTION


class FatalError(ControllerError):
    """Compensating action itself failed; no further automatic remediation"""
    outcome = Outcome.MANUAL_INTERVENTION
