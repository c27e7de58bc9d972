"""
Engine error taxonomy.

Verification failures, timeouts and inactivity are not errors: they are
handled inside the engine and escalate. These exceptions cover what the
caller must react to.
"""


class AttendanceError(Exception):
    """Base class for all engine errors."""


class InvalidTransitionError(AttendanceError):
    """Requested transition is not legal from the session's current status."""

    def __init__(self, action: str, status):
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} while {getattr(status, 'value', status)}")


class VerificationRequiredError(AttendanceError):
    """Check-in attempted without a passing liveness + face-match decision."""


class ChallengeError(AttendanceError):
    """Answer submitted for a challenge that is not outstanding."""


class InfrastructureError(AttendanceError):
    """A collaborator (store, incident sink) failed. State was not advanced."""
