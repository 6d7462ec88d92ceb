"""Exception types raised by phaseflow components."""

from __future__ import annotations


class PhaseflowError(Exception):
    """Base class for all phaseflow errors."""


class LockTimeout(PhaseflowError):
    """A named lock could not be acquired within the allowed attempts."""

    def __init__(self, lock_name: str, attempts: int) -> None:
        super().__init__(
            f"Failed to acquire lock for {lock_name} after {attempts} attempts"
        )
        self.lock_name = lock_name
        self.attempts = attempts


class StateLogError(PhaseflowError):
    """A git plumbing operation on the state reference failed."""


class InvalidTransition(PhaseflowError):
    """A run attempted a status change the state machine does not allow."""


class CircuitOpenError(PhaseflowError):
    """The circuit breaker for a component is open."""

    def __init__(self, component: str) -> None:
        super().__init__(f"Circuit breaker for '{component}' is open")
        self.component = component


class UnknownPhaseError(PhaseflowError):
    """No handler is registered under the requested id."""

    def __init__(self, handler_id: str) -> None:
        super().__init__(f"Unknown phase handler: {handler_id}")
        self.handler_id = handler_id


class CommitError(PhaseflowError):
    """Base class for commit handler failures."""


class RetryableCommitError(CommitError):
    """Transient failure (lock contention, timeouts, busy repository)."""


class NonRetryableCommitError(CommitError):
    """Commit failure that retrying cannot fix."""


class CommitValidationError(CommitError):
    """Commit message failed validation and was not bypassed."""

    def __init__(self, message: str, report: str = "") -> None:
        super().__init__(message)
        self.report = report


class CommitVerificationError(CommitError):
    """A commit could not be verified."""


class RollbackRefusedError(CommitError):
    """Rollback is unsafe because the commit is not the current tip."""
