"""Custom exception hierarchy for the repo-autopilot scheduler.

Exception Hierarchy:
    AutopilotError (base)
    ├── ConfigurationError
    ├── InvalidTransitionError
    ├── WorkspaceError
    ├── RecoveryError
    ├── GitOperationError
    └── ExternalServiceError

Transition errors are raised synchronously by the workflow state machine and
are always recoverable by the caller choosing a different event. Collaborator
errors (GitOperationError, ExternalServiceError) are converted into recovery
error types by the coordinator and never escape it.

Example Usage:
    >>> from repo_autopilot.exceptions import InvalidTransitionError
    >>> try:
    ...     machine.handle(StartWork())
    ... except InvalidTransitionError as e:
    ...     log.warning("transition_rejected", event_name=type(e.event).__name__)
"""

from typing import Any


class AutopilotError(Exception):
    """Base exception for all repo-autopilot errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(AutopilotError):
    """Configuration file is missing, unreadable or invalid."""

    pass


class InvalidTransitionError(AutopilotError):
    """The state machine has no transition for the given (state, event) pair.

    The machine state is left untouched when this is raised.

    Attributes:
        event: The rejected event
        state: Name of the state the machine was in
    """

    def __init__(self, event: Any, state: str | None = None) -> None:
        self.event = event
        self.state = state
        event_name = type(event).__name__
        super().__init__(f"Invalid transition: {event_name} from state {state or 'None'}")


class WorkspaceError(AutopilotError):
    """Workspace could not be prepared or is missing required identity."""

    pass


class RecoveryError(AutopilotError):
    """The recovery subsystem itself failed.

    This is distinct from a recovery attempt that ran and did not fix the
    problem; those are reported through RecoveryAttempt records.
    """

    pass


class GitOperationError(AutopilotError):
    """Git operation errors (push, pull, fetch, merge, rebase, branch).

    Attributes:
        operation: Git verb that failed
    """

    def __init__(self, message: str, operation: str = "unknown") -> None:
        self.operation = operation
        super().__init__(message)


class ExternalServiceError(AutopilotError):
    """Host API communication errors.

    Attributes:
        status_code: HTTP status code (if applicable)
        endpoint: Endpoint or operation that failed
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        endpoint: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            endpoint: Endpoint or operation that failed
        """
        self.status_code = status_code
        self.endpoint = endpoint

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message
