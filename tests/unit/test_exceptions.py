"""Tests for repo_autopilot/exceptions.py."""

from repo_autopilot.engine.workflow import StartWork
from repo_autopilot.exceptions import (
    AutopilotError,
    ConfigurationError,
    ExternalServiceError,
    GitOperationError,
    InvalidTransitionError,
    RecoveryError,
    WorkspaceError,
)


class TestExceptionHierarchy:
    def test_all_derive_from_base(self):
        for exc_class in (
            ConfigurationError,
            InvalidTransitionError,
            WorkspaceError,
            RecoveryError,
            GitOperationError,
            ExternalServiceError,
        ):
            assert issubclass(exc_class, AutopilotError)

    def test_invalid_transition_message(self):
        error = InvalidTransitionError(StartWork(), "Merged")

        assert str(error) == "Invalid transition: StartWork from state Merged"
        assert error.state == "Merged"
        assert isinstance(error.event, StartWork)

    def test_external_service_error_includes_status(self):
        error = ExternalServiceError("Not found", status_code=404, endpoint="issues/1")

        assert str(error) == "Not found (HTTP 404)"
        assert error.message == "Not found"
        assert error.endpoint == "issues/1"

    def test_git_operation_error(self):
        error = GitOperationError("rejected", operation="push")

        assert error.operation == "push"
        assert GitOperationError("x").operation == "unknown"
