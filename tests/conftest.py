"""Pytest configuration and shared fixtures."""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.models.domain import (
    AgentId,
    BranchComparison,
    Change,
    Issue,
    MergeResult,
    Priority,
    ProgressObserved,
    PullRequest,
    WorkObservation,
    WorkProgress,
)
from repo_autopilot.providers.base import HostProvider, WorkObserver


class FakeClock:
    """Manually advanced clock for time-box tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedObserver(WorkObserver):
    """Returns a fixed sequence of observations, then repeats the last one."""

    def __init__(self, observations: Iterable[WorkObservation], changes_applied: bool = True) -> None:
        self.observations = list(observations)
        self.changes_applied = changes_applied
        self.observed: list[WorkProgress] = []
        self.change_requests: list[tuple[Change, ...]] = []

    async def observe(self, issue: Issue, agent: AgentId, progress: WorkProgress) -> WorkObservation:
        self.observed.append(progress)
        if len(self.observations) > 1:
            return self.observations.pop(0)
        return self.observations[0] if self.observations else ProgressObserved(commits=0, files_changed=0)

    async def apply_requested_changes(self, issue: Issue, pr: PullRequest, changes: tuple[Change, ...]) -> bool:
        self.change_requests.append(changes)
        return self.changes_applied


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterable[None]:
    """Undo logging configuration made by a test, such as a CLI invocation."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_issue() -> Issue:
    """Sample issue for testing."""
    return Issue(
        number=42,
        title="Fix login redirect",
        body="Users land on /404 after SSO.",
        labels=frozenset({"autopilot:ready", "priority:high"}),
        priority=Priority.HIGH,
        url="https://github.com/test-owner/test-repo/issues/42",
    )


@pytest.fixture
def settings(tmp_path: Path) -> AutopilotSettings:
    """Settings with short waits and a temporary checkpoint directory."""
    return AutopilotSettings(
        git_provider={
            "provider_type": "github",
            "base_url": "https://api.github.com",
            "api_token": "test-token",
        },
        repository={
            "owner": "test-owner",
            "name": "test-repo",
            "default_branch": "main",
        },
        workflow={
            "max_work_hours": 8.0,
            "idle_poll_seconds": 1.0,
            "progress_poll_seconds": 1.0,
            "review_poll_seconds": 1.0,
            "escalation_wait_seconds": 1.0,
            "monitoring_interval_seconds": 3600.0,
            "checkpoint_directory": str(tmp_path / "checkpoints"),
        },
    )


@pytest.fixture
def mock_host(sample_issue: Issue) -> AsyncMock:
    """Host that serves one ready issue and merges cleanly."""
    host = AsyncMock(spec=HostProvider)
    host.name = "test-host"
    host.get_issues.return_value = [sample_issue]
    host.get_issue.return_value = sample_issue
    host.get_comments.return_value = []
    host.create_branch.return_value = "abc123"
    host.compare_branches.return_value = BranchComparison(ahead_by=0, files_changed=0)
    host.create_pull_request.return_value = PullRequest(
        number=7,
        title="Fix Fix login redirect",
        branch="agent-1/issue-42",
        url="https://github.com/test-owner/test-repo/pull/7",
    )
    host.get_reviews.return_value = []
    host.merge_pull_request.return_value = MergeResult(merged=True, sha="def456")
    return host


@pytest.fixture
def make_observer() -> type[ScriptedObserver]:
    """Factory for observers that replay a fixed list of observations."""
    return ScriptedObserver
