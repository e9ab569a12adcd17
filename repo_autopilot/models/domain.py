"""
Domain models for the autonomous workflow scheduler.

All models are immutable value types. Issues, workspaces and pull requests are
snapshots taken when the coordinator observed them; a newer observation is a
new instance, never an in-place update. Tagged unions (blockers, abandonment
reasons, work observations) are modelled as one frozen dataclass per variant
plus a ``X | Y | Z`` type alias, so callers discriminate with ``isinstance``.

Example:
    Building the snapshot handed to the state machine on assignment::

        issue = Issue(
            number=42,
            title="Fix login redirect",
            body="Users land on /404 after SSO",
            labels=frozenset({"bug", "autopilot"}),
            priority=Priority.HIGH,
        )
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

AgentId = str
"""Opaque identifier of one worker slot. Equality is by value."""


class Priority(str, Enum):
    """Issue priority, derived from ``priority:*`` labels by the host provider."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_labels(cls, labels: frozenset[str] | set[str]) -> "Priority":
        """Pick the highest ``priority:<level>`` label, defaulting to MEDIUM."""
        found = [p for p in cls if f"priority:{p.value}" in labels]
        if not found:
            return cls.MEDIUM
        order = list(cls)
        return max(found, key=order.index)


class CommentSeverity(str, Enum):
    """Severity attached to a single review comment."""

    NITPICK = "nitpick"
    SUGGESTION = "suggestion"
    REQUIRED_CHANGE = "required_change"
    BLOCKING = "blocking"


@dataclass(frozen=True)
class Issue:
    """Immutable snapshot of a host issue taken at assignment time.

    Every live workflow state carries the same Issue instance it started with.
    """

    number: int
    """Human-readable issue number (e.g., #42)."""

    title: str
    """Issue title, used to derive the pull request title."""

    body: str = ""
    """Issue description in markdown."""

    labels: frozenset[str] = field(default_factory=frozenset)
    """Label names at snapshot time."""

    priority: Priority = Priority.MEDIUM
    """Scheduling priority."""

    estimated_hours: float | None = None
    """Optional effort estimate supplied by the issue author."""

    url: str = ""
    """Web URL of the issue, empty for placeholders."""


PLACEHOLDER_ISSUE = Issue(number=0, title="Unknown Issue")


@dataclass(frozen=True)
class Comment:
    """Issue or pull request comment."""

    id: int
    body: str
    author: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class BranchComparison:
    """How far a work branch is ahead of its base."""

    ahead_by: int
    files_changed: int


@dataclass(frozen=True)
class WorkspaceState:
    """Branch and environment prepared for one assignment.

    Created once per assignment and never mutated; a reassignment gets a
    fresh instance.
    """

    branch_name: str
    base_branch: str = "main"
    workspace_setup: bool = True
    dependencies_installed: bool = True


@dataclass(frozen=True)
class WorkProgress:
    """Accumulated progress while a workflow is InProgress."""

    commits_made: int = 0
    files_changed: int = 0
    tests_written: int = 0
    elapsed_minutes: int = 0
    completion_percentage: int = 0


# Blockers ------------------------------------------------------------------


@dataclass(frozen=True)
class DependencyIssue:
    dependency: str
    error: str


@dataclass(frozen=True)
class TestFailure:
    __test__ = False

    test_name: str
    error: str


@dataclass(frozen=True)
class BuildFailure:
    error: str


@dataclass(frozen=True)
class ExternalService:
    service: str
    status: str


@dataclass(frozen=True)
class MissingRequirements:
    missing: tuple[str, ...]


@dataclass(frozen=True)
class NetworkIssue:
    error: str


BlockerType = DependencyIssue | TestFailure | BuildFailure | ExternalService | MissingRequirements | NetworkIssue


# Review --------------------------------------------------------------------


@dataclass(frozen=True)
class PullRequest:
    """Pull request as seen by the scheduler.

    A draft created by the state machine on CompleteWork has ``number == 0``
    until the host assigns a real number on submission.
    """

    number: int
    title: str
    branch: str
    commits: int = 0
    files_changed: int = 0
    url: str = ""


@dataclass(frozen=True)
class ReviewComment:
    file: str
    line: int | None
    comment: str
    severity: CommentSeverity = CommentSeverity.SUGGESTION


@dataclass(frozen=True)
class Change:
    file: str
    description: str
    automated_fix_available: bool = False


@dataclass(frozen=True)
class ReviewFeedback:
    """One reviewer's verdict on a pull request.

    ``requested_changes`` wins over ``overall_approval``: a reviewer that
    approves while listing changes still sends the workflow back.
    """

    reviewer: str
    comments: tuple[ReviewComment, ...] = ()
    overall_approval: bool = False
    requested_changes: tuple[Change, ...] = ()


@dataclass(frozen=True)
class ConflictInfo:
    file: str
    conflict_markers: int = 0
    auto_resolvable: bool = False


@dataclass(frozen=True)
class CIFailureInfo:
    job_name: str
    step: str
    error: str
    auto_fixable: bool = False


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a merge attempt on the host.

    Exactly one of the following holds: ``merged`` is True, ``conflicts`` is
    non-empty, or ``ci_failures`` is non-empty.
    """

    merged: bool
    sha: str | None = None
    conflicts: tuple[ConflictInfo, ...] = ()
    ci_failures: tuple[CIFailureInfo, ...] = ()


@dataclass(frozen=True)
class CompletedWork:
    """Terminal summary carried by the Merged state."""

    issue: Issue
    commits: int
    files_changed: int
    tests_added: int
    completion_time: datetime


# Abandonment reasons -------------------------------------------------------


@dataclass(frozen=True)
class UnresolvableBlocker:
    blocker: BlockerType


@dataclass(frozen=True)
class TimeoutExceeded:
    max_hours: float


@dataclass(frozen=True)
class RequirementsChanged:
    pass


@dataclass(frozen=True)
class DependencyIssues:
    pass


@dataclass(frozen=True)
class CriticalFailure:
    error: str


AbandonmentReason = UnresolvableBlocker | TimeoutExceeded | RequirementsChanged | DependencyIssues | CriticalFailure


def describe_reason(reason: AbandonmentReason) -> str:
    """Render an abandonment reason for operators."""
    if isinstance(reason, UnresolvableBlocker):
        return f"Unresolvable blocker: {type(reason.blocker).__name__}"
    if isinstance(reason, TimeoutExceeded):
        return f"Timeout exceeded after {reason.max_hours:g} hours"
    if isinstance(reason, RequirementsChanged):
        return "Requirements changed"
    if isinstance(reason, DependencyIssues):
        return "Dependency issues"
    if isinstance(reason, CriticalFailure):
        return f"Critical failure: {reason.error}"
    return str(reason)


# Work observation ----------------------------------------------------------


@dataclass(frozen=True)
class ProgressObserved:
    """New commits or files seen on the work branch since the last check."""

    commits: int
    files_changed: int


@dataclass(frozen=True)
class BlockerObserved:
    blocker: BlockerType


@dataclass(frozen=True)
class WorkFinished:
    tests_written: int = 0


WorkObservation = ProgressObserved | BlockerObserved | WorkFinished


@dataclass(frozen=True)
class InconsistencyReport:
    """Result of an external bookkeeping repair pass.

    Returned by an InconsistencyRecovery backend on AutoRecover. Its content
    never changes the workflow state.
    """

    recovered: tuple[str, ...] = ()
    failed: tuple[tuple[str, str], ...] = ()
    skipped: tuple[str, ...] = ()
    total_inconsistencies: int = 0
    duration_ms: int = 0
    recovered_at: datetime | None = None

    @property
    def recovery_rate(self) -> float:
        """Percentage of inconsistencies repaired."""
        if self.total_inconsistencies == 0:
            return 100.0
        return len(self.recovered) / self.total_inconsistencies * 100.0
