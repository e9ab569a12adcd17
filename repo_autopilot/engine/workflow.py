"""
Workflow state machine for one autonomous unit of work.

Models the lifecycle issue -> branch -> review -> merge/abandon as a pure
transition function over frozen state and event dataclasses. The machine owns
no I/O: the coordinator reads its state, performs side effects, and feeds the
resulting event back through :meth:`WorkflowMachine.handle`.

Each state variant repeats the fields it needs (``issue``, ``agent``, ``pr``)
instead of sharing a context object, so a state that has no pull request
simply has no ``pr`` attribute.

Lifecycle:
    None --AssignAgent--> Unassigned | Assigned --StartWork--> InProgress
    InProgress <--> Blocked
    InProgress --CompleteWork--> ReadyForReview --SubmitForReview--> UnderReview
    UnderReview --ReviewReceived--> ChangesRequested | Approved
    Approved <--> MergeConflict | CIFailure
    Approved --MergeCompleted--> Merged
    any live state --ForceAbandon--> Abandoned
    Merged | Abandoned --Reset--> None

Timeouts are enforced here, not by the caller: before any event is applied
the elapsed time since assignment is checked, and an expired workflow moves
to ``Abandoned(TimeoutExceeded)`` no matter which event arrived.

Thread Safety:
    The machine is not synchronized. The coordinator is its single owner and
    serializes access behind an asyncio.Lock.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from repo_autopilot.exceptions import InvalidTransitionError, WorkspaceError
from repo_autopilot.models.domain import (
    PLACEHOLDER_ISSUE,
    AbandonmentReason,
    AgentId,
    BlockerType,
    BuildFailure,
    Change,
    CIFailureInfo,
    CompletedWork,
    ConflictInfo,
    DependencyIssue,
    ExternalService,
    InconsistencyReport,
    Issue,
    MissingRequirements,
    NetworkIssue,
    PullRequest,
    ReviewFeedback,
    TestFailure,
    TimeoutExceeded,
    WorkProgress,
    WorkspaceState,
)

log = structlog.get_logger(__name__)


# States --------------------------------------------------------------------


@dataclass(frozen=True)
class Unassigned:
    """Issue claimed but the workspace is still being prepared."""

    issue: Issue


@dataclass(frozen=True)
class Assigned:
    """Workspace ready; the agent has not started yet."""

    issue: Issue
    agent: AgentId
    workspace: WorkspaceState


@dataclass(frozen=True)
class InProgress:
    """Agent is working on the issue."""

    issue: Issue
    agent: AgentId
    progress: WorkProgress


@dataclass(frozen=True)
class Blocked:
    """Work stopped on a blocker.

    ``progress`` is the progress at the moment the blocker was hit, so that
    resuming keeps the commit and file counters.
    """

    issue: Issue
    agent: AgentId
    blocker: BlockerType
    progress: WorkProgress = field(default_factory=WorkProgress)


@dataclass(frozen=True)
class ReadyForReview:
    """Pull request opened, waiting for reviewers."""

    issue: Issue
    agent: AgentId
    pr: PullRequest


@dataclass(frozen=True)
class UnderReview:
    """Reviews are being collected on the pull request."""

    issue: Issue
    agent: AgentId
    pr: PullRequest
    feedback: tuple[ReviewFeedback, ...] = ()


@dataclass(frozen=True)
class ChangesRequested:
    """Reviewers asked for changes the agent must make."""

    issue: Issue
    agent: AgentId
    pr: PullRequest
    required_changes: tuple[Change, ...]


@dataclass(frozen=True)
class Approved:
    """Pull request approved and ready to merge."""

    issue: Issue
    agent: AgentId
    pr: PullRequest


@dataclass(frozen=True)
class MergeConflict:
    """Merge blocked by conflicts with the base branch."""

    issue: Issue
    agent: AgentId
    pr: PullRequest
    conflicts: tuple[ConflictInfo, ...]


@dataclass(frozen=True)
class CIFailure:
    """Checks failed on the pull request."""

    issue: Issue
    agent: AgentId
    pr: PullRequest
    failures: tuple[CIFailureInfo, ...]


@dataclass(frozen=True)
class Merged:
    """Terminal: the work landed."""

    issue: Issue
    work: CompletedWork


@dataclass(frozen=True)
class Abandoned:
    """Terminal: the workflow gave up on the issue."""

    issue: Issue
    reason: AbandonmentReason


WorkflowState = (
    Unassigned
    | Assigned
    | InProgress
    | Blocked
    | ReadyForReview
    | UnderReview
    | ChangesRequested
    | Approved
    | MergeConflict
    | CIFailure
    | Merged
    | Abandoned
)

ALL_STATES: tuple[type, ...] = (
    Unassigned,
    Assigned,
    InProgress,
    Blocked,
    ReadyForReview,
    UnderReview,
    ChangesRequested,
    Approved,
    MergeConflict,
    CIFailure,
    Merged,
    Abandoned,
)

TERMINAL_STATES: tuple[type, ...] = (Merged, Abandoned)


def is_terminal(state: WorkflowState | None) -> bool:
    """Return True for Merged and Abandoned."""
    return isinstance(state, TERMINAL_STATES)


def is_live(state: WorkflowState | None) -> bool:
    """Return True for any state that is neither initial nor terminal."""
    return state is not None and not is_terminal(state)


def state_name(state: WorkflowState | None) -> str | None:
    return type(state).__name__ if state is not None else None


# Events --------------------------------------------------------------------


@dataclass(frozen=True)
class AssignAgent:
    """Bind an agent to an issue.

    ``issue`` and ``workspace`` are optional; a placeholder issue and a
    branch derived from the agent are used when they are omitted.
    """

    agent: AgentId
    workspace_ready: bool
    issue: Issue | None = None
    workspace: WorkspaceState | None = None


@dataclass(frozen=True)
class WorkspaceReady:
    pass


@dataclass(frozen=True)
class StartWork:
    pass


@dataclass(frozen=True)
class MakeProgress:
    commits: int
    files_changed: int
    tests_written: int = 0


@dataclass(frozen=True)
class EncounterBlocker:
    blocker: BlockerType


@dataclass(frozen=True)
class ResolveBlocker:
    pass


@dataclass(frozen=True)
class CompleteWork:
    pass


@dataclass(frozen=True)
class SubmitForReview:
    pr: PullRequest


@dataclass(frozen=True)
class ReviewReceived:
    feedback: tuple[ReviewFeedback, ...]


@dataclass(frozen=True)
class RequestChanges:
    changes: tuple[Change, ...]


@dataclass(frozen=True)
class ApprovalReceived:
    pass


@dataclass(frozen=True)
class MergeConflictDetected:
    conflicts: tuple[ConflictInfo, ...]


@dataclass(frozen=True)
class CIFailureDetected:
    failures: tuple[CIFailureInfo, ...]


@dataclass(frozen=True)
class ConflictsResolved:
    pass


@dataclass(frozen=True)
class CIFixed:
    pass


@dataclass(frozen=True)
class MergeCompleted:
    work: CompletedWork


@dataclass(frozen=True)
class AutoRecover:
    """Record an external bookkeeping repair. Never changes the state."""

    report: InconsistencyReport | None = None


@dataclass(frozen=True)
class ForceAbandon:
    reason: AbandonmentReason


@dataclass(frozen=True)
class Reset:
    pass


WorkflowEvent = (
    AssignAgent
    | WorkspaceReady
    | StartWork
    | MakeProgress
    | EncounterBlocker
    | ResolveBlocker
    | CompleteWork
    | SubmitForReview
    | ReviewReceived
    | RequestChanges
    | ApprovalReceived
    | MergeConflictDetected
    | CIFailureDetected
    | ConflictsResolved
    | CIFixed
    | MergeCompleted
    | AutoRecover
    | ForceAbandon
    | Reset
)


# Records -------------------------------------------------------------------


@dataclass(frozen=True)
class StateTransitionRecord:
    """One entry of the append-only transition history."""

    from_state: WorkflowState | None
    to_state: WorkflowState | None
    event: WorkflowEvent
    timestamp: datetime
    duration_ms: float

    @property
    def event_name(self) -> str:
        return type(self.event).__name__


@dataclass(frozen=True)
class StatusReport:
    """Read-only operator snapshot of one workflow."""

    current_state: str | None
    agent_id: AgentId | None
    uptime_minutes: int
    can_continue: bool
    timeout_in_minutes: int
    transitions_count: int
    last_transition: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_state": self.current_state,
            "agent_id": self.agent_id,
            "uptime_minutes": self.uptime_minutes,
            "can_continue": self.can_continue,
            "timeout_in_minutes": self.timeout_in_minutes,
            "transitions_count": self.transitions_count,
            "last_transition": self.last_transition.isoformat() if self.last_transition else None,
        }


BLOCKER_CONTINUATION: dict[type, bool] = {
    TestFailure: True,
    BuildFailure: True,
    NetworkIssue: True,
    DependencyIssue: False,
    ExternalService: False,
    MissingRequirements: False,
}


def branch_name_for(agent: AgentId, issue: Issue) -> str:
    """Work branch used for an agent's assignment."""
    return f"{agent}/issue-{issue.number}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WorkflowMachine:
    """Finite-state machine for one autonomous workflow instance.

    The machine starts with no state. ``handle`` either applies a transition
    (appending exactly one history record) or raises InvalidTransitionError
    and leaves everything untouched.

    Args:
        max_work_hours: Hours after assignment at which the workflow is
            abandoned with TimeoutExceeded
        resume_completion_percentage: Completion percentage set when work
            resumes after a resolved blocker
        base_branch: Base branch for workspaces derived by the machine
        clock: Callable returning the current aware datetime
    """

    def __init__(
        self,
        max_work_hours: float = 8.0,
        resume_completion_percentage: int = 50,
        base_branch: str = "main",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_work_hours = max_work_hours
        self.resume_completion_percentage = resume_completion_percentage
        self.base_branch = base_branch
        self._clock = clock or _utcnow

        self.state: WorkflowState | None = None
        self.agent_id: AgentId | None = None
        self.start_time: datetime | None = None
        self._history: list[StateTransitionRecord] = []

    @property
    def history(self) -> tuple[StateTransitionRecord, ...]:
        """Transition history in application order."""
        return tuple(self._history)

    @property
    def issue(self) -> Issue | None:
        return getattr(self.state, "issue", None)

    def elapsed(self) -> timedelta:
        if self.start_time is None:
            return timedelta(0)
        return self._clock() - self.start_time

    def timed_out(self) -> bool:
        """True when a live workflow has used up its time box."""
        if self.start_time is None or not is_live(self.state):
            return False
        return self.elapsed() >= timedelta(hours=self.max_work_hours)

    def handle(self, event: WorkflowEvent) -> WorkflowState | None:
        """Apply an event and return the new state.

        Raises:
            InvalidTransitionError: No transition exists for the current
                state and this event
            WorkspaceError: WorkspaceReady arrived with no agent bound
        """
        started = time.perf_counter()
        previous = self.state

        if self.timed_out():
            reason = TimeoutExceeded(max_hours=self.max_work_hours)
            log.warning(
                "workflow_timeout",
                state=state_name(previous),
                discarded_event=type(event).__name__,
                max_hours=self.max_work_hours,
            )
            applied: WorkflowEvent = ForceAbandon(reason=reason)
            new_state: WorkflowState | None = Abandoned(issue=self.issue or PLACEHOLDER_ISSUE, reason=reason)
        else:
            applied = event
            new_state = self._next_state(previous, event)

        if isinstance(applied, AssignAgent):
            self.agent_id = applied.agent
            self.start_time = self._clock()
        elif isinstance(applied, Reset):
            self.agent_id = None
            self.start_time = None

        record = StateTransitionRecord(
            from_state=previous,
            to_state=new_state,
            event=applied,
            timestamp=self._clock(),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        self._history.append(record)
        self.state = new_state

        log.info(
            "state_transition",
            from_state=state_name(previous),
            to_state=state_name(new_state),
            event_name=record.event_name,
            agent_id=self.agent_id,
        )
        return new_state

    def can_continue_autonomously(self) -> bool:
        """Whether the coordinator may keep driving this workflow."""
        if is_terminal(self.state):
            return False
        if isinstance(self.state, Blocked):
            return BLOCKER_CONTINUATION.get(type(self.state.blocker), False)
        return not self.timed_out()

    def status_report(self) -> StatusReport:
        uptime = int(self.elapsed().total_seconds() // 60)
        remaining = int(self.max_work_hours * 60) - uptime
        last = self._history[-1].timestamp if self._history else None
        return StatusReport(
            current_state=state_name(self.state),
            agent_id=self.agent_id,
            uptime_minutes=uptime,
            can_continue=self.can_continue_autonomously(),
            timeout_in_minutes=max(0, remaining),
            transitions_count=len(self._history),
            last_transition=last,
        )

    def _elapsed_minutes(self) -> int:
        return int(self.elapsed().total_seconds() // 60)

    def _next_state(self, state: WorkflowState | None, event: WorkflowEvent) -> WorkflowState | None:
        if state is None:
            if isinstance(event, AssignAgent):
                return self._assign(event)
            raise InvalidTransitionError(event, None)

        if is_terminal(state):
            if isinstance(event, Reset):
                return None
            raise InvalidTransitionError(event, state_name(state))

        # Valid from every live state
        if isinstance(event, ForceAbandon):
            return Abandoned(issue=state.issue, reason=event.reason)
        if isinstance(event, AutoRecover):
            return state

        if isinstance(state, Unassigned) and isinstance(event, WorkspaceReady):
            if self.agent_id is None:
                raise WorkspaceError("WorkspaceReady received with no agent assigned")
            return Assigned(
                issue=state.issue,
                agent=self.agent_id,
                workspace=self._workspace_for(self.agent_id, state.issue),
            )

        if isinstance(state, Assigned) and isinstance(event, StartWork):
            return InProgress(issue=state.issue, agent=state.agent, progress=WorkProgress())

        if isinstance(state, InProgress):
            if isinstance(event, MakeProgress):
                progress = state.progress
                return replace(
                    state,
                    progress=replace(
                        progress,
                        commits_made=progress.commits_made + event.commits,
                        files_changed=progress.files_changed + event.files_changed,
                        tests_written=progress.tests_written + event.tests_written,
                        elapsed_minutes=self._elapsed_minutes(),
                    ),
                )
            if isinstance(event, EncounterBlocker):
                return Blocked(issue=state.issue, agent=state.agent, blocker=event.blocker, progress=state.progress)
            if isinstance(event, CompleteWork):
                draft = PullRequest(
                    number=0,
                    title=f"Fix {state.issue.title}",
                    branch=branch_name_for(state.agent, state.issue),
                    commits=state.progress.commits_made,
                    files_changed=state.progress.files_changed,
                )
                return ReadyForReview(issue=state.issue, agent=state.agent, pr=draft)

        if isinstance(state, Blocked) and isinstance(event, ResolveBlocker):
            progress = replace(
                state.progress,
                completion_percentage=self.resume_completion_percentage,
                elapsed_minutes=self._elapsed_minutes(),
            )
            return InProgress(issue=state.issue, agent=state.agent, progress=progress)

        if isinstance(state, ReadyForReview) and isinstance(event, SubmitForReview):
            return UnderReview(issue=state.issue, agent=state.agent, pr=event.pr)

        if isinstance(state, UnderReview):
            if isinstance(event, ReviewReceived):
                changes = tuple(change for entry in event.feedback for change in entry.requested_changes)
                if changes:
                    return ChangesRequested(
                        issue=state.issue, agent=state.agent, pr=state.pr, required_changes=changes
                    )
                return Approved(issue=state.issue, agent=state.agent, pr=state.pr)
            if isinstance(event, RequestChanges):
                return ChangesRequested(
                    issue=state.issue, agent=state.agent, pr=state.pr, required_changes=event.changes
                )

        if isinstance(state, ChangesRequested) and isinstance(event, ApprovalReceived):
            return Approved(issue=state.issue, agent=state.agent, pr=state.pr)

        if isinstance(state, Approved):
            if isinstance(event, MergeConflictDetected):
                return MergeConflict(issue=state.issue, agent=state.agent, pr=state.pr, conflicts=event.conflicts)
            if isinstance(event, CIFailureDetected):
                return CIFailure(issue=state.issue, agent=state.agent, pr=state.pr, failures=event.failures)
            if isinstance(event, MergeCompleted):
                return Merged(issue=state.issue, work=event.work)

        if isinstance(state, MergeConflict) and isinstance(event, ConflictsResolved):
            return Approved(issue=state.issue, agent=state.agent, pr=state.pr)

        if isinstance(state, CIFailure) and isinstance(event, CIFixed):
            return Approved(issue=state.issue, agent=state.agent, pr=state.pr)

        raise InvalidTransitionError(event, state_name(state))

    def _assign(self, event: AssignAgent) -> WorkflowState:
        issue = event.issue or PLACEHOLDER_ISSUE
        if not event.workspace_ready:
            return Unassigned(issue=issue)
        workspace = event.workspace or self._workspace_for(event.agent, issue)
        return Assigned(issue=issue, agent=event.agent, workspace=workspace)

    def _workspace_for(self, agent: AgentId, issue: Issue) -> WorkspaceState:
        return WorkspaceState(branch_name=branch_name_for(agent, issue), base_branch=self.base_branch)
