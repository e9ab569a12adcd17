"""
Coordination loop driving one workflow instance.

The Coordinator owns a WorkflowMachine and is the only component that
performs I/O on its behalf. Each iteration reads the current state, runs the
action for that state against the host, and feeds at most one event back into
the machine. Every collaborator failure is converted into a recovery error
type and handed to the ErrorRecoveryEngine; nothing a collaborator raises
escapes the loop.

Concurrency:
    Machine state and the keep-running flag are each guarded by an
    asyncio.Lock owned by the coordinator. Locks are only held while reading
    or applying, never across host calls or sleeps. A separate status task
    reports on a fixed interval and only reads.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.assignments import AssignmentLedger
from repo_autopilot.engine.checkpointing import CheckpointHook
from repo_autopilot.engine.recovery import (
    AbandonAndReset,
    BuildFailed,
    CIFailed,
    DependencyConflict,
    ErrorRecoveryEngine,
    ErrorType,
    Escalate,
    GitOperationFailed,
    HostApiFailed,
    MergeConflictFound,
    NetworkFailure,
    RecoveryAttempt,
    RecoveryReport,
    RecoveryStrategy,
    RetryWithBackoff,
    StateInconsistency,
    TestsFailed,
)
from repo_autopilot.engine.workflow import (
    Abandoned,
    ApprovalReceived,
    Approved,
    AssignAgent,
    Assigned,
    AutoRecover,
    Blocked,
    ChangesRequested,
    CIFailure,
    CIFailureDetected,
    CIFixed,
    CompleteWork,
    ConflictsResolved,
    EncounterBlocker,
    ForceAbandon,
    InProgress,
    MakeProgress,
    Merged,
    MergeCompleted,
    MergeConflict,
    MergeConflictDetected,
    ReadyForReview,
    Reset,
    ResolveBlocker,
    ReviewReceived,
    StartWork,
    StatusReport,
    SubmitForReview,
    Unassigned,
    UnderReview,
    WorkflowEvent,
    WorkflowMachine,
    WorkflowState,
    WorkspaceReady,
    branch_name_for,
    is_live,
    is_terminal,
    state_name,
)
from repo_autopilot.exceptions import (
    AutopilotError,
    ExternalServiceError,
    GitOperationError,
    InvalidTransitionError,
    WorkspaceError,
)
from repo_autopilot.models.domain import (
    AbandonmentReason,
    AgentId,
    BlockerObserved,
    BlockerType,
    BuildFailure,
    CompletedWork,
    CriticalFailure,
    DependencyIssue,
    InconsistencyReport,
    Issue,
    Priority,
    TestFailure,
    TimeoutExceeded,
    UnresolvableBlocker,
    WorkFinished,
    WorkspaceState,
)
from repo_autopilot.monitoring.metrics import MetricsCollector
from repo_autopilot.providers.base import HostProvider, InconsistencyRecovery, WorkObserver
from repo_autopilot.utils.status_reporter import StatusReporter

log = structlog.get_logger(__name__)

T = TypeVar("T")

_PRIORITY_RANK = {priority: rank for rank, priority in enumerate(Priority)}


class _HostCallFailed(Exception):
    """A host or observer call failed and recovery did not bring it back."""

    def __init__(self, operation: str, message: str, strategy: RecoveryStrategy) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message
        self.strategy = strategy


class _RecoverySystemFailed(Exception):
    pass


def blocker_error_type(blocker: BlockerType) -> ErrorType:
    """Translate a work blocker into the error type the recovery engine classifies."""
    if isinstance(blocker, TestFailure):
        return TestsFailed(test_suite="integration", failed_tests=(blocker.test_name,))
    if isinstance(blocker, BuildFailure):
        return BuildFailed(stage="compile", error=blocker.error)
    if isinstance(blocker, DependencyIssue):
        return DependencyConflict(dependency=blocker.dependency, version_conflict="version" in blocker.error)
    return StateInconsistency(expected_state="working", actual_state="blocked")


def host_error_type(operation: str, error: Exception, service: str) -> ErrorType:
    """Translate an exception raised by a host call into an error type."""
    if isinstance(error, GitOperationError):
        return GitOperationFailed(operation=error.operation, error=error.message)
    if isinstance(error, ExternalServiceError):
        return HostApiFailed(
            endpoint=error.endpoint or operation,
            status=error.status_code or 0,
            message=error.message,
        )
    if isinstance(error, TimeoutError):
        return NetworkFailure(service=service, timeout=True)
    if isinstance(error, ConnectionError | OSError):
        return NetworkFailure(service=service, timeout=False)
    return HostApiFailed(endpoint=operation, status=0, message=str(error))


class Coordinator:
    """Drives one workflow instance from assignment to a terminal state.

    Args:
        agent_id: Worker slot this coordinator acts for
        settings: Loaded scheduler settings
        host: Issue/PR host
        observer: Source of work observations for the in-flight assignment
        recovery_engine: Engine that classifies and executes recoveries
        inconsistency_recovery: Backend invoked on AutoRecover
        ledger: Process-wide assignment ledger shared between coordinators
        checkpoints: Hook invoked on terminal transitions and by the status task
        status_reporter: Posts milestone comments on the assigned issue
        machine: State machine to drive, built from settings if omitted
        issue_number: Only work on this issue instead of polling the ready queue
        sleep: Awaitable sleep used for poll and escalation waits
    """

    def __init__(
        self,
        agent_id: AgentId,
        settings: AutopilotSettings,
        host: HostProvider,
        observer: WorkObserver,
        recovery_engine: ErrorRecoveryEngine,
        inconsistency_recovery: InconsistencyRecovery | None = None,
        ledger: AssignmentLedger | None = None,
        checkpoints: CheckpointHook | None = None,
        status_reporter: StatusReporter | None = None,
        machine: WorkflowMachine | None = None,
        issue_number: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.agent_id = agent_id
        self.settings = settings
        self.host = host
        self.observer = observer
        self.recovery = recovery_engine
        self.inconsistency_recovery = inconsistency_recovery
        self.ledger = ledger or AssignmentLedger(settings.workflow.max_concurrent_agents)
        self.checkpoints = checkpoints
        self.status_reporter = status_reporter
        self.issue_number = issue_number
        self.machine = machine or WorkflowMachine(
            max_work_hours=settings.workflow.max_work_hours,
            resume_completion_percentage=settings.workflow.resume_completion_percentage,
            base_branch=settings.repository.default_branch,
        )
        self._sleep = sleep

        self._state_lock = asyncio.Lock()
        self._running_lock = asyncio.Lock()
        self._running = False
        self._stop_requested = False
        self._escalations = 0
        self._tests_added = 0

    @property
    def base_branch(self) -> str:
        return self.settings.repository.default_branch

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    # Lifecycle -------------------------------------------------------------

    async def run(self) -> WorkflowState | None:
        """Run the coordination loop until it stops or cannot continue.

        Returns:
            The machine state when the loop exited
        """
        async with self._running_lock:
            if self._running:
                raise AutopilotError(f"Coordinator for {self.agent_id} is already running")
            if self._stop_requested:
                return self.machine.state
            self._running = True

        structlog.contextvars.bind_contextvars(agent_id=self.agent_id)
        monitor = asyncio.create_task(self._monitor())
        MetricsCollector.workflow_started()
        log.info("coordinator_started", state=state_name(self.machine.state))

        try:
            while await self.is_running():
                if await self._timed_out():
                    await self._apply(ForceAbandon(reason=TimeoutExceeded(max_hours=self.machine.max_work_hours)))
                else:
                    state = await self.current_state()
                    event = await self._step(state)
                    if event is not None:
                        await self._apply(event)

                if not await self.can_continue_autonomously():
                    log.info("autonomous_operation_halted", state=state_name(await self.current_state()))
                    break
        finally:
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
            MetricsCollector.workflow_stopped()
            async with self._running_lock:
                self._running = False
            structlog.contextvars.unbind_contextvars("agent_id", "issue")

        final = await self.current_state()
        log.info("coordinator_stopped", state=state_name(final))
        return final

    async def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        async with self._running_lock:
            self._running = False
            self._stop_requested = True
        log.info("coordinator_stop_requested", agent_id=self.agent_id)

    async def is_running(self) -> bool:
        async with self._running_lock:
            return self._running

    # Read-only views -------------------------------------------------------

    async def current_state(self) -> WorkflowState | None:
        async with self._state_lock:
            return self.machine.state

    async def can_continue_autonomously(self) -> bool:
        async with self._state_lock:
            return self.machine.can_continue_autonomously()

    async def status_report(self) -> StatusReport:
        async with self._state_lock:
            return self.machine.status_report()

    async def recovery_report(self) -> RecoveryReport:
        return await self.recovery.recovery_report()

    # Operator actions ------------------------------------------------------

    async def force_abandon(self, reason: AbandonmentReason) -> WorkflowState | None:
        """Abandon the live workflow regardless of what the loop is doing."""
        state = await self.current_state()
        if not is_live(state):
            log.info("force_abandon_ignored", state=state_name(state))
            return state
        return await self._apply(ForceAbandon(reason=reason), raise_errors=True)

    async def reset(self) -> WorkflowState | None:
        """Return a finished workflow to the initial state.

        Raises:
            InvalidTransitionError: The workflow has not reached Merged or Abandoned
        """
        return await self._apply(Reset(), raise_errors=True)

    async def auto_recover(self) -> InconsistencyReport | None:
        """Repair external bookkeeping and record it against the live workflow."""
        report = None
        if self.inconsistency_recovery is not None:
            try:
                report = await self.inconsistency_recovery.recover_all_inconsistencies()
            except Exception as e:
                log.error("inconsistency_recovery_failed", error=str(e), exc_info=True)

        if is_live(await self.current_state()):
            await self._apply(AutoRecover(report=report))
        else:
            log.info("auto_recover_without_workflow", recovered=len(report.recovered) if report else 0)
        return report

    async def resume_from_checkpoint(self) -> WorkflowState | None:
        """Re-enter the last checkpointed assignment at ``Assigned``.

        Returns:
            The resumed state, or None if there was nothing to resume
        """
        if self.checkpoints is None or await self.current_state() is not None:
            return None

        checkpoint = await self.checkpoints.load_latest(self.agent_id)
        if checkpoint is None:
            return None

        data = checkpoint.get("data", {})
        issue_number = data.get("issue_number")
        if not issue_number or data.get("state") in (None, "Merged", "Abandoned"):
            log.info("checkpoint_not_resumable", checkpoint_id=checkpoint.get("checkpoint_id"))
            return None

        try:
            issue = await self._call_host("get_issue", lambda: self.host.get_issue(issue_number))
        except (_HostCallFailed, _RecoverySystemFailed) as e:
            log.warning("resume_failed", issue=issue_number, error=str(e))
            return None

        if not await self.ledger.claim(issue.number, self.agent_id):
            log.warning("resume_claim_rejected", issue=issue.number)
            return None

        workspace = WorkspaceState(branch_name=branch_name_for(self.agent_id, issue), base_branch=self.base_branch)
        log.info("workflow_resumed", issue=issue.number, from_state=data.get("state"))
        return await self._apply(
            AssignAgent(agent=self.agent_id, workspace_ready=True, issue=issue, workspace=workspace),
            raise_errors=True,
        )

    async def report_status(self) -> StatusReport:
        """Emit one operator status snapshot and checkpoint a live workflow."""
        async with self._state_lock:
            report = self.machine.status_report()
            live = is_live(self.machine.state)
            snapshot = self._snapshot()

        rate = await self.recovery.success_rate()
        log.info("autonomous_operation_status", recovery_success_rate=round(rate, 2), **report.to_dict())

        if live and self.checkpoints is not None and self.settings.workflow.enable_checkpoints:
            await self.checkpoints.save(self.agent_id, snapshot)
        return report

    # Loop internals --------------------------------------------------------

    async def _monitor(self) -> None:
        interval = self.settings.workflow.monitoring_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.report_status()
            except Exception as e:
                log.error("status_task_failed", error=str(e), exc_info=True)

    async def _timed_out(self) -> bool:
        async with self._state_lock:
            return self.machine.timed_out()

    async def _apply(self, event: WorkflowEvent, raise_errors: bool = False) -> WorkflowState | None:
        async with self._state_lock:
            previous = self.machine.state
            try:
                new_state = self.machine.handle(event)
            except (InvalidTransitionError, WorkspaceError) as e:
                log.warning(
                    "event_rejected", event_name=type(event).__name__, state=state_name(previous), error=e.message
                )
                if raise_errors:
                    raise
                return previous
            record = self.machine.history[-1]
            snapshot = self._snapshot()

        MetricsCollector.record_transition(
            state_name(record.from_state), state_name(record.to_state), record.event_name
        )

        if type(previous) is not type(new_state):
            self._escalations = 0
        if isinstance(record.event, AssignAgent):
            structlog.contextvars.bind_contextvars(issue=new_state.issue.number)
        elif isinstance(record.event, Reset):
            structlog.contextvars.unbind_contextvars("issue")
            self._tests_added = 0

        if is_terminal(new_state):
            await self._on_terminal(previous, new_state, snapshot)
        return new_state

    async def _on_terminal(
        self, previous: WorkflowState | None, state: WorkflowState, snapshot: dict[str, Any]
    ) -> None:
        issue = state.issue

        if self.checkpoints is not None and self.settings.workflow.enable_checkpoints:
            try:
                await self.checkpoints.save(self.agent_id, snapshot)
            except Exception as e:
                log.error("checkpoint_failed", error=str(e), exc_info=True)

        if self.status_reporter is not None and issue.number:
            try:
                if isinstance(state, Merged):
                    pr = getattr(previous, "pr", None)
                    await self.status_reporter.report_merged(
                        issue, pr.number if pr else None, state.work.commits, state.work.files_changed
                    )
                elif isinstance(state, Abandoned):
                    await self.status_reporter.report_abandoned(issue, state.reason)
            except Exception as e:
                log.warning("status_report_failed", issue=issue.number, error=str(e))

        if issue.number:
            try:
                await self.host.remove_label(issue.number, self.settings.labels.owner_label(self.agent_id))
            except Exception as e:
                log.warning("owner_label_removal_failed", issue=issue.number, error=str(e))

        await self.ledger.release(issue.number)
        MetricsCollector.record_outcome("merged" if isinstance(state, Merged) else "abandoned")

    def _snapshot(self) -> dict[str, Any]:
        issue = self.machine.issue
        return {
            "agent_id": self.agent_id,
            "state": state_name(self.machine.state),
            "issue_number": issue.number if issue else None,
            "issue_title": issue.title if issue else None,
            "status": self.machine.status_report().to_dict(),
        }

    async def _step(self, state: WorkflowState | None) -> WorkflowEvent | None:
        try:
            if state is None:
                return await self._acquire_work()
            if isinstance(state, Unassigned):
                return await self._prepare_workspace(state)
            if isinstance(state, Assigned):
                return StartWork()
            if isinstance(state, InProgress):
                return await self._observe_work(state)
            if isinstance(state, Blocked):
                return await self._handle_blocker(state)
            if isinstance(state, ReadyForReview):
                return await self._submit_for_review(state)
            if isinstance(state, UnderReview):
                return await self._await_review(state)
            if isinstance(state, ChangesRequested):
                return await self._apply_changes(state)
            if isinstance(state, Approved):
                return await self._merge(state)
            if isinstance(state, MergeConflict):
                return await self._resolve_conflicts(state)
            if isinstance(state, CIFailure):
                return await self._fix_ci(state)
            return None
        except _HostCallFailed as e:
            return await self._on_host_failure(state, e)
        except _RecoverySystemFailed as e:
            if not is_live(state):
                await self._sleep(self.settings.workflow.idle_poll_seconds)
                return None
            return ForceAbandon(reason=CriticalFailure(error=f"Recovery system failed: {e}"))

    async def _on_host_failure(self, state: WorkflowState | None, failure: _HostCallFailed) -> WorkflowEvent | None:
        log.warning(
            "host_operation_unrecovered",
            operation=failure.operation,
            strategy=type(failure.strategy).__name__,
            error=failure.message,
        )
        if not is_live(state):
            await self._sleep(self.settings.workflow.idle_poll_seconds)
            return None
        reason = CriticalFailure(error=str(failure))
        if isinstance(failure.strategy, Escalate):
            return await self._escalation_wait(reason)
        return ForceAbandon(reason=reason)

    async def _escalation_wait(self, reason: AbandonmentReason) -> WorkflowEvent | None:
        self._escalations += 1
        if self._escalations > self.settings.workflow.max_recovery_attempts:
            log.error("escalation_limit_reached", escalations=self._escalations - 1)
            return ForceAbandon(reason=reason)
        await self._sleep(self.settings.workflow.escalation_wait_seconds)
        return None

    async def _call_host(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except Exception as e:
            error = host_error_type(operation, e, self.host.name)
            log.warning("host_call_failed", operation=operation, error=str(e), error_type=type(error).__name__)

        attempt = await self._execute(error, operation=call)
        if not attempt.success:
            raise _HostCallFailed(operation, attempt.error_message or "recovery failed", attempt.strategy)
        if isinstance(attempt.strategy, RetryWithBackoff):
            return attempt.result

        try:
            return await call()
        except Exception as e:
            raise _HostCallFailed(operation, str(e), attempt.strategy) from e

    async def _execute(
        self,
        error: ErrorType,
        strategy: RecoveryStrategy | None = None,
        operation: Callable[[], Awaitable[Any]] | None = None,
    ) -> RecoveryAttempt:
        try:
            return await self.recovery.execute(error, strategy, operation)
        except Exception as e:
            log.error("recovery_system_failed", error=str(e), exc_info=True)
            raise _RecoverySystemFailed(str(e)) from e

    # Per-state actions -----------------------------------------------------

    async def _acquire_work(self) -> WorkflowEvent | None:
        labels = self.settings.labels

        if await self.ledger.available_slots() <= 0:
            log.debug("ledger_at_capacity", capacity=self.ledger.capacity)
            await self._sleep(self.settings.workflow.idle_poll_seconds)
            return None

        if self.issue_number is not None:
            number = self.issue_number
            candidates = [await self._call_host("get_issue", lambda: self.host.get_issue(number))]
        else:
            ready = await self._call_host("get_issues", lambda: self.host.get_issues(labels=[labels.ready]))
            candidates = sorted(ready, key=lambda i: (-_PRIORITY_RANK[i.priority], i.number))

        issue: Issue | None = None
        for candidate in candidates:
            if await self.ledger.claim(candidate.number, self.agent_id):
                issue = candidate
                break

        if issue is None:
            log.debug("no_work_available", candidates=len(candidates))
            await self._sleep(self.settings.workflow.idle_poll_seconds)
            return None

        claimed = issue
        try:
            await self._call_host("remove_label", lambda: self.host.remove_label(claimed.number, labels.ready))
            claim_labels = [labels.in_progress, labels.owner_label(self.agent_id)]
            await self._call_host("add_labels", lambda: self.host.add_labels(claimed.number, claim_labels))
        except (_HostCallFailed, _RecoverySystemFailed):
            await self.ledger.release(claimed.number)
            raise

        branch = branch_name_for(self.agent_id, issue)
        workspace_ready = True
        try:
            await self._call_host("create_branch", lambda: self.host.create_branch(branch, self.base_branch))
        except (_HostCallFailed, _RecoverySystemFailed) as e:
            log.warning("workspace_setup_deferred", issue=issue.number, branch=branch, error=str(e))
            workspace_ready = False

        if self.status_reporter is not None:
            try:
                await self.status_reporter.report_started(issue, self.agent_id, branch)
            except Exception as e:
                log.warning("status_report_failed", issue=issue.number, error=str(e))

        return AssignAgent(
            agent=self.agent_id,
            workspace_ready=workspace_ready,
            issue=issue,
            workspace=WorkspaceState(branch_name=branch, base_branch=self.base_branch) if workspace_ready else None,
        )

    async def _prepare_workspace(self, state: Unassigned) -> WorkflowEvent:
        branch = branch_name_for(self.agent_id, state.issue)
        await self._call_host("create_branch", lambda: self.host.create_branch(branch, self.base_branch))
        return WorkspaceReady()

    async def _observe_work(self, state: InProgress) -> WorkflowEvent:
        observation = await self._call_host(
            "observe_work", lambda: self.observer.observe(state.issue, state.agent, state.progress)
        )

        if isinstance(observation, BlockerObserved):
            return EncounterBlocker(blocker=observation.blocker)
        if isinstance(observation, WorkFinished):
            self._tests_added = state.progress.tests_written + observation.tests_written
            return CompleteWork()

        await self._sleep(self.settings.workflow.progress_poll_seconds)
        return MakeProgress(commits=observation.commits, files_changed=observation.files_changed)

    async def _handle_blocker(self, state: Blocked) -> WorkflowEvent | None:
        error = blocker_error_type(state.blocker)
        strategy = self.recovery.classify(error)
        attempt = await self._execute(error, strategy)

        if isinstance(strategy, AbandonAndReset):
            return ForceAbandon(reason=strategy.reason)
        if attempt.success:
            return ResolveBlocker()
        if isinstance(strategy, Escalate):
            return await self._escalation_wait(UnresolvableBlocker(blocker=state.blocker))
        return ForceAbandon(reason=UnresolvableBlocker(blocker=state.blocker))

    async def _submit_for_review(self, state: ReadyForReview) -> WorkflowEvent:
        draft = state.pr
        body = f"Closes #{state.issue.number}\n\n{state.issue.body}".strip()
        pr = await self._call_host(
            "create_pull_request",
            lambda: self.host.create_pull_request(draft.title, body, draft.branch, self.base_branch),
        )
        if not pr.commits and not pr.files_changed:
            pr = replace(pr, commits=draft.commits, files_changed=draft.files_changed)
        return SubmitForReview(pr=pr)

    async def _await_review(self, state: UnderReview) -> WorkflowEvent | None:
        reviews = await self._call_host("get_reviews", lambda: self.host.get_reviews(state.pr.number))
        if not reviews:
            await self._sleep(self.settings.workflow.review_poll_seconds)
            return None
        return ReviewReceived(feedback=tuple(reviews))

    async def _apply_changes(self, state: ChangesRequested) -> WorkflowEvent | None:
        applied = await self._call_host(
            "apply_requested_changes",
            lambda: self.observer.apply_requested_changes(state.issue, state.pr, state.required_changes),
        )
        if applied:
            return ApprovalReceived()
        await self._sleep(self.settings.workflow.review_poll_seconds)
        return None

    async def _merge(self, state: Approved) -> WorkflowEvent | None:
        pr = state.pr
        result = await self._call_host(
            "merge_pull_request",
            lambda: self.host.merge_pull_request(pr.number, f"Merge #{pr.number}: {pr.title}"),
        )

        if result.conflicts:
            return MergeConflictDetected(conflicts=result.conflicts)
        if result.ci_failures:
            return CIFailureDetected(failures=result.ci_failures)
        if result.merged:
            work = CompletedWork(
                issue=state.issue,
                commits=pr.commits,
                files_changed=pr.files_changed,
                tests_added=self._tests_added,
                completion_time=datetime.now(UTC),
            )
            return MergeCompleted(work=work)

        await self._sleep(self.settings.workflow.review_poll_seconds)
        return None

    async def _resolve_conflicts(self, state: MergeConflict) -> WorkflowEvent:
        files = tuple(conflict.file for conflict in state.conflicts)
        aggressive = self.settings.workflow.enable_aggressive_recovery
        if not aggressive and not all(conflict.auto_resolvable for conflict in state.conflicts):
            reason = CriticalFailure(error=f"Merge conflicts need manual resolution: {', '.join(files)}")
            return ForceAbandon(reason=reason)

        markers = sum(conflict.conflict_markers for conflict in state.conflicts)
        attempt = await self._execute(MergeConflictFound(files=files, conflict_count=markers or len(files)))
        if attempt.success:
            return ConflictsResolved()
        return ForceAbandon(reason=CriticalFailure(error=f"Merge conflict resolution failed: {attempt.error_message}"))

    async def _fix_ci(self, state: CIFailure) -> WorkflowEvent:
        aggressive = self.settings.workflow.enable_aggressive_recovery
        if not aggressive and not all(failure.auto_fixable for failure in state.failures):
            jobs = ", ".join(failure.job_name for failure in state.failures)
            return ForceAbandon(reason=CriticalFailure(error=f"CI failures need manual fixes: {jobs}"))

        for failure in state.failures:
            attempt = await self._execute(CIFailed(job=failure.job_name, step=failure.step, error=failure.error))
            if not attempt.success:
                return ForceAbandon(
                    reason=CriticalFailure(error=f"CI fix failed for {failure.job_name}: {attempt.error_message}")
                )
        return CIFixed()
