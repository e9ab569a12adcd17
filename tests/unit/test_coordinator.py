"""Tests for repo_autopilot/engine/coordinator.py - the coordination loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from repo_autopilot.engine.assignments import AssignmentLedger
from repo_autopilot.engine.checkpointing import CheckpointHook, CheckpointManager
from repo_autopilot.engine.coordinator import Coordinator, blocker_error_type, host_error_type
from repo_autopilot.engine.recovery import (
    AutomatedFix,
    BuildFailed,
    CommandExecuted,
    Confidence,
    DependencyConflict,
    ErrorRecoveryEngine,
    FixExecutor,
    FixType,
    GitOperationFailed,
    HostApiFailed,
    MergeConflictFound,
    NetworkFailure,
    RetryWithBackoff,
    StateInconsistency,
    TestsFailed,
)
from repo_autopilot.engine.workflow import (
    Abandoned,
    Approved,
    AssignAgent,
    Assigned,
    Blocked,
    CIFailure,
    InProgress,
    Merged,
    ReadyForReview,
    UnderReview,
    WorkflowMachine,
)
from repo_autopilot.exceptions import AutopilotError, ExternalServiceError, GitOperationError, InvalidTransitionError
from repo_autopilot.models.domain import (
    BlockerObserved,
    BuildFailure,
    CIFailureInfo,
    ConflictInfo,
    CriticalFailure,
    DependencyIssue,
    ExternalService,
    InconsistencyReport,
    Issue,
    MergeResult,
    Priority,
    ProgressObserved,
    PullRequest,
    RequirementsChanged,
    ReviewFeedback,
    TestFailure,
    TimeoutExceeded,
    UnresolvableBlocker,
    WorkFinished,
    WorkProgress,
)
from repo_autopilot.providers.base import InconsistencyRecovery
from repo_autopilot.utils.status_reporter import StatusReporter

AGENT = "agent-1"
PR = PullRequest(number=7, title="Fix Fix login redirect", branch="agent-1/issue-42", commits=2, files_changed=3)
APPROVAL = ReviewFeedback(reviewer="alice", overall_approval=True)


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FailingFirstRateEngine(ErrorRecoveryEngine):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.rate_calls = 0

    async def success_rate(self) -> float:
        self.rate_calls += 1
        if self.rate_calls == 1:
            raise RuntimeError("metrics backend unavailable")
        return await super().success_rate()


class AlwaysFixes(FixExecutor):
    def __init__(self):
        self.calls = []

    async def apply_fix(self, fix_type, error_type):
        self.calls.append((fix_type, error_type))
        return [CommandExecuted(command=f"fix {fix_type.value}", exit_code=0)]


def machine_at(state, clock=None) -> WorkflowMachine:
    """Machine with an assignment recorded and the given state forced."""
    machine = WorkflowMachine(clock=clock)
    machine.handle(AssignAgent(agent=AGENT, workspace_ready=True, issue=state.issue))
    machine.state = state
    return machine


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def engine() -> ErrorRecoveryEngine:
    return ErrorRecoveryEngine(fix_executor=AlwaysFixes(), sleep=SleepRecorder())


@pytest.fixture
def build(settings, mock_host, make_observer, engine, sleep):
    """Build a coordinator with test doubles, overridable per test."""

    def _build(observations=(), **kwargs):
        kwargs.setdefault("observer", make_observer(list(observations)))
        kwargs.setdefault("recovery_engine", engine)
        return Coordinator(AGENT, settings, mock_host, sleep=sleep, **kwargs)

    return _build


class TestErrorTranslation:
    """Tests for blocker and exception translation into error types."""

    @pytest.mark.parametrize(
        "blocker,expected",
        [
            (TestFailure(test_name="test_login", error="assert"), TestsFailed("integration", ("test_login",))),
            (BuildFailure(error="syntax error"), BuildFailed("compile", "syntax error")),
            (DependencyIssue(dependency="requests", error="version mismatch"), DependencyConflict("requests", True)),
            (DependencyIssue(dependency="requests", error="not found"), DependencyConflict("requests", False)),
            (ExternalService(service="registry", status="down"), StateInconsistency("working", "blocked")),
        ],
    )
    def test_blocker_error_type(self, blocker, expected):
        assert blocker_error_type(blocker) == expected

    def test_host_error_type(self):
        assert host_error_type("merge", GitOperationError("rejected", operation="push"), "github") == (
            GitOperationFailed("push", "rejected")
        )
        assert host_error_type(
            "get_issues", ExternalServiceError("Too many", status_code=429, endpoint="/issues"), "github"
        ) == HostApiFailed("/issues", 429, "Too many")
        assert host_error_type("get_issues", ExternalServiceError("down"), "github") == HostApiFailed(
            "get_issues", 0, "down"
        )
        assert host_error_type("get_issues", TimeoutError(), "gitea") == NetworkFailure("gitea", True)
        assert host_error_type("get_issues", ConnectionError("refused"), "gitea") == NetworkFailure("gitea", False)
        assert host_error_type("get_issues", ValueError("bad json"), "gitea") == HostApiFailed(
            "get_issues", 0, "bad json"
        )


class TestHappyPath:
    """A ready issue travels all the way to Merged."""

    @pytest.mark.asyncio
    async def test_issue_to_merged(self, build, mock_host, sample_issue, sleep):
        mock_host.get_reviews.return_value = [APPROVAL]
        coordinator = build([ProgressObserved(commits=2, files_changed=3), WorkFinished(tests_written=1)])

        final = await coordinator.run()

        assert isinstance(final, Merged)
        assert final.issue is sample_issue
        assert (final.work.commits, final.work.files_changed, final.work.tests_added) == (2, 3, 1)
        mock_host.remove_label.assert_any_await(42, "autopilot:ready")
        mock_host.add_labels.assert_any_await(42, ["in-progress", "autopilot:agent:agent-1"])
        mock_host.remove_label.assert_any_await(42, "autopilot:agent:agent-1")
        mock_host.create_branch.assert_awaited_once_with("agent-1/issue-42", "main")
        mock_host.create_pull_request.assert_awaited_once_with(
            "Fix Fix login redirect", "Closes #42\n\nUsers land on /404 after SSO.", "agent-1/issue-42", "main"
        )
        mock_host.merge_pull_request.assert_awaited_once_with(7, "Merge #7: Fix Fix login redirect")
        assert sleep.delays == [1.0]
        assert await coordinator.ledger.active() == ()
        assert await coordinator.is_running() is False

    @pytest.mark.asyncio
    async def test_history_follows_the_lifecycle(self, build, mock_host):
        mock_host.get_reviews.return_value = [APPROVAL]
        coordinator = build([WorkFinished()])

        await coordinator.run()

        assert [record.event_name for record in coordinator.machine.history] == [
            "AssignAgent",
            "StartWork",
            "CompleteWork",
            "SubmitForReview",
            "ReviewReceived",
            "MergeCompleted",
        ]

    @pytest.mark.asyncio
    async def test_reporter_and_checkpoint_on_merge(self, build, mock_host, sample_issue, tmp_path):
        mock_host.get_reviews.return_value = [APPROVAL]
        reporter = AsyncMock(spec=StatusReporter)
        checkpoints = CheckpointManager(str(tmp_path / "cp"))
        coordinator = build(
            [ProgressObserved(commits=2, files_changed=3), WorkFinished()],
            status_reporter=reporter,
            checkpoints=checkpoints,
        )

        await coordinator.run()

        reporter.report_started.assert_awaited_once_with(sample_issue, AGENT, "agent-1/issue-42")
        reporter.report_merged.assert_awaited_once_with(sample_issue, 7, 2, 3)
        latest = await checkpoints.load_latest(AGENT)
        assert latest["data"]["state"] == "Merged"
        assert latest["data"]["issue_number"] == 42

    @pytest.mark.asyncio
    async def test_highest_priority_issue_is_picked(self, build, mock_host):
        mock_host.get_issues.return_value = [
            Issue(number=1, title="Low", priority=Priority.LOW),
            Issue(number=5, title="Critical later", priority=Priority.CRITICAL),
            Issue(number=3, title="Critical first", priority=Priority.CRITICAL),
        ]
        mock_host.get_reviews.return_value = [APPROVAL]

        final = await build([WorkFinished()]).run()

        assert final.issue.number == 3

    @pytest.mark.asyncio
    async def test_issues_claimed_elsewhere_are_skipped(self, build, mock_host):
        mock_host.get_issues.return_value = [
            Issue(number=3, title="Taken", priority=Priority.CRITICAL),
            Issue(number=5, title="Free", priority=Priority.LOW),
        ]
        mock_host.get_reviews.return_value = [APPROVAL]
        ledger = AssignmentLedger(capacity=3)
        await ledger.claim(3, "agent-2")

        final = await build([WorkFinished()], ledger=ledger).run()

        assert final.issue.number == 5
        assert [a.issue_number for a in await ledger.active()] == [3]

    @pytest.mark.asyncio
    async def test_full_ledger_skips_polling(self, settings, mock_host, make_observer, engine):
        ledger = AssignmentLedger(capacity=1)
        await ledger.claim(9, "agent-2")
        delays = []

        async def stopping_sleep(delay):
            delays.append(delay)
            await coordinator.stop()

        coordinator = Coordinator(
            AGENT, settings, mock_host, make_observer([]), engine, ledger=ledger, sleep=stopping_sleep
        )

        assert await coordinator.run() is None
        mock_host.get_issues.assert_not_awaited()
        assert delays == [1.0]

    @pytest.mark.asyncio
    async def test_pinned_issue_skips_queue(self, build, mock_host):
        mock_host.get_reviews.return_value = [APPROVAL]

        final = await build([WorkFinished()], issue_number=42).run()

        assert isinstance(final, Merged)
        mock_host.get_issue.assert_awaited_with(42)
        mock_host.get_issues.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_branch_creation_defers_workspace(self, build, mock_host):
        mock_host.create_branch.side_effect = [GitOperationError("no ref", operation="checkout"), "abc123"]
        mock_host.get_reviews.return_value = [APPROVAL]
        coordinator = build([WorkFinished()])

        final = await coordinator.run()

        assert isinstance(final, Merged)
        assert coordinator.machine.history[1].event_name == "WorkspaceReady"


class TestBlockers:
    """Tests for blocker handling in InProgress and Blocked."""

    @pytest.mark.asyncio
    async def test_resolved_blocker_resumes_work(self, build, mock_host, engine):
        mock_host.get_reviews.return_value = [APPROVAL]
        coordinator = build([BlockerObserved(TestFailure(test_name="test_login", error="assert")), WorkFinished()])

        final = await coordinator.run()

        assert isinstance(final, Merged)
        names = [record.event_name for record in coordinator.machine.history]
        assert names[2:4] == ["EncounterBlocker", "ResolveBlocker"]
        assert engine.fix_executor.calls[0][0] is FixType.TEST_FAILURE_FIX

    @pytest.mark.asyncio
    async def test_failed_fix_abandons(self, build):
        blocker = TestFailure(test_name="test_login", error="assert")
        coordinator = build([BlockerObserved(blocker)], recovery_engine=ErrorRecoveryEngine())

        final = await coordinator.run()

        assert final == Abandoned(issue=final.issue, reason=UnresolvableBlocker(blocker=blocker))

    @pytest.mark.asyncio
    async def test_non_continuable_blocker_stops_loop(self, build):
        blocker = DependencyIssue(dependency="requests", error="resolver conflict")
        coordinator = build([BlockerObserved(blocker), WorkFinished()])

        final = await coordinator.run()

        assert isinstance(final, Blocked)
        assert final.blocker == blocker
        assert len(coordinator.observer.observed) == 1
        assert await coordinator.can_continue_autonomously() is False

    @pytest.mark.asyncio
    async def test_recovery_system_failure_abandons(self, build, sample_issue):
        broken = MagicMock(spec=ErrorRecoveryEngine)
        broken.classify.return_value = AutomatedFix(FixType.TEST_FAILURE_FIX, Confidence.MEDIUM)
        broken.execute = AsyncMock(side_effect=RuntimeError("engine down"))
        state = Blocked(issue=sample_issue, agent=AGENT, blocker=TestFailure(test_name="t", error="e"))

        final = await build(recovery_engine=broken, machine=machine_at(state)).run()

        assert final.reason == CriticalFailure(error="Recovery system failed: engine down")


class TestHostFailures:
    """Host errors go through the recovery engine and never escape the loop."""

    @pytest.mark.asyncio
    async def test_retry_result_is_used(self, build, mock_host, sample_issue, engine):
        unavailable = ExternalServiceError("unavailable", status_code=503)
        mock_host.get_issues.side_effect = [unavailable, unavailable, [sample_issue]]
        mock_host.get_reviews.return_value = [APPROVAL]

        final = await build([WorkFinished()]).run()

        assert isinstance(final, Merged)
        assert mock_host.get_issues.await_count == 3
        first = (await engine.history())[0]
        assert first.strategy == RetryWithBackoff(max_attempts=3, base_delay=5.0, max_delay=20.0)
        assert first.success is True
        assert engine._sleep.delays == [5.0]

    @pytest.mark.asyncio
    async def test_unrecovered_failure_abandons_with_critical_failure(self, build, mock_host, sample_issue):
        mock_host.create_pull_request.side_effect = GitOperationError("detached HEAD", operation="checkout")
        state = ReadyForReview(issue=sample_issue, agent=AGENT, pr=PR)

        final = await build(machine=machine_at(state)).run()

        assert final == Abandoned(
            issue=sample_issue, reason=CriticalFailure(error="create_pull_request failed: Manual process required")
        )

    @pytest.mark.asyncio
    async def test_escalation_waits_then_abandons(self, build, mock_host, sample_issue, sleep, engine):
        mock_host.merge_pull_request.side_effect = ExternalServiceError(
            "Forbidden", status_code=403, endpoint="/pulls/7/merge"
        )
        state = Approved(issue=sample_issue, agent=AGENT, pr=PR)

        final = await build(machine=machine_at(state)).run()

        assert final.reason == CriticalFailure(error="merge_pull_request failed: Escalated to human intervention")
        assert sleep.delays == [1.0, 1.0, 1.0]
        assert len(await engine.history()) == 4

    @pytest.mark.asyncio
    async def test_no_work_sleeps_idle(self, settings, mock_host, make_observer, engine):
        mock_host.get_issues.return_value = []
        delays = []

        async def stop_on_sleep(delay):
            delays.append(delay)
            await coordinator.stop()

        coordinator = Coordinator(AGENT, settings, mock_host, make_observer([]), engine, sleep=stop_on_sleep)

        assert await coordinator.run() is None
        assert delays == [1.0]
        assert coordinator.stop_requested is True

    @pytest.mark.asyncio
    async def test_host_failure_without_workflow_sleeps(self, settings, mock_host, make_observer):
        mock_host.get_issues.side_effect = ExternalServiceError("Forbidden", status_code=403)
        delays = []

        async def stop_on_sleep(delay):
            delays.append(delay)
            await coordinator.stop()

        coordinator = Coordinator(
            AGENT, settings, mock_host, make_observer([]), ErrorRecoveryEngine(), sleep=stop_on_sleep
        )

        assert await coordinator.run() is None
        assert delays == [1.0]


class TestLoopControl:
    """Tests for run/stop semantics and the time box."""

    @pytest.mark.asyncio
    async def test_stop_before_run(self, build, mock_host):
        coordinator = build()
        await coordinator.stop()

        assert await coordinator.run() is None
        mock_host.get_issues.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_run_is_rejected(self, settings, mock_host, make_observer, engine):
        mock_host.get_issues.return_value = []
        gate = asyncio.Event()

        async def blocking_sleep(delay):
            await gate.wait()

        coordinator = Coordinator(AGENT, settings, mock_host, make_observer([]), engine, sleep=blocking_sleep)
        task = asyncio.create_task(coordinator.run())
        while not await coordinator.is_running():
            await asyncio.sleep(0)

        with pytest.raises(AutopilotError, match="already running"):
            await coordinator.run()

        await coordinator.stop()
        gate.set()
        assert await task is None

    @pytest.mark.asyncio
    async def test_waiting_state_times_out(self, build, mock_host, sample_issue, fake_clock):
        machine = machine_at(UnderReview(issue=sample_issue, agent=AGENT, pr=PR), clock=fake_clock)
        fake_clock.advance(hours=9)

        final = await build(machine=machine).run()

        assert final == Abandoned(issue=sample_issue, reason=TimeoutExceeded(max_hours=8.0))
        mock_host.get_reviews.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_task_reports_and_survives_failures(self, settings, mock_host, make_observer):
        settings.workflow.monitoring_interval_seconds = 0.01
        mock_host.get_reviews.return_value = [APPROVAL]
        engine = FailingFirstRateEngine(fix_executor=AlwaysFixes(), sleep=SleepRecorder())
        checkpoints = AsyncMock(spec=CheckpointHook)
        observer = make_observer(
            [ProgressObserved(commits=1, files_changed=1), ProgressObserved(commits=1, files_changed=1), WorkFinished()]
        )

        async def slow_sleep(delay):
            await asyncio.sleep(0.05)

        coordinator = Coordinator(
            AGENT, settings, mock_host, observer, engine, checkpoints=checkpoints, sleep=slow_sleep
        )
        final = await coordinator.run()

        assert isinstance(final, Merged)
        assert engine.rate_calls >= 2
        assert [record.event_name for record in coordinator.machine.history] == [
            "AssignAgent",
            "StartWork",
            "MakeProgress",
            "MakeProgress",
            "CompleteWork",
            "SubmitForReview",
            "ReviewReceived",
            "MergeCompleted",
        ]
        saved = [call.args[1]["state"] for call in checkpoints.save.await_args_list]
        assert saved[-1] == "Merged"
        assert "InProgress" in saved[:-1]


class TestOperatorActions:
    """Tests for force_abandon, reset, auto_recover and resume."""

    @pytest.mark.asyncio
    async def test_force_abandon_and_reset(self, build, sample_issue):
        reporter = AsyncMock(spec=StatusReporter)
        coordinator = build(
            machine=machine_at(InProgress(issue=sample_issue, agent=AGENT, progress=WorkProgress())),
            status_reporter=reporter,
        )

        state = await coordinator.force_abandon(RequirementsChanged())

        assert state == Abandoned(issue=sample_issue, reason=RequirementsChanged())
        reporter.report_abandoned.assert_awaited_once_with(sample_issue, RequirementsChanged())
        assert await coordinator.reset() is None
        assert await coordinator.current_state() is None

    @pytest.mark.asyncio
    async def test_force_abandon_ignored_without_live_workflow(self, build):
        coordinator = build()
        assert await coordinator.force_abandon(RequirementsChanged()) is None
        assert coordinator.machine.history == ()

    @pytest.mark.asyncio
    async def test_reset_rejected_while_live(self, build, sample_issue):
        state = Approved(issue=sample_issue, agent=AGENT, pr=PR)
        coordinator = build(machine=machine_at(state))

        with pytest.raises(InvalidTransitionError):
            await coordinator.reset()
        assert await coordinator.current_state() is state

    @pytest.mark.asyncio
    async def test_auto_recover_records_event_without_changing_state(self, build, sample_issue):
        report = InconsistencyReport(recovered=("issue-9",), total_inconsistencies=1)
        recovery = AsyncMock(spec=InconsistencyRecovery)
        recovery.recover_all_inconsistencies.return_value = report
        state = UnderReview(issue=sample_issue, agent=AGENT, pr=PR)
        coordinator = build(machine=machine_at(state), inconsistency_recovery=recovery)

        assert await coordinator.auto_recover() == report
        assert await coordinator.current_state() is state
        assert coordinator.machine.history[-1].event.report == report

    @pytest.mark.asyncio
    async def test_auto_recover_failure_is_logged(self, build):
        recovery = AsyncMock(spec=InconsistencyRecovery)
        recovery.recover_all_inconsistencies.side_effect = RuntimeError("host down")
        coordinator = build(inconsistency_recovery=recovery)

        assert await coordinator.auto_recover() is None
        assert coordinator.machine.history == ()

    @pytest.mark.asyncio
    async def test_resume_from_checkpoint(self, build, mock_host, sample_issue, tmp_path):
        checkpoints = CheckpointManager(str(tmp_path / "cp"))
        await checkpoints.save(AGENT, {"state": "InProgress", "issue_number": 42})
        coordinator = build(checkpoints=checkpoints)

        state = await coordinator.resume_from_checkpoint()

        assert isinstance(state, Assigned)
        assert state.issue is sample_issue
        assert state.workspace.branch_name == "agent-1/issue-42"
        assert (await coordinator.ledger.assignment_for(AGENT)).issue_number == 42
        mock_host.get_issue.assert_awaited_once_with(42)

    @pytest.mark.asyncio
    async def test_terminal_checkpoint_is_not_resumed(self, build, tmp_path):
        checkpoints = CheckpointManager(str(tmp_path / "cp"))
        await checkpoints.save(AGENT, {"state": "Merged", "issue_number": 42})

        assert await build(checkpoints=checkpoints).resume_from_checkpoint() is None

    @pytest.mark.asyncio
    async def test_report_status_checkpoints_live_workflow(self, build, sample_issue, tmp_path):
        checkpoints = CheckpointManager(str(tmp_path / "cp"))
        state = InProgress(issue=sample_issue, agent=AGENT, progress=WorkProgress())
        coordinator = build(machine=machine_at(state), checkpoints=checkpoints)

        report = await coordinator.report_status()

        assert report.current_state == "InProgress"
        assert (await checkpoints.load_latest(AGENT))["data"]["state"] == "InProgress"


class TestMergeFailures:
    """Tests for merge conflicts and CI failures after approval."""

    @pytest.mark.asyncio
    async def test_auto_resolvable_conflict_is_fixed(self, build, mock_host, sample_issue, engine):
        mock_host.merge_pull_request.side_effect = [
            MergeResult(
                merged=False, conflicts=(ConflictInfo(file="app.py", conflict_markers=2, auto_resolvable=True),)
            ),
            MergeResult(merged=True, sha="def456"),
        ]
        coordinator = build(machine=machine_at(Approved(issue=sample_issue, agent=AGENT, pr=PR)))

        final = await coordinator.run()

        assert isinstance(final, Merged)
        assert engine.fix_executor.calls == [
            (FixType.MERGE_CONFLICT_RESOLUTION, MergeConflictFound(files=("app.py",), conflict_count=2))
        ]

    @pytest.mark.asyncio
    async def test_manual_conflict_abandons(self, build, mock_host, sample_issue):
        mock_host.merge_pull_request.return_value = MergeResult(
            merged=False, conflicts=(ConflictInfo(file="db/migrations/0042.py", conflict_markers=1),)
        )
        coordinator = build(machine=machine_at(Approved(issue=sample_issue, agent=AGENT, pr=PR)))

        final = await coordinator.run()

        assert final.reason == CriticalFailure(error="Merge conflicts need manual resolution: db/migrations/0042.py")

    @pytest.mark.asyncio
    async def test_aggressive_recovery_still_escalates_migrations(self, build, mock_host, sample_issue, settings):
        settings.workflow.enable_aggressive_recovery = True
        mock_host.merge_pull_request.return_value = MergeResult(
            merged=False, conflicts=(ConflictInfo(file="db/migrations/0042.py", conflict_markers=1),)
        )
        coordinator = build(machine=machine_at(Approved(issue=sample_issue, agent=AGENT, pr=PR)))

        final = await coordinator.run()

        assert final.reason == CriticalFailure(
            error="Merge conflict resolution failed: Escalated to human intervention"
        )

    @pytest.mark.asyncio
    async def test_fixable_ci_failure_is_fixed(self, build, mock_host, sample_issue, engine):
        failure = CIFailureInfo(job_name="ci", step="pytest", error="2 tests failed", auto_fixable=True)
        mock_host.merge_pull_request.side_effect = [
            MergeResult(merged=False, ci_failures=(failure,)),
            MergeResult(merged=True, sha="def456"),
        ]
        coordinator = build(machine=machine_at(Approved(issue=sample_issue, agent=AGENT, pr=PR)))

        final = await coordinator.run()

        assert isinstance(final, Merged)
        assert [record.event_name for record in coordinator.machine.history][-3:] == [
            "CIFailureDetected",
            "CIFixed",
            "MergeCompleted",
        ]
        assert engine.fix_executor.calls[0][0] is FixType.TEST_FAILURE_FIX

    @pytest.mark.asyncio
    async def test_unfixable_ci_failure_abandons(self, build, sample_issue):
        failure = CIFailureInfo(job_name="deploy", step="upload", error="permission denied")
        state = CIFailure(issue=sample_issue, agent=AGENT, pr=PR, failures=(failure,))

        final = await build(machine=machine_at(state)).run()

        assert final.reason == CriticalFailure(error="CI failures need manual fixes: deploy")
