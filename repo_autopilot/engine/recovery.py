"""
Error classification and recovery execution.

Two halves live here:

``classify(error_type)``
    A pure mapping from a failure description to a RecoveryStrategy. The same
    input always yields a structurally equal strategy, which lets callers and
    tests compare strategies with ``==``.

``ErrorRecoveryEngine.execute(error_type, strategy)``
    Performs the strategy: retries an operation with capped exponential
    backoff, dispatches automated fixes to a FixExecutor, records fallback
    actions, escalates, or abandons. It never raises; every outcome, including
    an unexpected exception inside a fix, comes back as a RecoveryAttempt.

Recovery history accumulates for the lifetime of the engine and feeds
:meth:`ErrorRecoveryEngine.recovery_report`.

Classification Table:
    GitOperationFailed push/pull/fetch    RetryWithBackoff(3, 1s, 10s)
    GitOperationFailed merge/rebase       AutomatedFix(MERGE_CONFLICT_RESOLUTION, MEDIUM)
    GitOperationFailed other              Fallback(MANUAL_PROCESS)
    HostApiFailed 429                     RetryWithBackoff(5, 2s, 30s)
    HostApiFailed 5xx                     RetryWithBackoff(3, 5s, 20s)
    HostApiFailed other                   Escalate(MEDIUM)
    MergeConflictFound <=5, no migration  AutomatedFix(MERGE_CONFLICT_RESOLUTION, HIGH)
    MergeConflictFound otherwise          Escalate(HIGH)
    CIFailed "test"                       AutomatedFix(TEST_FAILURE_FIX, MEDIUM)
    CIFailed "build"/"compile"            AutomatedFix(BUILD_ERROR_FIX, LOW)
    CIFailed otherwise                    Escalate(MEDIUM)
    TestsFailed <=3 tests                 AutomatedFix(TEST_FAILURE_FIX, MEDIUM)
    TestsFailed otherwise                 Fallback(SIMPLIFIED_SOLUTION)
    BuildFailed dependencies stage        AutomatedFix(DEPENDENCY_UPDATE, HIGH)
    BuildFailed format/lint               AutomatedFix(CODE_FORMATTING, HIGH)
    BuildFailed otherwise                 AutomatedFix(BUILD_ERROR_FIX, LOW)
    DependencyConflict version conflict   AutomatedFix(DEPENDENCY_UPDATE, MEDIUM)
    DependencyConflict otherwise          RetryWithBackoff(3, 2s, 10s)
    NetworkFailure timeout                RetryWithBackoff(5, 1s, 15s)
    NetworkFailure otherwise              Escalate(LOW)
    WorkspaceCorruption <=5 files         AutomatedFix(CONFIGURATION_ADJUSTMENT, MEDIUM)
    WorkspaceCorruption otherwise         AbandonAndReset(CriticalFailure)
    StateInconsistency                    AutomatedFix(CONFIGURATION_ADJUSTMENT, HIGH)
"""

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from repo_autopilot.models.domain import AbandonmentReason, CriticalFailure
from repo_autopilot.monitoring.metrics import MetricsCollector
from repo_autopilot.utils.retry import backoff_delays

log = structlog.get_logger(__name__)


# Error types ---------------------------------------------------------------


@dataclass(frozen=True)
class GitOperationFailed:
    operation: str
    error: str


@dataclass(frozen=True)
class HostApiFailed:
    endpoint: str
    status: int
    message: str


@dataclass(frozen=True)
class MergeConflictFound:
    files: tuple[str, ...]
    conflict_count: int


@dataclass(frozen=True)
class CIFailed:
    job: str
    step: str
    error: str


@dataclass(frozen=True)
class TestsFailed:
    test_suite: str
    failed_tests: tuple[str, ...]


@dataclass(frozen=True)
class BuildFailed:
    stage: str
    error: str


@dataclass(frozen=True)
class DependencyConflict:
    dependency: str
    version_conflict: bool


@dataclass(frozen=True)
class NetworkFailure:
    service: str
    timeout: bool


@dataclass(frozen=True)
class WorkspaceCorruption:
    files_affected: tuple[str, ...]


@dataclass(frozen=True)
class StateInconsistency:
    expected_state: str
    actual_state: str


ErrorType = (
    GitOperationFailed
    | HostApiFailed
    | MergeConflictFound
    | CIFailed
    | TestsFailed
    | BuildFailed
    | DependencyConflict
    | NetworkFailure
    | WorkspaceCorruption
    | StateInconsistency
)


# Strategies ----------------------------------------------------------------


class FixType(str, Enum):
    MERGE_CONFLICT_RESOLUTION = "merge_conflict_resolution"
    TEST_FAILURE_FIX = "test_failure_fix"
    BUILD_ERROR_FIX = "build_error_fix"
    DEPENDENCY_UPDATE = "dependency_update"
    CONFIGURATION_ADJUSTMENT = "configuration_adjustment"
    CODE_FORMATTING = "code_formatting"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Alternative(str, Enum):
    DIFFERENT_IMPLEMENTATION = "different_implementation"
    SIMPLIFIED_SOLUTION = "simplified_solution"
    MANUAL_PROCESS = "manual_process"
    EXTERNAL_TOOL = "external_tool"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RetryWithBackoff:
    """Re-run the failed operation. Delays are in seconds."""

    max_attempts: int
    base_delay: float
    max_delay: float


@dataclass(frozen=True)
class AutomatedFix:
    fix_type: FixType
    confidence: Confidence


@dataclass(frozen=True)
class Fallback:
    alternative: Alternative


@dataclass(frozen=True)
class Escalate:
    urgency: Urgency
    context: str = ""


@dataclass(frozen=True)
class AbandonAndReset:
    reason: AbandonmentReason


RecoveryStrategy = RetryWithBackoff | AutomatedFix | Fallback | Escalate | AbandonAndReset


# Actions -------------------------------------------------------------------


@dataclass(frozen=True)
class GitReset:
    target: str


@dataclass(frozen=True)
class ConfigUpdate:
    key: str
    value: str


@dataclass(frozen=True)
class ServiceRestart:
    service: str


@dataclass(frozen=True)
class WorkspaceClean:
    pass


@dataclass(frozen=True)
class AutomergeConflictResolution:
    files: tuple[str, ...]


@dataclass(frozen=True)
class CommandExecuted:
    command: str
    exit_code: int


RecoveryAction = (
    GitReset
    | ConfigUpdate
    | ServiceRestart
    | WorkspaceClean
    | AutomergeConflictResolution
    | CommandExecuted
)


# Records -------------------------------------------------------------------


@dataclass
class RecoveryMetrics:
    attempts_count: int = 0
    total_duration_ms: float = 0.0
    actions_executed: int = 0
    files_affected: int = 0
    git_operations: int = 0
    network_requests: int = 0


@dataclass(frozen=True)
class RecoveryAttempt:
    """Outcome of one strategy execution.

    ``result`` holds the return value of a retried operation when a
    RetryWithBackoff strategy eventually succeeded.
    """

    attempt_id: str
    error_type: ErrorType
    strategy: RecoveryStrategy
    started_at: datetime
    completed_at: datetime
    success: bool
    error_message: str | None
    actions_taken: tuple[RecoveryAction, ...]
    metrics: RecoveryMetrics
    result: Any = field(default=None, compare=False, repr=False)

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.started_at).total_seconds() * 1000


@dataclass(frozen=True)
class RecoveryReport:
    total_attempts: int
    successful_attempts: int
    success_rate: float
    average_duration_ms: float
    top_error_types: tuple[tuple[str, int], ...]
    top_strategies: tuple[tuple[str, float], ...]
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_attempts": self.total_attempts,
            "successful_attempts": self.successful_attempts,
            "success_rate": round(self.success_rate, 2),
            "average_duration_ms": round(self.average_duration_ms, 2),
            "top_error_types": [list(item) for item in self.top_error_types],
            "top_strategies": [[name, round(rate, 2)] for name, rate in self.top_strategies],
            "generated_at": self.generated_at.isoformat(),
        }


# Classification ------------------------------------------------------------

_RETRYABLE_GIT_OPERATIONS = frozenset({"push", "pull", "fetch"})
_FIXABLE_GIT_OPERATIONS = frozenset({"merge", "rebase"})


def classify(error_type: ErrorType) -> RecoveryStrategy:
    """Select a recovery strategy for an error. Pure and deterministic."""
    if isinstance(error_type, GitOperationFailed):
        operation = error_type.operation.lower()
        if operation in _RETRYABLE_GIT_OPERATIONS:
            return RetryWithBackoff(max_attempts=3, base_delay=1.0, max_delay=10.0)
        if operation in _FIXABLE_GIT_OPERATIONS:
            return AutomatedFix(FixType.MERGE_CONFLICT_RESOLUTION, Confidence.MEDIUM)
        return Fallback(Alternative.MANUAL_PROCESS)

    if isinstance(error_type, HostApiFailed):
        if error_type.status == 429:
            return RetryWithBackoff(max_attempts=5, base_delay=2.0, max_delay=30.0)
        if 500 <= error_type.status <= 599:
            return RetryWithBackoff(max_attempts=3, base_delay=5.0, max_delay=20.0)
        return Escalate(Urgency.MEDIUM, "Host API error requires investigation")

    if isinstance(error_type, MergeConflictFound):
        touches_migration = any("migration" in path for path in error_type.files)
        if error_type.conflict_count <= 5 and not touches_migration:
            return AutomatedFix(FixType.MERGE_CONFLICT_RESOLUTION, Confidence.HIGH)
        return Escalate(Urgency.HIGH, f"Complex merge conflicts in {len(error_type.files)} files")

    if isinstance(error_type, CIFailed):
        message = error_type.error.lower()
        if "test" in message:
            return AutomatedFix(FixType.TEST_FAILURE_FIX, Confidence.MEDIUM)
        if "build" in message or "compile" in message:
            return AutomatedFix(FixType.BUILD_ERROR_FIX, Confidence.LOW)
        return Escalate(Urgency.MEDIUM, f"CI failure in {error_type.job}: {error_type.error}")

    if isinstance(error_type, TestsFailed):
        if len(error_type.failed_tests) <= 3:
            return AutomatedFix(FixType.TEST_FAILURE_FIX, Confidence.MEDIUM)
        return Fallback(Alternative.SIMPLIFIED_SOLUTION)

    if isinstance(error_type, BuildFailed):
        message = error_type.error.lower()
        if error_type.stage == "dependencies":
            return AutomatedFix(FixType.DEPENDENCY_UPDATE, Confidence.HIGH)
        if "format" in message or "lint" in message:
            return AutomatedFix(FixType.CODE_FORMATTING, Confidence.HIGH)
        return AutomatedFix(FixType.BUILD_ERROR_FIX, Confidence.LOW)

    if isinstance(error_type, DependencyConflict):
        if error_type.version_conflict:
            return AutomatedFix(FixType.DEPENDENCY_UPDATE, Confidence.MEDIUM)
        return RetryWithBackoff(max_attempts=3, base_delay=2.0, max_delay=10.0)

    if isinstance(error_type, NetworkFailure):
        if error_type.timeout:
            return RetryWithBackoff(max_attempts=5, base_delay=1.0, max_delay=15.0)
        return Escalate(Urgency.LOW, f"Network issue with {error_type.service}")

    if isinstance(error_type, WorkspaceCorruption):
        if len(error_type.files_affected) <= 5:
            return AutomatedFix(FixType.CONFIGURATION_ADJUSTMENT, Confidence.MEDIUM)
        return AbandonAndReset(CriticalFailure("Workspace corruption"))

    if isinstance(error_type, StateInconsistency):
        return AutomatedFix(FixType.CONFIGURATION_ADJUSTMENT, Confidence.HIGH)

    raise TypeError(f"Unknown error type: {type(error_type).__name__}")


# Execution -----------------------------------------------------------------


class FixExecutor(ABC):
    """Produces automated fixes for the recovery engine.

    Implementations raise on failure; the engine turns the exception into a
    failed RecoveryAttempt.
    """

    @abstractmethod
    async def apply_fix(self, fix_type: FixType, error_type: ErrorType) -> list[RecoveryAction]:
        """Apply a fix and return the actions it performed."""
        pass


RetryOperation = Callable[[], Awaitable[Any]]


def _files_affected(error_type: ErrorType) -> int:
    if isinstance(error_type, MergeConflictFound):
        return len(error_type.files)
    if isinstance(error_type, WorkspaceCorruption):
        return len(error_type.files_affected)
    return 0


def _new_attempt_id() -> str:
    return f"recovery-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ErrorRecoveryEngine:
    """Executes recovery strategies and keeps their history.

    Args:
        fix_executor: Collaborator that applies AutomatedFix strategies
        timeout_seconds: Upper bound on a single execute call
        sleep: Awaitable sleep used for backoff delays
    """

    def __init__(
        self,
        fix_executor: FixExecutor | None = None,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.fix_executor = fix_executor
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._history: list[RecoveryAttempt] = []
        self._lock = asyncio.Lock()

    def classify(self, error_type: ErrorType) -> RecoveryStrategy:
        return classify(error_type)

    async def execute(
        self,
        error_type: ErrorType,
        strategy: RecoveryStrategy | None = None,
        operation: RetryOperation | None = None,
    ) -> RecoveryAttempt:
        """Run a strategy and record the outcome.

        Args:
            error_type: Failure being recovered from
            strategy: Strategy to run, classified from ``error_type`` if None
            operation: Operation re-run by RetryWithBackoff

        Returns:
            RecoveryAttempt describing success or failure. Never raises.
        """
        if strategy is None:
            strategy = classify(error_type)

        attempt_id = _new_attempt_id()
        started_at = datetime.now(UTC)
        metrics = RecoveryMetrics(files_affected=_files_affected(error_type))
        actions: list[RecoveryAction] = []

        log.info(
            "recovery_started",
            attempt_id=attempt_id,
            error_type=type(error_type).__name__,
            strategy=type(strategy).__name__,
        )

        success = False
        error_message: str | None = None
        result: Any = None
        try:
            run = self._run_strategy(error_type, strategy, operation, metrics, actions)
            if self.timeout_seconds is not None:
                success, error_message, result = await asyncio.wait_for(run, timeout=self.timeout_seconds)
            else:
                success, error_message, result = await run
        except TimeoutError:
            error_message = f"Recovery timed out after {self.timeout_seconds}s"
        except Exception as e:
            log.error("recovery_strategy_crashed", attempt_id=attempt_id, error=str(e), exc_info=True)
            error_message = f"Recovery strategy raised: {e}"

        completed_at = datetime.now(UTC)
        metrics.total_duration_ms = (completed_at - started_at).total_seconds() * 1000
        metrics.actions_executed = len(actions)

        attempt = RecoveryAttempt(
            attempt_id=attempt_id,
            error_type=error_type,
            strategy=strategy,
            started_at=started_at,
            completed_at=completed_at,
            success=success,
            error_message=error_message,
            actions_taken=tuple(actions),
            metrics=metrics,
            result=result,
        )

        async with self._lock:
            self._history.append(attempt)

        MetricsCollector.record_recovery_attempt(
            type(strategy).__name__, success, metrics.total_duration_ms / 1000
        )

        log.info(
            "recovery_completed",
            attempt_id=attempt_id,
            success=success,
            error_message=error_message,
            duration_ms=round(metrics.total_duration_ms, 2),
        )
        return attempt

    async def history(self) -> tuple[RecoveryAttempt, ...]:
        async with self._lock:
            return tuple(self._history)

    async def success_rate(self) -> float:
        """Percentage of successful attempts, 0.0 when nothing was attempted."""
        async with self._lock:
            total = len(self._history)
            successes = sum(1 for attempt in self._history if attempt.success)
        return successes / total * 100.0 if total else 0.0

    async def recovery_report(self) -> RecoveryReport:
        async with self._lock:
            attempts = list(self._history)

        total = len(attempts)
        successes = sum(1 for attempt in attempts if attempt.success)

        error_counts = Counter(type(attempt.error_type).__name__ for attempt in attempts)

        per_strategy: dict[str, list[bool]] = defaultdict(list)
        for attempt in attempts:
            per_strategy[type(attempt.strategy).__name__].append(attempt.success)
        strategy_rates = sorted(
            ((name, sum(outcomes) / len(outcomes) * 100.0) for name, outcomes in per_strategy.items()),
            key=lambda item: item[1],
            reverse=True,
        )

        return RecoveryReport(
            total_attempts=total,
            successful_attempts=successes,
            success_rate=successes / total * 100.0 if total else 0.0,
            average_duration_ms=(sum(a.metrics.total_duration_ms for a in attempts) / total if total else 0.0),
            top_error_types=tuple(error_counts.most_common(5)),
            top_strategies=tuple(strategy_rates[:5]),
            generated_at=datetime.now(UTC),
        )

    async def _run_strategy(
        self,
        error_type: ErrorType,
        strategy: RecoveryStrategy,
        operation: RetryOperation | None,
        metrics: RecoveryMetrics,
        actions: list[RecoveryAction],
    ) -> tuple[bool, str | None, Any]:
        if isinstance(strategy, RetryWithBackoff):
            return await self._retry(error_type, strategy, operation, metrics)

        if isinstance(strategy, AutomatedFix):
            metrics.attempts_count = 1
            if self.fix_executor is None:
                return False, f"No fix executor configured for {strategy.fix_type.value}", None
            try:
                actions.extend(await self.fix_executor.apply_fix(strategy.fix_type, error_type))
            except Exception as e:
                log.warning("automated_fix_failed", fix_type=strategy.fix_type.value, error=str(e))
                return False, f"Automated fix failed: {e}", None
            return True, None, None

        if isinstance(strategy, Fallback):
            metrics.attempts_count = 1
            if strategy.alternative is Alternative.DIFFERENT_IMPLEMENTATION:
                actions.append(WorkspaceClean())
            elif strategy.alternative is Alternative.SIMPLIFIED_SOLUTION:
                actions.append(ConfigUpdate(key="complexity", value="low"))
            elif strategy.alternative is Alternative.EXTERNAL_TOOL:
                actions.append(ServiceRestart(service="external-tool"))
            else:
                return False, "Manual process required", None
            return True, None, None

        if isinstance(strategy, Escalate):
            metrics.attempts_count = 1
            actions.append(WorkspaceClean())
            log.warning(
                "recovery_escalated",
                urgency=strategy.urgency.value,
                context=strategy.context,
                error_type=type(error_type).__name__,
            )
            return False, "Escalated to human intervention", None

        if isinstance(strategy, AbandonAndReset):
            metrics.attempts_count = 1
            metrics.git_operations = 1
            actions.extend([WorkspaceClean(), GitReset(target="HEAD~1")])
            return True, None, None

        raise TypeError(f"Unknown strategy: {type(strategy).__name__}")

    async def _retry(
        self,
        error_type: ErrorType,
        strategy: RetryWithBackoff,
        operation: RetryOperation | None,
        metrics: RecoveryMetrics,
    ) -> tuple[bool, str | None, Any]:
        if operation is None:
            return False, "No retryable operation supplied", None

        last_error: str | None = None
        delays = backoff_delays(strategy.base_delay, strategy.max_delay)
        for attempt in range(1, strategy.max_attempts + 1):
            if attempt > 1:
                await self._sleep(next(delays))

            metrics.attempts_count = attempt
            if isinstance(error_type, GitOperationFailed):
                metrics.git_operations += 1
            elif isinstance(error_type, HostApiFailed | NetworkFailure):
                metrics.network_requests += 1

            try:
                return True, None, await operation()
            except Exception as e:
                last_error = str(e)
                log.warning(
                    "retry_attempt",
                    error_type=type(error_type).__name__,
                    attempt=attempt,
                    max_attempts=strategy.max_attempts,
                    error=last_error,
                )

        log.error("retry_exhausted", error_type=type(error_type).__name__, attempts=strategy.max_attempts)
        return False, f"Retry exhausted after {strategy.max_attempts} attempts: {last_error}", None
