"""
Abstract base classes for the scheduler's external collaborators.

The coordinator is the only component that performs I/O, and it does so
exclusively through these interfaces:

    - HostProvider: issue tracker and version-control host (GitHub, Gitea)
    - WorkObserver: what the agent has done on its branch since the last poll
    - InconsistencyRecovery: repairs external bookkeeping on AutoRecover

Every method may fail. The coordinator converts failures into recovery error
types instead of letting them propagate, so implementations are free to let
provider exceptions escape.
"""

from abc import ABC, abstractmethod

from repo_autopilot.models.domain import (
    AgentId,
    BranchComparison,
    Change,
    Comment,
    InconsistencyReport,
    Issue,
    MergeResult,
    PullRequest,
    ReviewFeedback,
    WorkObservation,
    WorkProgress,
)


class HostProvider(ABC):
    """Abstract base class for issue/PR/branch host implementations.

    Implementations normalize provider-specific payloads into the domain
    models. All methods are async to support non-blocking I/O.
    """

    name: str = "host"

    @abstractmethod
    async def connect(self) -> None:
        """Open the client session and verify repository access."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def get_issues(
        self,
        labels: list[str] | None = None,
        state: str = "open",
    ) -> list[Issue]:
        """Retrieve issues from the repository.

        Args:
            labels: Only return issues carrying ALL of these labels
            state: "open", "closed" or "all"

        Returns:
            List of Issue snapshots
        """
        pass

    @abstractmethod
    async def get_issue(self, issue_number: int) -> Issue:
        pass

    @abstractmethod
    async def get_comments(self, issue_number: int) -> list[Comment]:
        """Get comments on an issue in creation order."""
        pass

    @abstractmethod
    async def add_comment(self, issue_number: int, body: str) -> Comment:
        pass

    @abstractmethod
    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        pass

    @abstractmethod
    async def remove_label(self, issue_number: int, label: str) -> None:
        """Remove a label. Removing a label that is not present is a no-op."""
        pass

    @abstractmethod
    async def create_branch(self, branch_name: str, from_branch: str) -> str:
        """Create a branch, or return the existing one.

        Returns:
            Head commit SHA of the branch
        """
        pass

    @abstractmethod
    async def compare_branches(self, base: str, head: str) -> BranchComparison:
        pass

    @abstractmethod
    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequest:
        """Open a pull request, or update and return the open one for ``head``."""
        pass

    @abstractmethod
    async def get_reviews(self, pr_number: int) -> list[ReviewFeedback]:
        """Get submitted reviews, one entry per reviewer verdict."""
        pass

    @abstractmethod
    async def merge_pull_request(self, pr_number: int, message: str) -> MergeResult:
        """Attempt to merge.

        Conflicts and failing checks are reported in the MergeResult rather
        than raised.
        """
        pass


class WorkObserver(ABC):
    """Observes the agent's work on an in-flight assignment.

    Deployments observe the host; tests inject deterministic fakes.
    """

    @abstractmethod
    async def observe(self, issue: Issue, agent: AgentId, progress: WorkProgress) -> WorkObservation:
        """Report new progress, a blocker, or completion since the last call."""
        pass

    @abstractmethod
    async def apply_requested_changes(self, issue: Issue, pr: PullRequest, changes: tuple[Change, ...]) -> bool:
        """Hand review changes to the agent.

        Returns:
            True once the agent has pushed the requested changes
        """
        pass


class InconsistencyRecovery(ABC):
    """Repairs bookkeeping outside the workflow state machine."""

    @abstractmethod
    async def recover_all_inconsistencies(self) -> InconsistencyReport:
        pass
