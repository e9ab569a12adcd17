"""
Work observation backed by the host.

The agent reports through the issue it was assigned: it pushes commits to its
work branch, applies a ``blocked:<kind>`` label with an explanatory comment
when it gets stuck, and applies the work-complete label when it is done.
HostWorkObserver turns those signals into WorkObservation values for the
coordinator.
"""

import structlog

from repo_autopilot.config.settings import LabelsConfig
from repo_autopilot.engine.workflow import branch_name_for
from repo_autopilot.models.domain import (
    AgentId,
    BlockerObserved,
    BlockerType,
    BranchComparison,
    BuildFailure,
    Change,
    DependencyIssue,
    ExternalService,
    Issue,
    MissingRequirements,
    NetworkIssue,
    ProgressObserved,
    PullRequest,
    TestFailure,
    WorkFinished,
    WorkObservation,
    WorkProgress,
)
from repo_autopilot.providers.base import HostProvider, WorkObserver

log = structlog.get_logger(__name__)


def blocker_from_label(kind: str, detail: str) -> BlockerType:
    """Map a ``blocked:<kind>`` label suffix and its comment to a blocker."""
    kind = kind.strip().lower()
    headline = detail.strip().splitlines()[0] if detail.strip() else kind

    if kind in ("tests", "test"):
        return TestFailure(test_name=headline, error=detail)
    if kind == "build":
        return BuildFailure(error=detail)
    if kind in ("dependency", "dependencies"):
        return DependencyIssue(dependency=headline, error=detail)
    if kind == "service":
        return ExternalService(service=headline, status=detail)
    if kind == "network":
        return NetworkIssue(error=detail)
    return MissingRequirements(missing=(headline,))


class HostWorkObserver(WorkObserver):
    """Observe agent work through issue labels, comments and branch diffs."""

    def __init__(self, host: HostProvider, labels: LabelsConfig, base_branch: str = "main") -> None:
        self.host = host
        self.labels = labels
        self.base_branch = base_branch
        self._last_seen: dict[tuple[AgentId, int], BranchComparison] = {}
        self._handed_off: set[tuple[int, int]] = set()

    async def observe(self, issue: Issue, agent: AgentId, progress: WorkProgress) -> WorkObservation:
        current = await self.host.get_issue(issue.number)

        blocker_labels = sorted(label for label in current.labels if label.startswith(self.labels.blocked_prefix))
        if blocker_labels:
            label = blocker_labels[0]
            comments = await self.host.get_comments(issue.number)
            detail = comments[-1].body if comments else label
            blocker = blocker_from_label(label[len(self.labels.blocked_prefix) :], detail)
            await self.host.remove_label(issue.number, label)
            log.info("blocker_observed", issue=issue.number, agent=agent, label=label)
            return BlockerObserved(blocker=blocker)

        if self.labels.work_complete in current.labels:
            await self.host.remove_label(issue.number, self.labels.work_complete)
            self._last_seen.pop((agent, issue.number), None)
            log.info("work_finished_observed", issue=issue.number, agent=agent)
            return WorkFinished()

        comparison = await self.host.compare_branches(self.base_branch, branch_name_for(agent, issue))
        previous = self._last_seen.get((agent, issue.number), BranchComparison(0, 0))
        self._last_seen[(agent, issue.number)] = comparison

        return ProgressObserved(
            commits=max(0, comparison.ahead_by - previous.ahead_by),
            files_changed=max(0, comparison.files_changed - previous.files_changed),
        )

    async def apply_requested_changes(self, issue: Issue, pr: PullRequest, changes: tuple[Change, ...]) -> bool:
        key = (issue.number, pr.number)

        if key not in self._handed_off:
            lines = [f"Review on #{pr.number} requested changes:", ""]
            lines.extend(f"- `{change.file}`: {change.description}" for change in changes)
            await self.host.add_comment(issue.number, "\n".join(lines))
            await self.host.add_labels(issue.number, [self.labels.changes_requested])
            self._handed_off.add(key)
            log.info("changes_handed_off", issue=issue.number, pr=pr.number, changes=len(changes))
            return False

        current = await self.host.get_issue(issue.number)
        if self.labels.changes_requested in current.labels:
            return False

        self._handed_off.discard(key)
        log.info("changes_applied", issue=issue.number, pr=pr.number)
        return True
