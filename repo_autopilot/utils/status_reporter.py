"""Status reporting for posting workflow updates to issues."""

from datetime import UTC, datetime

import structlog

from repo_autopilot.config.settings import LabelsConfig
from repo_autopilot.models.domain import AbandonmentReason, AgentId, Issue, describe_reason
from repo_autopilot.providers.base import HostProvider

log = structlog.get_logger(__name__)


class StatusReporter:
    """Report workflow milestones back to the assigned issue."""

    def __init__(self, host: HostProvider, labels: LabelsConfig) -> None:
        """Initialize with host provider.

        Args:
            host: HostProvider instance
            labels: Label names to apply on terminal outcomes
        """
        self.host = host
        self.labels = labels

    async def report_started(self, issue: Issue, agent: AgentId, branch: str) -> None:
        """Report that an agent picked up the issue."""
        message = f"""🤖 **Autopilot Update**

Agent: **{agent}**
Status: ⏳ In Progress
Branch: `{branch}`
Started: {datetime.now(UTC).isoformat()}
"""
        await self.host.add_comment(issue.number, message.strip())
        log.info("status_reported", issue=issue.number, agent=agent, status="started")

    async def report_merged(self, issue: Issue, pr_number: int | None, commits: int, files_changed: int) -> None:
        """Report a merged workflow and mark the issue completed.

        Args:
            issue: Issue the work belonged to
            pr_number: Merged pull request, if known
            commits: Commits in the merged work
            files_changed: Files touched by the merged work
        """
        pr_line = f"Pull request: #{pr_number}\n" if pr_number else ""
        message = f"""🤖 **Autopilot Update**

Status: ✅ Merged
{pr_line}Commits: {commits}
Files changed: {files_changed}
Completed: {datetime.now(UTC).isoformat()}
"""
        await self.host.add_comment(issue.number, message.strip())
        await self.host.remove_label(issue.number, self.labels.in_progress)
        await self.host.add_labels(issue.number, [self.labels.completed])
        log.info("status_reported", issue=issue.number, status="merged")

    async def report_abandoned(self, issue: Issue, reason: AbandonmentReason) -> None:
        """Report an abandoned workflow and flag the issue for a human."""
        message = f"""🤖 **Autopilot Update**

Status: ❌ Abandoned
Abandoned: {datetime.now(UTC).isoformat()}

**Reason:**
```
{describe_reason(reason)}
```

A team member will need to investigate and resolve this issue.
"""
        await self.host.add_comment(issue.number, message.strip())
        await self.host.remove_label(issue.number, self.labels.in_progress)
        await self.host.add_labels(issue.number, [self.labels.needs_attention])
        log.error("status_reported", issue=issue.number, status="abandoned", reason=describe_reason(reason))
